"""Error taxonomy shared by the content model, adapters and sessions."""

from __future__ import annotations

from typing import Optional


class KoppelError(Exception):
    """Base class for all errors raised by koppel."""


class TranslationError(KoppelError):
    """A part, role or option could not be mapped to a vendor request."""


class TransportError(KoppelError):
    """The underlying vendor call failed.

    The underlying SDK or HTTP exception is chained as ``__cause__``.
    """

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class MalformedMessageError(KoppelError):
    """Persisted or vendor data has a shape that cannot be decoded."""


class UnknownPartTypeError(MalformedMessageError):
    def __init__(self, part_type: object) -> None:
        super().__init__(f"unknown part type: {part_type!r}")
        self.part_type = part_type


class UnsupportedTypeError(KoppelError):
    """Schema reflection met a field type it cannot represent."""


class SessionError(KoppelError):
    """A session was used in a way it does not support."""


class EndOfStream(StopAsyncIteration):
    """Raised by ``StreamResponse.next()`` once no more deltas remain.

    Not a failure: it is not a ``KoppelError``, and ``async for`` treats it
    as normal exhaustion.
    """
