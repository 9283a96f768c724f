"""
koppel: one conversational model over several LLM vendor APIs.
"""

from .chat import ChatStream, Session
from .errors import (
    EndOfStream,
    KoppelError,
    MalformedMessageError,
    SessionError,
    TranslationError,
    TransportError,
    UnknownPartTypeError,
    UnsupportedTypeError,
)
from .options import ContextCache, Options
from .parts import (
    BlobPart,
    Message,
    Part,
    TextPart,
    ThoughtPart,
    ToolCallPart,
    ToolResultPart,
    part_from_dict,
    part_to_dict,
)
from .providers import (
    ContextCacher,
    Provider,
    Response,
    StreamResponse,
    supports_context_cache,
)
from .tool import Definition, generate_schema

__all__ = [
    "ChatStream",
    "Session",
    "EndOfStream",
    "KoppelError",
    "MalformedMessageError",
    "SessionError",
    "TranslationError",
    "TransportError",
    "UnknownPartTypeError",
    "UnsupportedTypeError",
    "ContextCache",
    "Options",
    "BlobPart",
    "Message",
    "Part",
    "TextPart",
    "ThoughtPart",
    "ToolCallPart",
    "ToolResultPart",
    "part_from_dict",
    "part_to_dict",
    "ContextCacher",
    "Provider",
    "Response",
    "StreamResponse",
    "supports_context_cache",
    "Definition",
    "generate_schema",
]
