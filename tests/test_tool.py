from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional, Tuple

import pytest

from koppel import Definition, MalformedMessageError, UnsupportedTypeError, generate_schema


@dataclass
class Person:
    name: str
    age: Optional[int] = None


@dataclass
class Address:
    street: str
    zip_code: str = field(metadata={"json": "zip"})


@dataclass
class SearchInput:
    query: str = field(metadata={"description": "Search terms"})
    limit: int
    ratio: float
    exact: bool
    tags: List[str]
    address: Address
    sort: Literal["asc", "desc"]
    extra: Dict[str, Any]
    cursor: str | None = None
    internal: str = field(default="", metadata={"json": "-"})


def test_required_and_optional_fields():
    assert generate_schema(Person) == {
        "type": "object",
        "properties": {
            "name": {"type": "string"},
            "age": {"type": "integer"},
        },
        "required": ["name"],
    }


def test_schema_from_instance():
    assert generate_schema(Person(name="Ada")) == generate_schema(Person)


def test_field_types_and_metadata():
    schema = generate_schema(SearchInput)
    properties = schema["properties"]

    assert properties["query"] == {"type": "string", "description": "Search terms"}
    assert properties["limit"] == {"type": "integer"}
    assert properties["ratio"] == {"type": "number"}
    assert properties["exact"] == {"type": "boolean"}
    assert properties["tags"] == {"type": "array", "items": {"type": "string"}}
    assert properties["sort"] == {"type": "string", "enum": ["asc", "desc"]}
    assert properties["extra"] == {"type": "object"}
    assert properties["address"] == {
        "type": "object",
        "properties": {
            "street": {"type": "string"},
            "zip": {"type": "string"},
        },
        "required": ["street", "zip"],
    }
    assert properties["cursor"] == {"type": "string"}
    assert "internal" not in properties
    assert schema["required"] == [
        "query",
        "limit",
        "ratio",
        "exact",
        "tags",
        "address",
        "sort",
        "extra",
    ]


def test_schema_without_required_fields_omits_required():
    @dataclass
    class Filters:
        after: Optional[str] = None

    assert generate_schema(Filters) == {
        "type": "object",
        "properties": {"after": {"type": "string"}},
    }


def test_unsupported_field_type_fails():
    @dataclass
    class Bad:
        callback: Any

    with pytest.raises(UnsupportedTypeError) as excinfo:
        generate_schema(Bad)

    assert "callback" in str(excinfo.value)


def test_fixed_length_tuple_is_unsupported():
    @dataclass
    class Point:
        coords: Tuple[int, int]

    with pytest.raises(UnsupportedTypeError):
        generate_schema(Point)


def test_variadic_tuple_is_an_array():
    @dataclass
    class Batch:
        ids: Tuple[int, ...]

    assert generate_schema(Batch)["properties"]["ids"] == {
        "type": "array",
        "items": {"type": "integer"},
    }


def test_non_dataclass_input_fails():
    with pytest.raises(UnsupportedTypeError):
        generate_schema(dict)


def test_definition_from_dataclass_and_dict_round_trip():
    definition = Definition.from_dataclass("lookup_person", "Find a person", Person)

    assert definition.input_schema["required"] == ["name"]
    assert Definition.from_dict(definition.to_dict()) == definition


def test_definition_from_dict_requires_name():
    with pytest.raises(MalformedMessageError):
        Definition.from_dict({"description": "nameless"})
