from __future__ import annotations

import pytest

from site_engine.database.serialization import (
    PhpArray,
    PhpObject,
    PhpOpaque,
    dumps,
    is_serialized,
    is_serialized_string,
    loads,
    maybe_loads,
)
from site_engine.errors import SerializationError


@pytest.mark.parametrize(
    ("text", "expected"),
    [
        ("N;", None),
        ("b:1;", True),
        ("b:0;", False),
        ("i:-42;", -42),
        ("d:0.5;", 0.5),
        ('s:5:"hello";', "hello"),
    ],
)
def test_loads_scalars(text: str, expected: object) -> None:
    assert loads(text) == expected


def test_string_lengths_are_utf8_byte_lengths() -> None:
    assert loads('s:6:"héllo";') == "héllo"
    assert dumps("héllo") == 's:6:"héllo";'
    assert dumps("日本") == 's:6:"日本";'

    with pytest.raises(SerializationError):
        loads('s:5:"héllo";')


def test_array_keeps_order_and_key_types() -> None:
    value = loads('a:2:{i:0;s:1:"a";s:3:"key";i:7;}')
    assert isinstance(value, PhpArray)
    assert value.items == ((0, "a"), ("key", 7))
    assert value.as_dict() == {0: "a", "key": 7}


def test_object_round_trips_byte_for_byte() -> None:
    text = 'O:8:"stdClass":2:{s:3:"url";s:15:"http://old.test";s:5:"count";i:3;}'
    value = loads(text)
    assert isinstance(value, PhpObject)
    assert value.class_name == "stdClass"
    assert value.as_dict() == {"url": "http://old.test", "count": 3}
    assert dumps(value) == text


def test_opaque_values_are_preserved() -> None:
    text = 'a:3:{i:0;C:3:"Foo":5:{hello}i:1;s:1:"x";i:2;R:3;}'
    value = loads(text)
    assert isinstance(value, PhpArray)
    assert value.items[0][1] == PhpOpaque(raw='C:3:"Foo":5:{hello}')
    assert value.items[2][1] == PhpOpaque(raw="R:3;")
    assert dumps(value) == text


def test_float_encoding() -> None:
    assert dumps(1.0) == "d:1;"
    assert dumps(0.25) == "d:0.25;"
    assert dumps(float("inf")) == "d:INF;"


def test_encode_from_python_containers() -> None:
    value = PhpArray.from_mapping({"site": "http://new.test", "ids": PhpArray.from_list([1, 2])})
    assert dumps(value) == 'a:2:{s:4:"site";s:15:"http://new.test";s:3:"ids";a:2:{i:0;i:1;i:1;i:2;}}'


@pytest.mark.parametrize(
    "text",
    ["i:1;x", 's:10:"abc";', "a:2:{i:0;i:1;}", "b:2;", "x:1;", ""],
)
def test_loads_rejects_malformed_input(text: str) -> None:
    with pytest.raises(SerializationError):
        loads(text)


def test_dumps_rejects_unsupported_values() -> None:
    with pytest.raises(SerializationError):
        dumps([1, 2])  # type: ignore[arg-type]


@pytest.mark.parametrize(
    ("text", "expected"),
    [
        ("N;", True),
        ('s:3:"abc";', True),
        ("a:0:{}", True),
        ("i:5;", True),
        ("  b:1;\n", True),
        ("hello", False),
        ('s:3:"abc"', False),
        ("i:5", False),
        ("http://old.test", False),
    ],
)
def test_is_serialized_strict(text: str, expected: bool) -> None:
    assert is_serialized(text) is expected


def test_is_serialized_non_strict_only_checks_the_start() -> None:
    assert is_serialized('s:3:"abc";trailing', strict=False) is True
    assert is_serialized('s:3:"abc";trailing', strict=True) is False


def test_is_serialized_ignores_non_strings() -> None:
    assert is_serialized(123) is False
    assert is_serialized(None) is False


def test_is_serialized_string() -> None:
    assert is_serialized_string('s:3:"abc";') is True
    assert is_serialized_string("a:0:{}") is False
    assert is_serialized_string("i:1;") is False


def test_maybe_loads() -> None:
    assert maybe_loads("not serialized") == (False, "not serialized")
    assert maybe_loads("i:3;") == (True, 3)
    assert maybe_loads('s:99:"abc";') == (False, 's:99:"abc";')
