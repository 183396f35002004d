"""Typed JSON wire format of a component payload.

These shapes are what the tracer serializes and what the code generator
consumes. They are plain JSON: the generated client module can be rebuilt
from a payload written to disk.
"""

from __future__ import annotations

from typing import Literal, NotRequired, TypeAlias, TypedDict

# =============================================================================
# JSON atoms
# =============================================================================

JsonPrimitive: TypeAlias = str | int | float | bool | None
JsonValue: TypeAlias = JsonPrimitive | list["JsonValue"] | dict[str, "JsonValue"]

OperationType: TypeAlias = Literal[
	"set",
	"increment",
	"decrement",
	"toggle",
	"push",
	"pop",
	"update",
	"remove",
	"merge",
	"expr",
	"push_expr",
]

OPERATION_TYPES: frozenset[str] = frozenset(
	{
		"set",
		"increment",
		"decrement",
		"toggle",
		"push",
		"pop",
		"update",
		"remove",
		"merge",
		"expr",
		"push_expr",
	}
)


class ArgRef(TypedDict):
	"""Positional action argument, supplied by the caller on the client."""

	type: Literal["arg"]
	index: int


# =============================================================================
# Operations
# =============================================================================


class OperationDict(TypedDict):
	type: str
	slot: str
	value: NotRequired[JsonValue]
	step: NotRequired[float | int | ArgRef]
	key: NotRequired[JsonValue]
	key_expr: NotRequired[str]
	"""Compiled key, for keys computed from cells or arguments."""
	key_source: NotRequired[str]
	expr: NotRequired[str]
	source: NotRequired[str]


# =============================================================================
# Payload
# =============================================================================


# "global" is a keyword, hence the functional form
StateRecordDict = TypedDict(
	"StateRecordDict",
	{
		"id": str,
		"value": JsonValue,
		"global": bool,
		"key": NotRequired[str | None],
		"computed": NotRequired[bool],
		"dependencies": NotRequired[list[str]],
		"expression": NotRequired[str],
	},
)


class EffectDict(TypedDict):
	id: str
	dependencies: list[str]
	expression: NotRequired[str]


class LifecycleDict(TypedDict):
	mount: list[str]
	unmount: list[str]


class PayloadDict(TypedDict):
	id: str
	states: list[StateRecordDict]
	actions: dict[str, list[OperationDict]]
	effects: list[EffectDict]
	lifecycle: NotRequired[LifecycleDict]
	"""Client expressions run after mount and before unmount."""


def arg_ref(index: int) -> ArgRef:
	return {"type": "arg", "index": index}


def is_arg_ref(value: object) -> bool:
	return (
		isinstance(value, dict)
		and value.get("type") == "arg"  # pyright: ignore[reportUnknownMemberType]
		and isinstance(value.get("index"), int)  # pyright: ignore[reportUnknownMemberType]
	)


__all__ = [
	"OPERATION_TYPES",
	"ArgRef",
	"EffectDict",
	"JsonPrimitive",
	"JsonValue",
	"LifecycleDict",
	"OperationDict",
	"OperationType",
	"PayloadDict",
	"StateRecordDict",
	"arg_ref",
	"is_arg_ref",
]
