"""
JavaScript expression tree used by the compiler and the code generator.

Every node reports how tightly it binds. A parent asks its children for code
at a minimum binding strength and the child parenthesizes itself when it is
weaker, so emitted code never depends on how the tree was built.
"""

from __future__ import annotations

import ast
import json
import math
from abc import ABC, abstractmethod
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any, ClassVar

from typing_extensions import override

from palm.types import is_arg_ref

BINARY_OPERATORS: dict[type[ast.operator], str] = {
	ast.Add: "+",
	ast.Sub: "-",
	ast.Mult: "*",
	ast.Div: "/",
	ast.Mod: "%",
	ast.Pow: "**",
}

UNARY_OPERATORS: dict[type[ast.unaryop], str] = {
	ast.UAdd: "+",
	ast.USub: "-",
	ast.Not: "!",
}

COMPARE_OPERATORS: dict[type[ast.cmpop], str] = {
	ast.Eq: "===",
	ast.NotEq: "!==",
	ast.Lt: "<",
	ast.LtE: "<=",
	ast.Gt: ">",
	ast.GtE: ">=",
}

# Binding strength, higher binds tighter
COMMA = 1
ASSIGNMENT = 2
UNARY = 14
MEMBER = 17

OPERATOR_BINDING: dict[str, int] = {
	"??": 3,
	"||": 3,
	"&&": 4,
	"==": 8,
	"!=": 8,
	"===": 8,
	"!==": 8,
	"<": 9,
	"<=": 9,
	">": 9,
	">=": 9,
	"in": 9,
	"instanceof": 9,
	"+": 11,
	"-": 11,
	"*": 12,
	"/": 12,
	"%": 12,
	"**": 13,
}

_TEMPLATE_ESCAPES = str.maketrans(
	{"\\": "\\\\", "`": "\\`", "\n": "\\n", "\r": "\\r", "\t": "\\t"}
)


class JSExpr(ABC):
	binding: ClassVar[int] = MEMBER

	@abstractmethod
	def emit(self) -> str: ...

	def strength(self) -> int:
		return self.binding

	def emit_at(self, minimum: int) -> str:
		"""Code for a position that needs at least ``minimum`` binding."""
		code = self.emit()
		if self.strength() < minimum:
			return f"({code})"
		return code


# =============================================================================
# Literals and names
# =============================================================================


@dataclass
class JSIdentifier(JSExpr):
	name: str

	@override
	def emit(self) -> str:
		return self.name


@dataclass
class JSRaw(JSExpr):
	"""Code emitted verbatim. Treated as a primary expression."""

	content: str

	@override
	def emit(self) -> str:
		return self.content


@dataclass
class JSString(JSExpr):
	value: str

	@override
	def emit(self) -> str:
		return json_literal(str(self.value))


@dataclass
class JSNumber(JSExpr):
	value: float

	@override
	def emit(self) -> str:
		v = self.value
		if isinstance(v, float) and not math.isfinite(v):
			if math.isnan(v):
				return "NaN"
			return "Infinity" if v > 0 else "-Infinity"
		return repr(v)

	@override
	def strength(self) -> int:
		return UNARY if self.value < 0 else MEMBER


@dataclass
class JSBoolean(JSExpr):
	value: bool

	@override
	def emit(self) -> str:
		return "true" if self.value else "false"


@dataclass
class JSNull(JSExpr):
	@override
	def emit(self) -> str:
		return "null"


@dataclass
class JSUndefined(JSExpr):
	@override
	def emit(self) -> str:
		return "undefined"


@dataclass
class JSTemplate(JSExpr):
	"""Template literal. ``str`` parts are literal text."""

	parts: Sequence[str | JSExpr]

	@override
	def emit(self) -> str:
		chunks = [
			p.translate(_TEMPLATE_ESCAPES).replace("${", "\\${")
			if isinstance(p, str)
			else "${" + p.emit() + "}"
			for p in self.parts
		]
		return "`" + "".join(chunks) + "`"


# =============================================================================
# Collections
# =============================================================================


@dataclass
class JSSpread(JSExpr):
	expr: JSExpr

	@override
	def emit(self) -> str:
		return "..." + self.expr.emit_at(ASSIGNMENT)


@dataclass
class JSArray(JSExpr):
	elements: Sequence[JSExpr]

	@override
	def emit(self) -> str:
		return "[" + _join(self.elements) + "]"


@dataclass
class JSProp(JSExpr):
	key: JSString
	value: JSExpr

	@override
	def emit(self) -> str:
		return f"{self.key.emit()}: {self.value.emit_at(ASSIGNMENT)}"


@dataclass
class JSComputedProp(JSExpr):
	key: JSExpr
	value: JSExpr

	@override
	def emit(self) -> str:
		return f"[{self.key.emit()}]: {self.value.emit_at(ASSIGNMENT)}"


@dataclass
class JSObjectExpr(JSExpr):
	props: Sequence[JSProp | JSComputedProp | JSSpread]

	@override
	def emit(self) -> str:
		return "{" + ", ".join(p.emit() for p in self.props) + "}"


# =============================================================================
# Operators
# =============================================================================


@dataclass
class JSUnary(JSExpr):
	op: str  # '-', '+', '!', 'typeof'
	operand: JSExpr

	binding: ClassVar[int] = UNARY

	@override
	def emit(self) -> str:
		code = self.operand.emit_at(UNARY)
		if self.op == "typeof" or (self.op in "+-" and code.startswith(self.op)):
			return f"{self.op} {code}"
		return self.op + code


@dataclass
class JSBinary(JSExpr):
	left: JSExpr
	op: str
	right: JSExpr

	@override
	def strength(self) -> int:
		return OPERATOR_BINDING.get(self.op, COMMA)

	@override
	def emit(self) -> str:
		level = self.strength()
		if self.op == "**":
			# Right-associative, and a unary operand on the left is a syntax error
			left = (
				f"({self.left.emit()})"
				if isinstance(self.left, JSUnary)
				else _operand(self.left, level + 1, self.op)
			)
			right = _operand(self.right, level, self.op)
		else:
			left = _operand(self.left, level, self.op)
			right = _operand(self.right, level + 1, self.op)
		return f"{left} {self.op} {right}"


@dataclass
class JSLogicalChain(JSExpr):
	op: str  # '&&' or '||'
	values: Sequence[JSExpr]

	@override
	def strength(self) -> int:
		if len(self.values) == 1:
			return self.values[0].strength()
		return OPERATOR_BINDING[self.op]

	@override
	def emit(self) -> str:
		if len(self.values) == 1:
			return self.values[0].emit()
		level = self.strength()
		return f" {self.op} ".join(_operand(v, level, self.op) for v in self.values)


@dataclass
class JSTertiary(JSExpr):
	test: JSExpr
	if_true: JSExpr
	if_false: JSExpr

	binding: ClassVar[int] = ASSIGNMENT

	@override
	def emit(self) -> str:
		test = self.test.emit_at(ASSIGNMENT + 1)
		return f"{test} ? {self.if_true.emit_at(ASSIGNMENT)} : {self.if_false.emit_at(ASSIGNMENT)}"


@dataclass
class JSAssignExpr(JSExpr):
	target: JSExpr
	value: JSExpr

	binding: ClassVar[int] = ASSIGNMENT

	@override
	def emit(self) -> str:
		return f"{self.target.emit_at(MEMBER)} = {self.value.emit_at(ASSIGNMENT)}"


@dataclass
class JSComma(JSExpr):
	"""Sequence expression. Always parenthesized, so it reads as a primary."""

	values: Sequence[JSExpr]

	@override
	def emit(self) -> str:
		return "(" + _join(self.values) + ")"


@dataclass
class JSArrowFunction(JSExpr):
	params_code: str  # 'x' or '(a, b)'
	body: JSExpr

	binding: ClassVar[int] = ASSIGNMENT

	@override
	def emit(self) -> str:
		if isinstance(self.body, JSObjectExpr):
			return f"{self.params_code} => ({self.body.emit()})"
		return f"{self.params_code} => {self.body.emit_at(ASSIGNMENT)}"


# =============================================================================
# Access and calls
# =============================================================================


@dataclass
class JSMember(JSExpr):
	obj: JSExpr
	prop: str

	@override
	def emit(self) -> str:
		return f"{self.obj.emit_at(MEMBER)}.{self.prop}"


@dataclass
class JSSubscript(JSExpr):
	obj: JSExpr
	index: JSExpr

	@override
	def emit(self) -> str:
		return f"{self.obj.emit_at(MEMBER)}[{self.index.emit()}]"


@dataclass
class JSCall(JSExpr):
	callee: JSExpr
	args: Sequence[JSExpr]

	@override
	def emit(self) -> str:
		return f"{self.callee.emit_at(MEMBER)}({_join(self.args)})"


@dataclass
class JSMemberCall(JSExpr):
	obj: JSExpr
	method: str
	args: Sequence[JSExpr]

	@override
	def emit(self) -> str:
		return f"{self.obj.emit_at(MEMBER)}.{self.method}({_join(self.args)})"


@dataclass
class JSNew(JSExpr):
	ctor: JSExpr
	args: Sequence[JSExpr]

	@override
	def emit(self) -> str:
		return f"new {self.ctor.emit_at(MEMBER)}({_join(self.args)})"


# =============================================================================
# Cell containers
# =============================================================================


@dataclass
class JSStateRef(JSExpr):
	"""The client container of a cell: ``state['s0']``."""

	slot: str

	@override
	def emit(self) -> str:
		escaped = self.slot.replace("\\", "\\\\").replace("'", "\\'")
		return f"state['{escaped}']"


def state_get(slot: str) -> JSExpr:
	return JSMemberCall(JSStateRef(slot), "get", [])


def state_set(slot: str, value: JSExpr) -> JSExpr:
	return JSMemberCall(JSStateRef(slot), "set", [value])


@dataclass
class JSPostfixUpdate(JSExpr):
	"""Read the old value, mutate the cell, yield the old value."""

	slot: str
	op: str  # '+' or '-'
	step: JSExpr

	@override
	def emit(self) -> str:
		ref = JSStateRef(self.slot).emit()
		step = _operand(self.step, OPERATOR_BINDING[self.op] + 1, self.op)
		return (
			f"(() => {{ const __old = {ref}.get(); "
			+ f"{ref}.set(__old {self.op} {step}); return __old; }})()"
		)


def _join(items: Sequence[JSExpr]) -> str:
	return ", ".join(item.emit_at(ASSIGNMENT) for item in items)


def _operand(child: JSExpr, minimum: int, parent_op: str) -> str:
	# JS rejects ?? mixed with && or || unless one side is parenthesized
	if parent_op == "??" and _is_logical(child, {"&&", "||"}):
		return f"({child.emit()})"
	if parent_op in {"&&", "||"} and _is_logical(child, {"??"}):
		return f"({child.emit()})"
	return child.emit_at(minimum)


def _is_logical(expr: JSExpr, ops: set[str]) -> bool:
	if isinstance(expr, JSLogicalChain):
		return len(expr.values) > 1 and expr.op in ops
	return isinstance(expr, JSBinary) and expr.op in ops


# =============================================================================
# Host values
# =============================================================================


def to_js_expr(value: object) -> JSExpr:
	"""JS literal for a recorded operation value.

	Argument references (``{"type": "arg", "index": i}``) become
	``arguments[i]`` wherever they are nested. Other values must be JSON-like.
	"""
	if isinstance(value, JSExpr):
		return value
	if is_arg_ref(value):
		index: Any = value["index"]  # pyright: ignore[reportIndexIssue]
		return JSSubscript(JSIdentifier("arguments"), JSNumber(index))
	if value is None:
		return JSNull()
	if isinstance(value, bool):
		return JSBoolean(value)
	if isinstance(value, (int, float)):
		return JSNumber(value)
	if isinstance(value, str):
		return JSString(value)
	if isinstance(value, (list, tuple)):
		return JSArray([to_js_expr(v) for v in value])  # pyright: ignore[reportUnknownVariableType]
	if isinstance(value, dict):
		return JSObjectExpr(
			[JSProp(JSString(str(k)), to_js_expr(v)) for k, v in value.items()]  # pyright: ignore[reportUnknownVariableType, reportUnknownArgumentType]
		)
	raise TypeError(f"Cannot convert {type(value).__name__} to JSExpr")


def json_literal(value: object) -> str:
	"""JSON text of a literal, safe to inline in a script."""
	return (
		json.dumps(value, ensure_ascii=False)
		.replace("</", "<\\/")
		.replace("\u2028", "\\u2028")
		.replace("\u2029", "\\u2029")
	)


__all__ = [
	"BINARY_OPERATORS",
	"COMPARE_OPERATORS",
	"OPERATOR_BINDING",
	"UNARY_OPERATORS",
	"JSArray",
	"JSArrowFunction",
	"JSAssignExpr",
	"JSBinary",
	"JSBoolean",
	"JSCall",
	"JSComma",
	"JSComputedProp",
	"JSExpr",
	"JSIdentifier",
	"JSLogicalChain",
	"JSMember",
	"JSMemberCall",
	"JSNew",
	"JSNull",
	"JSNumber",
	"JSObjectExpr",
	"JSPostfixUpdate",
	"JSProp",
	"JSRaw",
	"JSSpread",
	"JSStateRef",
	"JSString",
	"JSSubscript",
	"JSTemplate",
	"JSTertiary",
	"JSUnary",
	"JSUndefined",
	"json_literal",
	"state_get",
	"state_set",
	"to_js_expr",
]
