"""
Compile short Python expressions into JavaScript that runs against the
client state containers.

Names bound to cells compile to ``state['<slot>'].get()`` reads, assignments
to a bound name compile to ``.set(...)``. Everything else is translated
structurally from the Python AST. Text that does not parse as Python goes
through a textual fallback that only substitutes cell reads.
"""

from __future__ import annotations

import ast
import logging
import re
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass

from palm.errors import CompileError, report
from palm.javascript.builtins import BUILTINS, emit_method
from palm.javascript.nodes import (
	BINARY_OPERATORS,
	COMPARE_OPERATORS,
	UNARY_OPERATORS,
	JSArray,
	JSArrowFunction,
	JSAssignExpr,
	JSBinary,
	JSBoolean,
	JSCall,
	JSComma,
	JSComputedProp,
	JSExpr,
	JSIdentifier,
	JSLogicalChain,
	JSMember,
	JSMemberCall,
	JSNew,
	JSNull,
	JSNumber,
	JSObjectExpr,
	JSPostfixUpdate,
	JSProp,
	JSRaw,
	JSSpread,
	JSStateRef,
	JSString,
	JSSubscript,
	JSTemplate,
	JSTertiary,
	JSUnary,
	state_get,
	state_set,
)

logger = logging.getLogger(__name__)

# Cell methods spelled the Python way -> client container methods
CELL_METHOD_RENAMES: dict[str, str] = {
	"append": "push",
	"extend": "merge",
}

POSTFIX_METHODS: dict[str, str] = {
	"post_increment": "+",
	"post_decrement": "-",
}


@dataclass(frozen=True)
class CompiledExpression:
	code: str
	cells: frozenset[str]
	"""Slots of the cells the expression reads or writes."""
	free_names: frozenset[str]
	"""Unbound identifiers passed through verbatim."""
	structural: bool
	"""False when the textual fallback produced the code."""
	params: frozenset[str] = frozenset()
	"""Renamed names (action parameters) the expression uses."""


def param_renames(params: Sequence[str]) -> dict[str, str]:
	"""Map action parameter names to the generated function's arguments."""
	return {name: f"arguments[{i}]" for i, name in enumerate(params)}


class ExpressionCompiler:
	"""Translate one Python expression or assignment into a JS expression.

	``bindings`` maps host names to cell slots. ``rename`` maps names to raw
	JS (action parameters become ``arguments[i]``). A compiler instance can be
	reused across expressions.
	"""

	bindings: dict[str, str]
	rename: dict[str, str]

	def __init__(
		self,
		bindings: Mapping[str, str] | None = None,
		*,
		rename: Mapping[str, str] | None = None,
	) -> None:
		self.bindings = dict(bindings or {})
		self.rename = dict(rename or {})
		self._shadowed: set[str] = set()
		self._cells: set[str] = set()
		self._free: set[str] = set()
		self._params: set[str] = set()

	def compile(self, source: str, *, target: str | None = None) -> str:
		return self.compile_expression(source, target=target).code

	def compile_expression(
		self, source: str, *, target: str | None = None
	) -> CompiledExpression:
		"""Compile ``source``. Never raises on untranslatable input.

		When neither the structural pass nor the fallback yields usable code,
		the result reads ``target`` (or is ``undefined``) and the degradation is
		reported.
		"""
		text = source.strip()
		if not text:
			return self._inert(source, target, "empty expression")

		self._cells = set()
		self._free = set()
		self._params = set()
		self._shadowed = set()
		try:
			code = self.compile_structural(text)
		except (SyntaxError, CompileError) as exc:
			logger.debug("Structural compile failed for %r: %s", text, exc)
		else:
			return CompiledExpression(
				code,
				frozenset(self._cells),
				frozenset(self._free),
				True,
				frozenset(self._params),
			)

		code, cells = self.fallback(text)
		if not _usable(code) or (code == text and cells):
			return self._inert(source, target, "textual fallback produced no usable code")
		report(
			"compile.fallback",
			"Expression compiled with textual fallback",
			expression=text,
			compiled=code,
		)
		return CompiledExpression(
			code, frozenset(cells), frozenset(), False, frozenset(self._params)
		)

	def _inert(self, source: str, target: str | None, reason: str) -> CompiledExpression:
		report("compile.empty", reason, expression=source, target=target)
		if target is None:
			return CompiledExpression("undefined", frozenset(), frozenset(), False)
		return CompiledExpression(
			state_get(target).emit(), frozenset({target}), frozenset(), False
		)

	# --- Structural pass -------------------------------------------------------

	def compile_structural(self, text: str) -> str:
		"""Compile via the Python AST. Raises SyntaxError or CompileError."""
		tree = ast.parse(text, mode="exec")
		if len(tree.body) != 1:
			raise CompileError("Expected a single expression or assignment")
		return self.emit_stmt(tree.body[0]).emit()

	def _slot(self, name: str) -> str | None:
		if name in self._shadowed or name in self.rename:
			return None
		return self.bindings.get(name)

	def emit_stmt(self, node: ast.stmt) -> JSExpr:
		if isinstance(node, ast.Expr):
			return self.emit_expr(node.value)
		if isinstance(node, ast.Return) and node.value is not None:
			return self.emit_expr(node.value)
		if isinstance(node, ast.Assign):
			if len(node.targets) != 1:
				raise CompileError("Chained assignment is not supported")
			return self._assign(node.targets[0], self.emit_expr(node.value))
		if isinstance(node, ast.AnnAssign) and node.value is not None:
			return self._assign(node.target, self.emit_expr(node.value))
		if isinstance(node, ast.AugAssign):
			return self._aug_assign(node)
		raise CompileError(f"Unsupported statement: {type(node).__name__}")

	def _assign(self, target: ast.expr, value: JSExpr) -> JSExpr:
		if isinstance(target, ast.Name):
			slot = self._slot(target.id)
			if slot is not None:
				self._cells.add(slot)
				return state_set(slot, value)
			return JSAssignExpr(self.emit_expr(target), value)
		if isinstance(target, ast.Subscript):
			if isinstance(target.value, ast.Name) and not isinstance(target.slice, ast.Slice):
				slot = self._slot(target.value.id)
				if slot is not None:
					self._cells.add(slot)
					key = self.emit_expr(target.slice)
					return JSMemberCall(JSStateRef(slot), "update", [key, value])
			return JSAssignExpr(self.emit_expr(target), value)
		if isinstance(target, ast.Attribute):
			return JSAssignExpr(self.emit_expr(target), value)
		raise CompileError(f"Unsupported assignment target: {type(target).__name__}")

	def _aug_assign(self, node: ast.AugAssign) -> JSExpr:
		rhs = self.emit_expr(node.value)
		target = node.target
		if isinstance(target, ast.Name):
			slot = self._slot(target.id)
			if slot is not None:
				self._cells.add(slot)
				return state_set(slot, _binop(state_get(slot), node.op, rhs))
			current = self.emit_expr(target)
			return JSAssignExpr(current, _binop(current, node.op, rhs))
		if (
			isinstance(target, ast.Subscript)
			and isinstance(target.value, ast.Name)
			and not isinstance(target.slice, ast.Slice)
		):
			slot = self._slot(target.value.id)
			if slot is not None:
				self._cells.add(slot)
				key = self.emit_expr(target.slice)
				current = JSSubscript(state_get(slot), key)
				updated = _binop(current, node.op, rhs)
				return JSMemberCall(JSStateRef(slot), "update", [key, updated])
		raise CompileError("Unsupported augmented assignment target")

	def emit_expr(self, node: ast.expr) -> JSExpr:
		if isinstance(node, ast.Constant):
			return _constant(node.value)
		if isinstance(node, ast.Name):
			return self._name(node.id)
		if isinstance(node, ast.NamedExpr):
			value = self.emit_expr(node.value)
			slot = self._slot(node.target.id)
			if slot is not None:
				# Mutate, then read back the new value
				self._cells.add(slot)
				return JSComma([state_set(slot, value), state_get(slot)])
			return JSAssignExpr(self._name(node.target.id), value)
		if isinstance(node, (ast.List, ast.Tuple)):
			return JSArray(self._elements(node.elts))
		if isinstance(node, ast.Set):
			return JSNew(JSIdentifier("Set"), [JSArray(self._elements(node.elts))])
		if isinstance(node, ast.Dict):
			props: list[JSProp | JSComputedProp | JSSpread] = []
			for k, v in zip(node.keys, node.values, strict=True):
				if k is None:
					props.append(JSSpread(self.emit_expr(v)))
				elif isinstance(k, ast.Constant) and isinstance(k.value, str):
					props.append(JSProp(JSString(k.value), self.emit_expr(v)))
				else:
					props.append(JSComputedProp(self.emit_expr(k), self.emit_expr(v)))
			return JSObjectExpr(props)
		if isinstance(node, ast.BinOp):
			return _binop(self.emit_expr(node.left), node.op, self.emit_expr(node.right))
		if isinstance(node, ast.UnaryOp):
			op = type(node.op)
			if op not in UNARY_OPERATORS:
				raise CompileError(f"Unsupported unary operator: {op.__name__}")
			return JSUnary(UNARY_OPERATORS[op], self.emit_expr(node.operand))
		if isinstance(node, ast.BoolOp):
			op = "&&" if isinstance(node.op, ast.And) else "||"
			return JSLogicalChain(op, [self.emit_expr(v) for v in node.values])
		if isinstance(node, ast.Compare):
			operands = [node.left, *node.comparators]
			exprs = [self.emit_expr(e) for e in operands]
			parts = [
				_comparison(exprs[i], operands[i], op, exprs[i + 1], operands[i + 1])
				for i, op in enumerate(node.ops)
			]
			return JSLogicalChain("&&", parts)
		if isinstance(node, ast.IfExp):
			nullish = self._nullish(node)
			if nullish is not None:
				return nullish
			return JSTertiary(
				self.emit_expr(node.test),
				self.emit_expr(node.body),
				self.emit_expr(node.orelse),
			)
		if isinstance(node, ast.Call):
			return self._call(node)
		if isinstance(node, ast.Attribute):
			if isinstance(node.value, ast.Name):
				slot = self._slot(node.value.id)
				if slot is not None:
					self._cells.add(slot)
					return JSMember(JSStateRef(slot), node.attr)
			return JSMember(self.emit_expr(node.value), node.attr)
		if isinstance(node, ast.Subscript):
			return self._subscript(node)
		if isinstance(node, ast.JoinedStr):
			return self._fstring(node)
		if isinstance(node, ast.Lambda):
			return self._lambda(node)
		if isinstance(node, ast.ListComp):
			return self._list_comp(node)
		raise CompileError(f"Unsupported expression: {type(node).__name__}")

	def _name(self, name: str) -> JSExpr:
		if name in self._shadowed:
			return JSIdentifier(name)
		if name in self.rename:
			self._params.add(name)
			return JSRaw(self.rename[name])
		slot = self.bindings.get(name)
		if slot is not None:
			self._cells.add(slot)
			return state_get(slot)
		self._free.add(name)
		return JSIdentifier(name)

	def _elements(self, elts: list[ast.expr]) -> list[JSExpr]:
		out: list[JSExpr] = []
		for e in elts:
			if isinstance(e, ast.Starred):
				out.append(JSSpread(self.emit_expr(e.value)))
			else:
				out.append(self.emit_expr(e))
		return out

	def _call(self, node: ast.Call) -> JSExpr:
		if node.keywords:
			raise CompileError("Keyword arguments are not supported")
		args = self._elements(node.args)
		func = node.func
		if isinstance(func, ast.Attribute):
			receiver = func.value
			if isinstance(receiver, ast.Name):
				slot = self._slot(receiver.id)
				if slot is not None:
					self._cells.add(slot)
					if func.attr in POSTFIX_METHODS:
						step = args[0] if args else JSNumber(1)
						return JSPostfixUpdate(slot, POSTFIX_METHODS[func.attr], step)
					method = CELL_METHOD_RENAMES.get(func.attr, func.attr)
					return JSMemberCall(JSStateRef(slot), method, args)
			return emit_method(self.emit_expr(receiver), func.attr, args)
		if (
			isinstance(func, ast.Name)
			and func.id in BUILTINS
			and self._slot(func.id) is None
			and func.id not in self.rename
			and func.id not in self._shadowed
		):
			try:
				return BUILTINS[func.id](*args)
			except TypeError as exc:
				raise CompileError(f"Invalid call to {func.id}(): {exc}") from exc
		return JSCall(self.emit_expr(func), args)

	def _subscript(self, node: ast.Subscript) -> JSExpr:
		value = self.emit_expr(node.value)
		sl = node.slice
		if isinstance(sl, ast.Tuple):
			raise CompileError("Tuple subscripts are not supported")
		if isinstance(sl, ast.Slice):
			if sl.step is not None:
				raise CompileError("Slice steps are not supported")
			if sl.lower is None and sl.upper is None:
				return JSMemberCall(value, "slice", [])
			start = JSNumber(0) if sl.lower is None else self.emit_expr(sl.lower)
			if sl.upper is None:
				return JSMemberCall(value, "slice", [start])
			return JSMemberCall(value, "slice", [start, self.emit_expr(sl.upper)])
		# Negative index -> at()
		if isinstance(sl, ast.UnaryOp) and isinstance(sl.op, ast.USub):
			return JSMemberCall(value, "at", [JSUnary("-", self.emit_expr(sl.operand))])
		return JSSubscript(value, self.emit_expr(sl))

	def _fstring(self, node: ast.JoinedStr) -> JSExpr:
		parts: list[str | JSExpr] = []
		for part in node.values:
			if isinstance(part, ast.Constant) and isinstance(part.value, str):
				parts.append(part.value)
			elif isinstance(part, ast.FormattedValue):
				if part.format_spec is not None or part.conversion != -1:
					raise CompileError("Format specs in f-strings are not supported")
				parts.append(self.emit_expr(part.value))
			else:
				raise CompileError("Unsupported f-string component")
		return JSTemplate(parts)

	def _lambda(self, node: ast.Lambda) -> JSExpr:
		args = node.args
		if args.vararg or args.kwarg or args.kwonlyargs or args.posonlyargs or args.defaults:
			raise CompileError("Only plain positional lambda parameters are supported")
		names = [a.arg for a in args.args]
		body = self._with_shadowed(names, lambda: self.emit_expr(node.body))
		params = names[0] if len(names) == 1 else "(" + ", ".join(names) + ")"
		return JSArrowFunction(params, body)

	def _list_comp(self, node: ast.ListComp) -> JSExpr:
		if len(node.generators) != 1:
			raise CompileError("Nested comprehensions are not supported")
		gen = node.generators[0]
		if not isinstance(gen.target, ast.Name) or gen.is_async:
			raise CompileError("Comprehension target must be a single name")
		name = gen.target.id
		result = self.emit_expr(gen.iter)
		for cond in gen.ifs:
			test = self._with_shadowed([name], lambda c=cond: self.emit_expr(c))
			result = JSMemberCall(result, "filter", [JSArrowFunction(name, test)])
		if isinstance(node.elt, ast.Name) and node.elt.id == name:
			return result
		elt = self._with_shadowed([name], lambda: self.emit_expr(node.elt))
		return JSMemberCall(result, "map", [JSArrowFunction(name, elt)])

	def _with_shadowed(self, names: list[str], build: Callable[[], JSExpr]) -> JSExpr:
		saved = self._shadowed
		self._shadowed = saved | set(names)
		try:
			return build()
		finally:
			self._shadowed = saved

	def _nullish(self, node: ast.IfExp) -> JSExpr | None:
		"""`x if x is not None else y` and `y if x is None else x` -> `x ?? y`"""
		test = node.test
		if not (
			isinstance(test, ast.Compare)
			and len(test.ops) == 1
			and isinstance(test.comparators[0], ast.Constant)
			and test.comparators[0].value is None
		):
			return None
		subject = ast.dump(test.left)
		if isinstance(test.ops[0], ast.IsNot) and ast.dump(node.body) == subject:
			return JSBinary(self.emit_expr(node.body), "??", self.emit_expr(node.orelse))
		if isinstance(test.ops[0], ast.Is) and ast.dump(node.orelse) == subject:
			return JSBinary(self.emit_expr(node.orelse), "??", self.emit_expr(node.body))
		return None

	# --- Textual fallback ------------------------------------------------------

	def fallback(self, text: str) -> tuple[str, set[str]]:
		"""Substitute cell reads and Python spellings, leave the rest verbatim.

		String literals are never touched. A bound name followed by ``.``
		becomes the container itself so ``count.get()`` still works.
		"""
		cells: set[str] = set()

		def replace(m: re.Match[str]) -> str:
			if m.group("string") is not None:
				return m.group(0)
			op = m.group("op")
			if op is not None:
				return _FALLBACK_OPS.get(op, op)
			name = m.group("name")
			start = m.start()
			if start > 0 and (text[start - 1] == "." or text[start - 1].isalnum()):
				return name
			if name in _FALLBACK_KEYWORDS:
				return _FALLBACK_KEYWORDS[name]
			if name in self.rename:
				self._params.add(name)
				return self.rename[name]
			slot = self.bindings.get(name)
			if slot is None:
				return name
			cells.add(slot)
			rest = text[m.end() :].lstrip()
			if rest.startswith(".") and not rest.startswith("..."):
				return JSStateRef(slot).emit()
			return state_get(slot).emit()

		return _TOKEN_RE.sub(replace, text), cells


def compile_expression(
	source: str,
	bindings: Mapping[str, str] | None = None,
	*,
	rename: Mapping[str, str] | None = None,
	target: str | None = None,
) -> CompiledExpression:
	return ExpressionCompiler(bindings, rename=rename).compile_expression(
		source, target=target
	)


# =============================================================================
# Helpers
# =============================================================================

_TOKEN_RE = re.compile(
	r"""(?P<string>'(?:\\.|[^'\\])*'|"(?:\\.|[^"\\])*"|`(?:\\.|[^`\\])*`)"""
	+ r"""|(?P<op>===|!==|==|!=)"""
	+ r"""|(?P<name>[A-Za-z_$][\w$]*)"""
)

_STRING_RE = re.compile(r"""'(?:\\.|[^'\\])*'|"(?:\\.|[^"\\])*"|`(?:\\.|[^`\\])*`""")

# Assigning to a call result is a JS syntax error
_BAD_ASSIGN_RE = re.compile(r"\)\s*(?:[-+*/%]|\*\*)?=(?![=>])")

_FALLBACK_OPS: dict[str, str] = {"==": "===", "!=": "!=="}

_FALLBACK_KEYWORDS: dict[str, str] = {
	"and": "&&",
	"or": "||",
	"not": "!",
	"None": "null",
	"True": "true",
	"False": "false",
}

_CLOSERS: dict[str, str] = {")": "(", "]": "[", "}": "{"}


def _usable(code: str) -> bool:
	"""Cheap syntax sanity check so a broken fallback never reaches the module."""
	if not code.strip():
		return False
	stripped = _STRING_RE.sub('""', code)
	if any(q in stripped.replace('""', "") for q in "'\"`"):
		return False
	if _BAD_ASSIGN_RE.search(stripped):
		return False
	stack: list[str] = []
	for ch in stripped:
		if ch in "([{":
			stack.append(ch)
		elif ch in _CLOSERS:
			if not stack or stack.pop() != _CLOSERS[ch]:
				return False
	return not stack


def _constant(value: object) -> JSExpr:
	if isinstance(value, str):
		return JSString(value)
	if value is None:
		return JSNull()
	if isinstance(value, bool):
		return JSBoolean(value)
	if isinstance(value, (int, float)):
		return JSNumber(value)
	raise CompileError(f"Unsupported constant: {type(value).__name__}")


def _binop(left: JSExpr, op: ast.operator, right: JSExpr) -> JSExpr:
	if isinstance(op, ast.FloorDiv):
		return JSMemberCall(JSIdentifier("Math"), "floor", [JSBinary(left, "/", right)])
	op_type = type(op)
	if op_type not in BINARY_OPERATORS:
		raise CompileError(f"Operator not allowed: {op_type.__name__}")
	return JSBinary(left, BINARY_OPERATORS[op_type], right)


def _comparison(
	left_expr: JSExpr,
	left_node: ast.expr,
	op: ast.cmpop,
	right_expr: JSExpr,
	right_node: ast.expr,
) -> JSExpr:
	if isinstance(op, (ast.Is, ast.IsNot)):
		is_not = isinstance(op, ast.IsNot)
		if isinstance(right_node, ast.Constant) and right_node.value is None:
			return JSBinary(left_expr, "!=" if is_not else "==", JSNull())
		if isinstance(left_node, ast.Constant) and left_node.value is None:
			return JSBinary(right_expr, "!=" if is_not else "==", JSNull())
		return JSBinary(left_expr, "!==" if is_not else "===", right_expr)
	if isinstance(op, (ast.In, ast.NotIn)):
		membership = JSCall(JSIdentifier("palmContains"), [right_expr, left_expr])
		if isinstance(op, ast.NotIn):
			return JSUnary("!", membership)
		return membership
	op_type = type(op)
	if op_type not in COMPARE_OPERATORS:
		raise CompileError(f"Comparison not allowed: {op_type.__name__}")
	return JSBinary(left_expr, COMPARE_OPERATORS[op_type], right_expr)


__all__ = [
	"CompiledExpression",
	"ExpressionCompiler",
	"compile_expression",
	"param_renames",
]
