"""
Rewrite operator sugar on cells into explicit cell-API calls.

Python cannot intercept rebinding a name, so ``count += 1`` inside a handler
would replace the cell with an int. Before tracing, the handler's source is
parsed, assignments to bound names are rewritten into ``increment``/``set``
calls, and the function is recompiled with the same closure values.

Right-hand sides and container keys are wrapped in ``ExpressionReference`` so
the tracer can compile their text for the client. Locals assigned once at the
top of the handler are inlined into that text, so `double = count * 2` followed
by `total = double + 1` records `count * 2 + 1` rather than a traced number.
"""

from __future__ import annotations

import ast
import copy
import inspect
import logging
import textwrap
from collections.abc import Callable, Iterable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from types import CodeType, FunctionType
from typing import TYPE_CHECKING, Any

from typing_extensions import override

from palm.errors import report
from palm.state import ExpressionReference, StateCell

if TYPE_CHECKING:
	from palm.tracer import ComponentContext

logger = logging.getLogger(__name__)

REF_NAME = "__palm_ref__"
FACTORY_NAME = "__palm_factory__"

# Methods whose value argument is wrapped in an expression reference
_VALUE_METHODS: dict[str, int] = {"set": 0, "push": 0, "merge": 0, "update": 1}


@dataclass
class RewriteResult:
	source: str
	changed: bool
	function: ast.FunctionDef | None = None
	unsupported: list[str] = field(default_factory=list)


_REWRITE_CACHE: dict[tuple[CodeType, frozenset[str]], RewriteResult] = {}


def clear_rewrite_cache() -> None:
	_REWRITE_CACHE.clear()


def closure_cells(fn: Callable[..., Any]) -> dict[str, StateCell]:
	"""Cells a function captures by closure, keyed by the captured name."""
	code = getattr(fn, "__code__", None)
	closure = getattr(fn, "__closure__", None)
	if code is None or not closure:
		return {}
	out: dict[str, StateCell] = {}
	for name, cell in zip(code.co_freevars, closure, strict=True):
		try:
			value = cell.cell_contents
		except ValueError:
			continue
		if isinstance(value, StateCell):
			out[name] = value
	return out


def bound_cells(
	fn: Callable[..., Any], context: "ComponentContext | None" = None
) -> dict[str, StateCell]:
	"""Cells a handler refers to by name.

	Closure captures come first, then module globals holding cells, then
	names the cells were registered under on ``context``.
	"""
	cells = closure_cells(fn)
	code = getattr(fn, "__code__", None)
	if code is None:
		return cells
	fn_globals: dict[str, Any] = getattr(fn, "__globals__", {})
	for name in code.co_names:
		value = fn_globals.get(name)
		if isinstance(value, StateCell):
			cells.setdefault(name, value)
	if context is not None:
		referenced = {*code.co_names, *code.co_varnames, *code.co_freevars}
		for name, cell in context.cells_by_name.items():
			if name in referenced:
				cells.setdefault(name, cell)
	return cells


class SourceRewriter(ast.NodeTransformer):
	"""Turn mutations of bound names into cell-API calls.

	Reads of a bound name become ``name.get()`` except where the name is the
	object of an attribute, method call or subscript.
	"""

	def __init__(self, bound: Iterable[str], source: str = "") -> None:
		self.bound = set(bound)
		self.source = source
		self.changed = False
		self.unsupported: list[str] = []
		self._shadowed: set[str] = set()
		# Inlinable locals: name -> definition in source form, and the bound
		# names that definition reads
		self._locals: dict[str, ast.expr] = {}
		self._local_reads: dict[str, set[str]] = {}
		self._top: ast.stmt | None = None

	def _is_bound(self, name: str) -> bool:
		return name in self.bound and name not in self._shadowed

	@contextmanager
	def _shadow(self, names: Iterable[str]) -> Iterator[None]:
		saved = self._shadowed
		self._shadowed = saved | set(names)
		try:
			yield
		finally:
			self._shadowed = saved

	def _text(self, node: ast.expr) -> str:
		inlined = self._inline(node)
		if inlined is not node:
			return ast.unparse(inlined)
		segment = ast.get_source_segment(self.source, node) if self.source else None
		return segment if segment is not None else ast.unparse(node)

	def _inline(self, node: ast.expr) -> ast.expr:
		"""``node`` with known locals replaced by their definitions, or ``node``."""
		inner = _scoped_names(node)
		names = {
			n.id
			for n in ast.walk(node)
			if isinstance(n, ast.Name)
			and isinstance(n.ctx, ast.Load)
			and n.id in self._locals
			and n.id not in inner
		}
		if not names:
			return node
		return _Inliner({n: self._locals[n] for n in names}).visit(copy.deepcopy(node))

	def _define_local(self, name: str, definition: ast.expr) -> None:
		self._locals[name] = definition
		self._local_reads[name] = {
			n.id for n in ast.walk(definition) if isinstance(n, ast.Name) and n.id in self.bound
		}

	def _forget_local(self, name: str) -> None:
		self._locals.pop(name, None)
		self._local_reads.pop(name, None)

	def _invalidate(self, cell_name: str) -> None:
		"""Drop inlinable locals computed from a cell that is being mutated."""
		for name, reads in list(self._local_reads.items()):
			if cell_name in reads:
				self._forget_local(name)

	def _inlinable(self, node: ast.stmt, value: ast.expr) -> bool:
		if node is not self._top:
			return False
		for n in ast.walk(value):
			if isinstance(n, (ast.NamedExpr, ast.Await, ast.Yield, ast.YieldFrom)):
				return False
			# Calls on a cell other than get() mutate it
			if (
				isinstance(n, ast.Call)
				and isinstance(n.func, ast.Attribute)
				and isinstance(n.func.value, ast.Name)
				and self._is_bound(n.func.value.id)
				and n.func.attr != "get"
			):
				return False
		return True

	def _get(self, name: str) -> ast.expr:
		return ast.Call(
			func=ast.Attribute(value=ast.Name(id=name, ctx=ast.Load()), attr="get", ctx=ast.Load()),
			args=[],
			keywords=[],
		)

	def _ref(self, value: ast.expr, text: str) -> ast.expr:
		return ast.Call(
			func=ast.Name(id=REF_NAME, ctx=ast.Load()),
			args=[value, ast.Constant(value=text)],
			keywords=[],
		)

	def _method(self, name: str, method: str, args: list[ast.expr]) -> ast.stmt:
		self.changed = True
		self._invalidate(name)
		call = ast.Call(
			func=ast.Attribute(value=ast.Name(id=name, ctx=ast.Load()), attr=method, ctx=ast.Load()),
			args=args,
			keywords=[],
		)
		return ast.Expr(value=call)

	def _visit_body(self, body: list[ast.stmt], *, top: bool = False) -> list[ast.stmt]:
		out: list[ast.stmt] = []
		for stmt in body:
			if top:
				self._top = stmt
			result = self.visit(stmt)
			if result is None:
				continue
			if isinstance(result, list):
				out.extend(result)  # pyright: ignore[reportUnknownArgumentType]
			else:
				out.append(result)
		return out or [ast.Pass()]

	def visit_handler(self, node: ast.FunctionDef) -> ast.FunctionDef:
		"""Rewrite the handler itself; only its direct statements define inlinable locals."""
		node.args = self.visit(node.args)
		with self._shadow(_arg_names(node.args)):
			node.body = self._visit_body(node.body, top=True)
		self._top = None
		return node

	# --- Scopes ----------------------------------------------------------------

	@override
	def visit_FunctionDef(self, node: ast.FunctionDef) -> ast.FunctionDef:
		node.args = self.visit(node.args)
		with self._shadow(_arg_names(node.args)):
			node.body = self._visit_body(node.body)
		return node

	@override
	def visit_Lambda(self, node: ast.Lambda) -> ast.Lambda:
		node.args = self.visit(node.args)
		with self._shadow(_arg_names(node.args)):
			node.body = self.visit(node.body)
		return node

	@override
	def visit_Global(self, node: ast.Global) -> Any:
		return self._strip_declaration(node)

	@override
	def visit_Nonlocal(self, node: ast.Nonlocal) -> Any:
		return self._strip_declaration(node)

	def _strip_declaration(
		self, node: ast.Global | ast.Nonlocal
	) -> ast.Global | ast.Nonlocal | None:
		names = [n for n in node.names if not self._is_bound(n)]
		if len(names) == len(node.names):
			return node
		self.changed = True
		if not names:
			return None
		node.names = names
		return node

	# --- Statements ------------------------------------------------------------

	@override
	def visit_Assign(self, node: ast.Assign) -> Any:
		if len(node.targets) == 1:
			target = node.targets[0]
			if isinstance(target, ast.Name) and self._is_bound(target.id):
				return self._assign_name(target.id, node.value)
			name = self._bound_subscript(target)
			if name is not None:
				assert isinstance(target, ast.Subscript)
				text = self._text(node.value)
				key = self._wrapped(target.slice)
				value = self.visit(node.value)
				return self._method(name, "update", [key, self._ref(value, text)])
		for target in node.targets:
			self._check_target(target)
		local: str | None = None
		if (
			len(node.targets) == 1
			and isinstance(node.targets[0], ast.Name)
			and self._inlinable(node, node.value)
		):
			local = node.targets[0].id
			definition = copy.deepcopy(self._inline(node.value))
		result = self.generic_visit(node)
		if local is not None:
			self._define_local(local, definition)
		return result

	@override
	def visit_AnnAssign(self, node: ast.AnnAssign) -> Any:
		if (
			node.value is not None
			and isinstance(node.target, ast.Name)
			and self._is_bound(node.target.id)
		):
			return self._assign_name(node.target.id, node.value)
		return self.generic_visit(node)

	@override
	def visit_AugAssign(self, node: ast.AugAssign) -> Any:
		target = node.target
		if isinstance(target, ast.Name) and self._is_bound(target.id):
			name = target.id
			step = _numeric(node.value)
			if step is not None and isinstance(node.op, ast.Add):
				return self._method(name, "increment", [step])
			if step is not None and isinstance(node.op, ast.Sub):
				return self._method(name, "decrement", [step])
			text = self._text(node.value)
			if isinstance(node.op, ast.Add) and isinstance(node.value, (ast.List, ast.Tuple)):
				return self._method(name, "merge", [self._ref(self.visit(node.value), text)])
			combined = ast.BinOp(left=self._get(name), op=node.op, right=self.visit(node.value))
			expression = f"{name} {_OPERATOR_SYMBOLS[type(node.op)]} ({text})"
			return self._method(name, "set", [self._ref(combined, expression)])
		name = self._bound_subscript(target)
		if name is not None:
			assert isinstance(target, ast.Subscript)
			key_text = self._text(target.slice)
			text = self._text(node.value)
			key = self.visit(target.slice)
			current = ast.Subscript(value=ast.Name(id=name, ctx=ast.Load()), slice=key, ctx=ast.Load())
			combined = ast.BinOp(left=current, op=node.op, right=self.visit(node.value))
			expression = f"{name}[{key_text}] {_OPERATOR_SYMBOLS[type(node.op)]} ({text})"
			key_ref = self._ref(copy.deepcopy(key), key_text)
			return self._method(name, "update", [key_ref, self._ref(combined, expression)])
		if (
			isinstance(target, ast.Name)
			and target.id in self._locals
			and self._inlinable(node, node.value)
		):
			local = target.id
			definition = ast.BinOp(
				left=copy.deepcopy(self._locals[local]),
				op=node.op,
				right=copy.deepcopy(self._inline(node.value)),
			)
			result = self.generic_visit(node)
			self._define_local(local, definition)
			return result
		return self.generic_visit(node)

	@override
	def visit_Delete(self, node: ast.Delete) -> Any:
		out: list[ast.stmt] = []
		rest: list[ast.expr] = []
		for target in node.targets:
			name = self._bound_subscript(target)
			if name is not None:
				assert isinstance(target, ast.Subscript)
				out.append(self._method(name, "remove", [self._wrapped(target.slice)]))
			else:
				rest.append(target)
		if not out:
			return self.generic_visit(node)
		if rest:
			out.append(ast.Delete(targets=rest))
		return out

	@override
	def visit_NamedExpr(self, node: ast.NamedExpr) -> Any:
		if self._is_bound(node.target.id):
			self.unsupported.append(f"walrus assignment to '{node.target.id}'")
		return self.generic_visit(node)

	def _assign_name(self, name: str, value: ast.expr) -> ast.stmt:
		step = self._step(name, value)
		if step is not None:
			method, amount = step
			return self._method(name, method, [amount])
		if (
			isinstance(value, ast.UnaryOp)
			and isinstance(value.op, ast.Not)
			and isinstance(value.operand, ast.Name)
			and value.operand.id == name
		):
			return self._method(name, "toggle", [])
		text = self._text(value)
		return self._method(name, "set", [self._ref(self.visit(value), text)])

	def _step(self, name: str, value: ast.expr) -> tuple[str, ast.expr] | None:
		"""`x = x + n`, `x = n + x` -> increment, `x = x - n` -> decrement"""
		if not isinstance(value, ast.BinOp):
			return None

		def is_self(node: ast.expr) -> bool:
			return isinstance(node, ast.Name) and node.id == name

		if isinstance(value.op, ast.Add):
			if is_self(value.left) and (n := _numeric(value.right)) is not None:
				return "increment", n
			if is_self(value.right) and (n := _numeric(value.left)) is not None:
				return "increment", n
		if isinstance(value.op, ast.Sub):
			if is_self(value.left) and (n := _numeric(value.right)) is not None:
				return "decrement", n
		return None

	def _bound_subscript(self, target: ast.expr) -> str | None:
		if (
			isinstance(target, ast.Subscript)
			and isinstance(target.value, ast.Name)
			and self._is_bound(target.value.id)
			and not isinstance(target.slice, ast.Slice)
		):
			return target.value.id
		return None

	def _check_target(self, target: ast.expr) -> None:
		for node in ast.walk(target):
			if isinstance(node, ast.Name) and isinstance(node.ctx, ast.Store) and self._is_bound(node.id):
				self.unsupported.append(f"unpacking assignment to '{node.id}'")

	# --- Expressions -----------------------------------------------------------

	@override
	def visit_Call(self, node: ast.Call) -> Any:
		func = node.func
		if (
			isinstance(func, ast.Attribute)
			and isinstance(func.value, ast.Name)
			and self._is_bound(func.value.id)
			and not node.keywords
		):
			name = func.value.id
			mapped = self._cell_method(name, func.attr, node.args)
			if mapped is not None:
				return mapped
			node.args = [self.visit(a) for a in node.args]
			if func.attr != "get":
				self._invalidate(name)
			return node
		return self.generic_visit(node)

	def _cell_method(self, name: str, method: str, args: list[ast.expr]) -> ast.expr | None:
		if any(isinstance(a, ast.Starred) for a in args):
			return None
		if method == "append" and len(args) == 1:
			return self._call(name, "push", [self._wrapped(args[0])])
		if method == "extend" and len(args) == 1:
			return self._call(name, "merge", [self._wrapped(args[0])])
		if method == "update" and len(args) == 1:
			return self._call(name, "merge", [self._wrapped(args[0])])
		if method in ("pop", "remove") and len(args) == 1 and not _is_ref_call(args[0]):
			return self._call(name, "remove", [self._wrapped(args[0])])
		if method in ("increment", "decrement") and len(args) == 1:
			if _numeric(args[0]) is None and not _is_ref_call(args[0]):
				return self._call(name, method, [self._wrapped(args[0])])
			return None
		index = _VALUE_METHODS.get(method)
		if index is not None and len(args) == index + 1 and not _is_ref_call(args[index]):
			wrapped = [self._wrapped(a) for a in args[:index]] + [self._wrapped(args[index])]
			return self._call(name, method, wrapped)
		return None

	def _wrapped(self, arg: ast.expr) -> ast.expr:
		text = self._text(arg)
		return self._ref(self.visit(arg), text)

	def _call(self, name: str, method: str, args: list[ast.expr]) -> ast.expr:
		statement = self._method(name, method, args)
		assert isinstance(statement, ast.Expr)
		return statement.value

	@override
	def visit_Attribute(self, node: ast.Attribute) -> Any:
		if isinstance(node.value, ast.Name) and self._is_bound(node.value.id):
			return node
		return self.generic_visit(node)

	@override
	def visit_Subscript(self, node: ast.Subscript) -> Any:
		if isinstance(node.value, ast.Name) and self._is_bound(node.value.id):
			node.slice = self.visit(node.slice)
			return node
		return self.generic_visit(node)

	@override
	def visit_Name(self, node: ast.Name) -> Any:
		if isinstance(node.ctx, ast.Load) and self._is_bound(node.id):
			self.changed = True
			return ast.copy_location(self._get(node.id), node)
		if not isinstance(node.ctx, ast.Load):
			self._forget_local(node.id)
		return node


class _Inliner(ast.NodeTransformer):
	def __init__(self, definitions: dict[str, ast.expr]) -> None:
		self.definitions = definitions

	@override
	def visit_Name(self, node: ast.Name) -> Any:
		definition = self.definitions.get(node.id)
		if definition is None or not isinstance(node.ctx, ast.Load):
			return node
		return copy.deepcopy(definition)


def _scoped_names(node: ast.expr) -> set[str]:
	"""Names bound inside ``node`` by lambdas and comprehensions."""
	names: set[str] = set()
	for n in ast.walk(node):
		if isinstance(n, ast.Lambda):
			names.update(_arg_names(n.args))
		elif isinstance(n, ast.Name) and isinstance(n.ctx, ast.Store):
			names.add(n.id)
	return names


def rewrite_source(
	source: str, bound: Iterable[str], *, name: str | None = None
) -> RewriteResult:
	"""Rewrite the function defined in ``source``.

	Returns the original text with ``changed=False`` when nothing was
	rewritten or when no function definition is found.
	"""
	source = textwrap.dedent(source)
	try:
		module = ast.parse(source)
	except SyntaxError as exc:
		return RewriteResult(source, False, None, [f"unparsable source: {exc.msg}"])
	fndefs = [
		n
		for n in ast.walk(module)
		if isinstance(n, ast.FunctionDef) and (name is None or n.name == name)
	]
	if not fndefs:
		return RewriteResult(source, False, None, [])
	fndef = fndefs[0]
	rewriter = SourceRewriter(bound, source)
	fndef.decorator_list = []
	fndef = rewriter.visit_handler(fndef)
	if not rewriter.changed:
		return RewriteResult(source, False, None, rewriter.unsupported)
	ast.fix_missing_locations(fndef)
	return RewriteResult(ast.unparse(fndef), True, fndef, rewriter.unsupported)


def rewrite_expression(expression: str, bound: Iterable[str]) -> str:
	"""Rewrite reads of bound names in a single expression into ``.get()`` calls."""
	text = expression.strip()
	try:
		tree = ast.parse(text, mode="eval")
	except SyntaxError:
		return expression
	rewriter = SourceRewriter(bound, text)
	tree = rewriter.visit(tree)
	if not rewriter.changed:
		return expression
	return ast.unparse(ast.fix_missing_locations(tree))


def callable_expression(fn: Callable[..., Any]) -> str | None:
	"""Source text of the value a lambda or single-return function computes."""
	try:
		source = textwrap.dedent(inspect.getsource(fn))
	except (OSError, TypeError):
		return None
	try:
		module = ast.parse(source)
	except SyntaxError:
		return None
	fn_name = getattr(fn, "__name__", "")
	for node in ast.walk(module):
		if fn_name == "<lambda>" and isinstance(node, ast.Lambda) and not node.args.args:
			return ast.unparse(node.body)
		if isinstance(node, ast.FunctionDef) and node.name == fn_name:
			body = [
				s
				for s in node.body
				if not (isinstance(s, ast.Expr) and isinstance(s.value, ast.Constant))
			]
			if len(body) == 1 and isinstance(body[0], ast.Return) and body[0].value is not None:
				return ast.unparse(body[0].value)
			return None
	return None


def rewrite_action(
	fn: Callable[..., Any], context: "ComponentContext | None" = None
) -> Callable[..., Any]:
	"""Return ``fn`` with operator sugar on cells rewritten, or ``fn`` itself.

	Bound names come from ``bound_cells``.
	"""
	if not isinstance(fn, FunctionType):
		return fn
	cells = bound_cells(fn, context)
	if not cells:
		return fn

	key = (fn.__code__, frozenset(cells))
	result = _REWRITE_CACHE.get(key)
	if result is None:
		try:
			source = inspect.getsource(fn)
		except (OSError, TypeError) as exc:
			report("rewrite.source", f"Source of '{fn.__name__}' is unavailable: {exc}")
			return fn
		result = rewrite_source(source, cells, name=fn.__name__)
		_REWRITE_CACHE[key] = result

	if result.unsupported:
		report(
			"rewrite.unsupported",
			f"Handler '{fn.__name__}' uses constructs that cannot be traced",
			constructs=result.unsupported,
		)
	if not result.changed or result.function is None:
		logger.debug("Handler %s needs no rewriting", fn.__name__)
		return fn

	try:
		rewritten = _recompile(fn, result.function, cells)
	except Exception as exc:
		report("rewrite.recompile", f"Could not recompile '{fn.__name__}': {exc}")
		return fn
	logger.debug("Rewrote handler %s:\n%s", fn.__name__, result.source)
	return rewritten


def _recompile(
	fn: FunctionType, fndef: ast.FunctionDef, cells: dict[str, StateCell]
) -> Callable[..., Any]:
	"""Compile the rewritten def inside a factory that rebinds its free names."""
	free = list(fn.__code__.co_freevars)
	names = free + [n for n in sorted(cells) if n not in free]
	params = ", ".join([REF_NAME, *names])
	body = textwrap.indent(ast.unparse(fndef), "    ")
	factory_source = f"def {FACTORY_NAME}({params}):\n{body}\n    return {fndef.name}\n"
	code = compile(factory_source, fn.__code__.co_filename, "exec")
	namespace: dict[str, Any] = {}
	exec(code, fn.__globals__, namespace)

	values: list[Any] = []
	closure = fn.__closure__ or ()
	for name, cell in zip(fn.__code__.co_freevars, closure, strict=True):
		values.append(cell.cell_contents)
	values.extend(cells[n] for n in names[len(free) :])

	rewritten = namespace[FACTORY_NAME](ExpressionReference, *values)
	rewritten.__defaults__ = fn.__defaults__
	rewritten.__kwdefaults__ = fn.__kwdefaults__
	rewritten.__name__ = fn.__name__
	rewritten.__qualname__ = fn.__qualname__
	rewritten.__doc__ = fn.__doc__
	return rewritten


def _arg_names(args: ast.arguments) -> list[str]:
	names = [a.arg for a in (*args.posonlyargs, *args.args, *args.kwonlyargs)]
	if args.vararg is not None:
		names.append(args.vararg.arg)
	if args.kwarg is not None:
		names.append(args.kwarg.arg)
	return names


def _numeric(node: ast.expr) -> ast.expr | None:
	if isinstance(node, ast.Constant):
		value = node.value
		if isinstance(value, (int, float)) and not isinstance(value, bool):
			return node
		return None
	if (
		isinstance(node, ast.UnaryOp)
		and isinstance(node.op, (ast.USub, ast.UAdd))
		and _numeric(node.operand) is not None
	):
		return node
	return None


def _is_ref_call(node: ast.expr) -> bool:
	return isinstance(node, ast.Call) and isinstance(node.func, ast.Name) and node.func.id == REF_NAME


_OPERATOR_SYMBOLS: dict[type[ast.operator], str] = {
	ast.Add: "+",
	ast.Sub: "-",
	ast.Mult: "*",
	ast.Div: "/",
	ast.FloorDiv: "//",
	ast.Mod: "%",
	ast.Pow: "**",
	ast.LShift: "<<",
	ast.RShift: ">>",
	ast.BitOr: "|",
	ast.BitXor: "^",
	ast.BitAnd: "&",
	ast.MatMult: "@",
}


__all__ = [
	"REF_NAME",
	"RewriteResult",
	"SourceRewriter",
	"bound_cells",
	"callable_expression",
	"clear_rewrite_cache",
	"closure_cells",
	"rewrite_action",
	"rewrite_expression",
	"rewrite_source",
]
