"""
Per-component registry of cells, actions and effects, and the action tracer.

Registering an action runs its handler once on the host with placeholder
arguments. While the trace is active every cell mutation is appended to an
operation log instead of being applied, and the log becomes the client-side
body of the action.
"""

from __future__ import annotations

import builtins
import copy
import inspect
import logging
import math
from collections.abc import Callable, Iterable, Iterator, Mapping, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any

from typing_extensions import override

from palm.env import env
from palm.errors import PayloadError, ReentrantTraceError, TraceError, report
from palm.javascript.compiler import ExpressionCompiler, param_renames
from palm.javascript.nodes import state_get
from palm.markup import finalize_html
from palm.rewriter import (
	bound_cells,
	callable_expression,
	closure_cells,
	rewrite_action,
	rewrite_expression,
)
from palm.state import ActionArgument, ExpressionReference, StateCell
from palm.types import (
	EffectDict,
	JsonValue,
	OperationDict,
	PayloadDict,
	StateRecordDict,
)

logger = logging.getLogger(__name__)

_MISSING: Any = object()

# Operations whose value may be a compiled expression instead of a literal
_EXPR_OPERATIONS: dict[str, str] = {"set": "expr", "push": "push_expr"}


@dataclass
class ActionRecord:
	name: str
	params: list[str]
	operations: list[OperationDict]
	handler: Callable[..., Any] | None = None
	"""The (possibly rewritten) handler that produced the trace."""
	initial_values: dict[str, Any] = field(default_factory=dict)
	"""Cell values at the start of the trace, keyed by slot."""
	bindings: dict[str, str] = field(default_factory=dict)
	"""Host names visible to the trace, mapped to slots."""


class Effect:
	"""A host callback re-run when any of its dependency cells change.

	With an expression, the effect also runs on the client.
	"""

	id: str
	callback: Callable[[], Any] | None
	dependencies: list[StateCell]
	expression: str | None
	source: str | None

	def __init__(
		self,
		context: "ComponentContext",
		effect_id: str,
		callback: Callable[[], Any] | None,
		dependencies: Sequence[StateCell],
		expression: str | None = None,
		source: str | None = None,
	) -> None:
		self._context = context
		self.id = effect_id
		self.callback = callback
		self.dependencies = list(dependencies)
		self.expression = expression
		self.source = source
		self._unsubscribes = [cell.subscribe(self._on_change) for cell in self.dependencies]

	def _on_change(self, _value: Any) -> None:
		# Host effects never fire from inside a trace
		if self._context.is_recording:
			return
		self.run()

	def run(self) -> None:
		if self.callback is not None:
			self.callback()

	def dispose(self) -> None:
		for unsubscribe in self._unsubscribes:
			unsubscribe()
		self._unsubscribes.clear()

	@override
	def __repr__(self) -> str:
		deps = ", ".join(cell.id for cell in self.dependencies)
		return f"Effect({self.id!r}, deps=[{deps}])"


@dataclass
class LifecycleHook:
	"""Code run when the component mounts or unmounts.

	``callback`` runs on the host through ``ComponentContext.run_hooks``;
	``expression`` is compiled and runs in the client module.
	"""

	phase: str
	callback: Callable[[], Any] | None = None
	expression: str | None = None
	source: str | None = None


class CellHandles(Mapping[str, StateCell]):
	"""Named cells handed to an explicit action body.

	Supports both ``cells["count"]`` and ``cells.count``.
	"""

	def __init__(self, cells: Mapping[str, StateCell]) -> None:
		self._cells = dict(cells)

	@override
	def __getitem__(self, key: str) -> StateCell:
		return self._cells[key]

	@override
	def __iter__(self) -> Iterator[str]:
		return iter(self._cells)

	@override
	def __len__(self) -> int:
		return len(self._cells)

	def __getattr__(self, name: str) -> StateCell:
		try:
			return self._cells[name]
		except KeyError:
			raise AttributeError(name) from None


class ComponentContext:
	"""All reactive declarations made while rendering one component."""

	states: dict[str, StateCell]
	actions: dict[str, ActionRecord]
	effects: dict[str, Effect]

	def __init__(self, component_id: str, *, rewrite: bool | None = None) -> None:
		if not component_id:
			raise ValueError("Component id must not be empty")
		self._id = component_id
		self._rewrite = rewrite
		self.states = {}
		self.actions = {}
		self.effects = {}
		self.hooks: list[LifecycleHook] = []
		self._names: dict[str, str] = {}
		self._recording: str | None = None
		self._buffer: list[OperationDict] = []
		self._params: list[str] = []
		self._trace_bindings: dict[str, str] = {}
		self._locals: frozenset[str] = frozenset()
		self._reads: set[str] = set()
		self._observe_reads = False

	@property
	def id(self) -> str:
		return self._id

	@property
	def bindings(self) -> dict[str, str]:
		"""Host names of cells, mapped to their slots."""
		return dict(self._names)

	@property
	def cells_by_name(self) -> dict[str, StateCell]:
		return {name: self.states[slot] for name, slot in self._names.items()}

	@property
	def is_recording(self) -> bool:
		return self._recording is not None

	@property
	def recording_action(self) -> str | None:
		return self._recording

	@property
	def has_interactive_state(self) -> bool:
		return bool(self.states)

	# -----------------------------
	# Declarations
	# -----------------------------

	def create_state(
		self,
		initial: Any = None,
		*,
		name: str | None = None,
		is_global: bool = False,
		global_key: str | None = None,
	) -> StateCell:
		slot = f"s{len(self.states)}"
		cell = StateCell(
			self,
			slot,
			initial,
			is_global=is_global,
			global_key=global_key,
			bound_name=name,
		)
		self._add(cell, name)
		logger.debug("Created %s cell %s in %s", "global" if is_global else "local", slot, self._id)
		return cell

	def create_global_state(
		self, key: str, initial: Any = None, *, name: str | None = None
	) -> StateCell:
		if not key:
			raise ValueError("Global state key must not be empty")
		return self.create_state(initial, name=name, is_global=True, global_key=key)

	def create_computed(
		self,
		name: str,
		compute: str | Callable[[], Any],
		dependencies: Sequence[StateCell],
	) -> StateCell:
		"""Create a cell derived from ``dependencies``.

		``compute`` is either Python expression text over bound cell names or a
		zero-argument callable. Either way the host value is recomputed when a
		dependency changes. The client expression is compiled from the text, or
		from the callable's source when it can be recovered.
		"""
		slot = f"c{len(self.states)}"
		for dep in dependencies:
			self._check_owned(dep)

		bindings = self.bindings
		source: str | None
		if isinstance(compute, str):
			source = compute
			evaluate = self._host_evaluator(compute)
		else:
			evaluate = compute
			source = callable_expression(compute)
			bindings.update({n: c.id for n, c in closure_cells(compute).items()})
		cell = StateCell(self, slot, evaluate(), bound_name=name)
		cell.is_computed = True
		cell.dependencies = list(dependencies)
		self._add(cell, name)

		if source is not None:
			compiled = ExpressionCompiler(bindings).compile_expression(source, target=slot)
			# The inert fallback just reads the cell back
			if compiled.code != state_get(slot).emit():
				cell.expression = compiled.code
		if cell.expression is None:
			report(
				"computed.expression",
				f"Computed '{name}' has no client expression and will not update on the client",
				slot=slot,
			)

		def recompute(_value: Any) -> None:
			cell._write(evaluate())

		for dep in dependencies:
			dep.subscribe(recompute)
		return cell

	def _host_evaluator(self, expression: str) -> Callable[[], Any]:
		names = set(self._names)
		code = compile(rewrite_expression(expression, names), "<computed>", "eval")

		def evaluate() -> Any:
			namespace = self.cells_by_name
			return eval(code, {"__builtins__": builtins}, namespace)

		return evaluate

	def register_effect(
		self,
		callback: Callable[[], Any] | None,
		dependencies: Sequence[StateCell] = (),
		expression: str | None = None,
	) -> Effect:
		effect_id = f"e{len(self.effects)}"
		for dep in dependencies:
			self._check_owned(dep)
		compiled: str | None = None
		if expression is not None:
			compiled = ExpressionCompiler(self.bindings).compile(expression)
		effect = Effect(self, effect_id, callback, dependencies, compiled, expression)
		self.effects[effect_id] = effect
		return effect

	def on_mount(
		self, callback: Callable[[], Any] | None = None, expression: str | None = None
	) -> LifecycleHook:
		return self._add_hook("mount", callback, expression)

	def on_unmount(
		self, callback: Callable[[], Any] | None = None, expression: str | None = None
	) -> LifecycleHook:
		return self._add_hook("unmount", callback, expression)

	def _add_hook(
		self, phase: str, callback: Callable[[], Any] | None, expression: str | None
	) -> LifecycleHook:
		if callback is None and expression is None:
			raise ValueError(f"An {phase} hook needs a callback or an expression")
		compiled: str | None = None
		if expression is not None:
			compiled = ExpressionCompiler(self.bindings).compile(expression)
		hook = LifecycleHook(phase, callback, compiled, expression)
		self.hooks.append(hook)
		return hook

	def run_hooks(self, phase: str) -> None:
		"""Run the host callbacks of ``phase`` in registration order."""
		for hook in self.hooks:
			if hook.phase == phase and hook.callback is not None:
				hook.callback()

	def _add(self, cell: StateCell, name: str | None) -> None:
		self.states[cell.id] = cell
		if name:
			self._names[name] = cell.id

	def _check_owned(self, cell: StateCell) -> None:
		if cell.context is not self:
			raise TraceError(f"Cell {cell.id} belongs to another component")

	# -----------------------------
	# Tracing
	# -----------------------------

	def begin(
		self,
		name: str,
		params: Sequence[str] = (),
		bindings: Mapping[str, str] | None = None,
		*,
		local_names: Iterable[str] = (),
		observe_reads: bool = False,
	) -> None:
		"""Start recording ``name``.

		``local_names`` are the handler's own variables; values computed from them
		cannot be replayed. With ``observe_reads``, literal values recorded after a
		cell read are reported, since the handler source is not available to
		compile them.
		"""
		if self._recording is not None:
			raise ReentrantTraceError(self._recording, name)
		self._recording = name
		self._buffer = []
		self._params = list(params)
		self._trace_bindings = {**self._names, **(bindings or {})}
		self._locals = frozenset(local_names) - set(self._params)
		self._reads = set()
		self._observe_reads = observe_reads

	def end(self) -> list[OperationDict]:
		if self._recording is None:
			raise TraceError("No action is recording")
		operations = self._buffer
		self._release()
		return operations

	def _release(self) -> None:
		self._recording = None
		self._buffer = []
		self._params = []
		self._trace_bindings = {}
		self._locals = frozenset()
		self._reads = set()
		self._observe_reads = False

	@contextmanager
	def recording(
		self,
		name: str,
		params: Sequence[str] = (),
		bindings: Mapping[str, str] | None = None,
		**options: Any,
	) -> Iterator[list[OperationDict]]:
		"""Record mutations for the duration of the block.

		The yielded list holds the operations once the block exits. If the block
		raises, nothing is kept and the tracer is released.
		"""
		self.begin(name, params, bindings, **options)
		operations = self._buffer
		try:
			yield operations
		except BaseException:
			operations.clear()
			self._release()
			raise
		self.end()

	def record(
		self,
		cell: StateCell,
		op_type: str,
		*,
		value: Any = _MISSING,
		step: Any = _MISSING,
		key: Any = _MISSING,
	) -> None:
		if self._recording is None:
			raise TraceError(f"Cannot record '{op_type}' outside of an action trace")
		op: OperationDict = {"type": op_type, "slot": cell.id}
		if key is not _MISSING:
			literal, expression = self._normalize(key)
			if expression is None:
				op["key"] = literal
			else:
				op["key_expr"], op["key_source"] = expression
		if step is not _MISSING:
			literal, expression = self._normalize(step, observe=False)
			if expression is None:
				op["step"] = literal  # pyright: ignore[reportArgumentType]
			else:
				op = self._combined_step(cell, op_type, *expression)
		if value is not _MISSING:
			literal, expression = self._normalize(value)
			if expression is None:
				op["value"] = literal
			else:
				code, source = expression
				if op_type in _EXPR_OPERATIONS:
					op["type"] = _EXPR_OPERATIONS[op_type]
				op["expr"] = code
				op["source"] = source
		self._buffer.append(op)
		self._reads.clear()

	def note_read(self, cell: StateCell) -> None:
		"""Remember that the running trace read ``cell``."""
		if self._recording is not None:
			self._reads.add(cell.id)

	def _combined_step(
		self, cell: StateCell, op_type: str, code: str, source: str
	) -> OperationDict:
		# A computed step turns the increment into a set of the combined value
		sign = "+" if op_type == "increment" else "-"
		name = _name_for(self._trace_bindings, cell.id) or cell.id
		return {
			"type": "expr",
			"slot": cell.id,
			"expr": f"{state_get(cell.id).emit()} {sign} ({code})",
			"source": f"{name} {sign} ({source})",
		}

	def _normalize(
		self, value: Any, *, observe: bool = True
	) -> tuple[JsonValue, tuple[str, str] | None]:
		"""Split a recorded value into a literal or a compiled (code, source) pair.

		A value folds to a literal only when nothing it was computed from can
		differ between the trace and a later call. Otherwise it is compiled, or
		reported when no faithful client form exists.
		"""
		if isinstance(value, StateCell):
			name = _name_for(self._trace_bindings, value.id) or value.id
			return None, (state_get(value.id).emit(), name)
		if not isinstance(value, ExpressionReference):
			if observe and self._observe_reads and self._reads and not _has_placeholder(value):
				report(
					"trace.value",
					"Value recorded after reading cells is fixed at its traced value",
					value=repr(value),
					reads=sorted(self._reads),
				)
			return self._literal(value), None

		ref = value
		text = ref.expression.strip()
		if isinstance(ref.value, ActionArgument) and text == (ref.value.name or ""):
			return ref.value.to_ref(), None
		compiler = ExpressionCompiler(
			self._trace_bindings, rename=param_renames(self._params)
		)
		compiled = compiler.compile_expression(text)
		stale = compiled.free_names & self._locals
		if stale:
			report(
				"trace.value",
				f"Value reads handler locals ({', '.join(sorted(stale))}) "
				+ "and is recorded as its traced value",
				expression=text,
			)
			return self._literal(ref.value), None
		if compiled.cells or compiled.params or _has_placeholder(ref.value):
			return None, (compiled.code, text)
		if self._reads and compiled.free_names:
			report(
				"trace.value",
				"Value computed after reading cells is recorded as its traced value",
				expression=text,
				reads=sorted(self._reads),
			)
		return self._literal(ref.value), None

	def _literal(self, value: Any) -> JsonValue:
		if isinstance(value, ExpressionReference):
			value = value.value
		if isinstance(value, ActionArgument):
			return value.to_ref()  # pyright: ignore[reportReturnType]
		if isinstance(value, StateCell):
			return self._literal(value.get())
		if value is None or isinstance(value, (str, bool, int)):
			return value
		if isinstance(value, float):
			if math.isfinite(value):
				return value
			report("trace.value", "Non-finite float recorded as null", value=repr(value))
			return None
		if isinstance(value, (list, tuple)):
			return [self._literal(v) for v in value]
		if isinstance(value, dict):
			return {str(k): self._literal(v) for k, v in value.items()}
		report(
			"trace.value",
			f"Value of type {type(value).__name__} is not JSON; recorded as a string",
			value=repr(value),
		)
		return str(value)

	# -----------------------------
	# Actions
	# -----------------------------

	def register_action(
		self,
		name: str,
		handler: Callable[..., Any],
		*,
		rewrite: bool | None = None,
	) -> ActionRecord:
		"""Trace ``handler`` once and keep its operations under ``name``.

		Registering an existing name returns the first record untouched.
		"""
		existing = self.actions.get(name)
		if existing is not None:
			return existing
		if self._recording is not None:
			raise ReentrantTraceError(self._recording, name)

		params = positional_params(handler)
		fn = handler
		bindings: dict[str, str] = {}
		should_rewrite = rewrite if rewrite is not None else self._rewrite
		if should_rewrite is None:
			should_rewrite = env.rewrite
		if should_rewrite:
			fn = rewrite_action(handler, self)
			bindings = {
				n: cell.id
				for n, cell in bound_cells(handler, self).items()
				if cell.context is self
			}

		placeholders = [ActionArgument(i, p) for i, p in enumerate(params)]
		snapshot = self._snapshot()
		try:
			with self.recording(
				name,
				params,
				bindings,
				local_names=_local_names(handler),
				observe_reads=fn is handler,
			) as operations:
				fn(*placeholders)
		finally:
			self._restore(snapshot)
		record = ActionRecord(
			name, params, operations, fn, snapshot, {**self._names, **bindings}
		)
		self.actions[name] = record
		logger.debug("Recorded action %s in %s: %d operations", name, self._id, len(operations))
		return record

	def action(
		self,
		name: str,
		cells: Mapping[str, StateCell] | Sequence[StateCell],
		fn: Callable[..., Any],
	) -> ActionRecord:
		"""Trace ``fn(cells, *args)`` without rewriting its source."""
		existing = self.actions.get(name)
		if existing is not None:
			return existing
		if self._recording is not None:
			raise ReentrantTraceError(self._recording, name)

		if isinstance(cells, Mapping):
			named = dict(cells)
		else:
			named = {(c.bound_name or c.id): c for c in cells}
		for cell in named.values():
			self._check_owned(cell)
		handles = CellHandles(named)
		params = positional_params(fn)[1:]
		placeholders = [ActionArgument(i, p) for i, p in enumerate(params)]
		snapshot = self._snapshot()
		bindings = {n: c.id for n, c in named.items()}
		try:
			with self.recording(
				name,
				params,
				bindings,
				local_names=set(_local_names(fn)) - set(positional_params(fn)[:1]),
				observe_reads=True,
			) as operations:
				fn(handles, *placeholders)
		finally:
			self._restore(snapshot)

		def invoke(*args: Any) -> Any:
			return fn(handles, *args)

		record = ActionRecord(
			name, params, operations, invoke, snapshot, {**self._names, **bindings}
		)
		self.actions[name] = record
		return record

	def action_handler(
		self, name: str | None = None, *, rewrite: bool | None = None
	) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
		"""Decorator form of register_action. The function itself is returned."""

		def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
			self.register_action(name or fn.__name__, fn, rewrite=rewrite)
			return fn

		return decorator

	def invoke(self, name: str, *args: Any) -> Any:
		"""Run a recorded action on the host with real arguments."""
		record = self.actions.get(name)
		if record is None or record.handler is None:
			raise TraceError(f"Unknown action '{name}'")
		return record.handler(*args)

	def _snapshot(self) -> dict[str, Any]:
		return {slot: copy.deepcopy(cell.get()) for slot, cell in self.states.items()}

	def _restore(self, snapshot: Mapping[str, Any]) -> None:
		# Trace-time increments and toggles must not leak into the rendered values
		for slot, value in snapshot.items():
			self.states[slot].reset(copy.deepcopy(value))

	# -----------------------------
	# Output
	# -----------------------------

	def build_payload(self) -> PayloadDict | None:
		"""Serialize the component, or None when it declares no cells."""
		if not self.states:
			return None
		states: list[StateRecordDict] = []
		for slot, cell in self.states.items():
			record: StateRecordDict = {
				"id": slot,
				"value": self._literal(cell.get()),
				"global": cell.is_global,
			}
			if cell.is_global:
				record["key"] = cell.global_key
			if cell.is_computed:
				record["computed"] = True
				record["dependencies"] = [dep.id for dep in cell.dependencies]
				if cell.expression is not None:
					record["expression"] = cell.expression
			states.append(record)

		actions: dict[str, list[OperationDict]] = {}
		for name, action in self.actions.items():
			for op in action.operations:
				if op["slot"] not in self.states:
					raise PayloadError(
						f"Action '{name}' references unknown cell '{op['slot']}'"
					)
			actions[name] = copy.deepcopy(action.operations)

		effects: list[EffectDict] = []
		for effect_id, effect in self.effects.items():
			entry: EffectDict = {
				"id": effect_id,
				"dependencies": [dep.id for dep in effect.dependencies],
			}
			if effect.expression is not None:
				entry["expression"] = effect.expression
			effects.append(entry)

		payload: PayloadDict = {
			"id": self._id,
			"states": states,
			"actions": actions,
			"effects": effects,
		}
		mount = self._hook_expressions("mount")
		unmount = self._hook_expressions("unmount")
		if mount or unmount:
			payload["lifecycle"] = {"mount": mount, "unmount": unmount}
		return payload

	def _hook_expressions(self, phase: str) -> list[str]:
		return [
			h.expression for h in self.hooks if h.phase == phase and h.expression is not None
		]

	def finalize_html(self, html: str) -> str:
		return finalize_html(self, html)

	@override
	def __repr__(self) -> str:
		return (
			f"ComponentContext({self._id!r}, states={len(self.states)}, "
			+ f"actions={len(self.actions)}, effects={len(self.effects)})"
		)


def positional_params(fn: Callable[..., Any]) -> list[str]:
	"""Positional parameters without defaults; these receive placeholders."""
	try:
		signature = inspect.signature(fn)
	except (TypeError, ValueError):
		return []
	return [
		p.name
		for p in signature.parameters.values()
		if p.kind in (p.POSITIONAL_ONLY, p.POSITIONAL_OR_KEYWORD) and p.default is p.empty
	]


def _local_names(fn: Callable[..., Any]) -> tuple[str, ...]:
	code = getattr(fn, "__code__", None)
	return code.co_varnames if code is not None else ()


def _name_for(bindings: Mapping[str, str], slot: str) -> str | None:
	for name, bound in bindings.items():
		if bound == slot:
			return name
	return None


def _has_placeholder(value: Any) -> bool:
	if isinstance(value, ActionArgument):
		return True
	if isinstance(value, (list, tuple)):
		return any(_has_placeholder(v) for v in value)
	if isinstance(value, dict):
		return any(_has_placeholder(v) for v in value.values())
	return False


__all__ = [
	"ActionRecord",
	"CellHandles",
	"ComponentContext",
	"Effect",
	"LifecycleHook",
	"positional_params",
]
