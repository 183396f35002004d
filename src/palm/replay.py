"""
Host-side replay of recorded operation logs.

Applying an action's operations to fresh cells reproduces what the generated
client action does, without a browser. Expression operations are evaluated
from their ``source`` text with the same cell names the handler used.
"""

from __future__ import annotations

import builtins
import copy
import logging
from collections.abc import Mapping, Sequence
from typing import TYPE_CHECKING, Any

from palm.errors import TraceError, report
from palm.rewriter import rewrite_expression
from palm.state import StateCell
from palm.types import is_arg_ref

if TYPE_CHECKING:
	from palm.tracer import ComponentContext

logger = logging.getLogger(__name__)


class Replayer:
	"""Apply operations to a set of host cells keyed by slot."""

	cells: dict[str, StateCell]

	def __init__(
		self,
		initial: Mapping[str, Any],
		*,
		bindings: Mapping[str, str] | None = None,
	) -> None:
		self.cells = {
			slot: StateCell(None, slot, copy.deepcopy(value)) for slot, value in initial.items()
		}
		self.bindings = dict(bindings or {})

	def values(self) -> dict[str, Any]:
		return {slot: cell.get() for slot, cell in self.cells.items()}

	def run(
		self,
		operations: Sequence[Mapping[str, Any]],
		args: Sequence[Any] = (),
		params: Sequence[str] = (),
	) -> dict[str, Any]:
		for op in operations:
			self.apply(op, args, params)
		return self.values()

	def apply(
		self,
		op: Mapping[str, Any],
		args: Sequence[Any] = (),
		params: Sequence[str] = (),
	) -> None:
		op_type = op.get("type")
		cell = self.cells.get(op.get("slot", ""))
		if cell is None:
			raise TraceError(f"Operation targets unknown cell {op.get('slot')!r}")

		def resolve(value: Any) -> Any:
			if is_arg_ref(value):
				index = value["index"]
				return args[index] if index < len(args) else None
			if isinstance(value, list):
				return [resolve(v) for v in value]  # pyright: ignore[reportUnknownVariableType]
			if isinstance(value, dict):
				return {k: resolve(v) for k, v in value.items()}  # pyright: ignore[reportUnknownVariableType]
			return value

		def operand() -> Any:
			if "source" in op:
				return self.evaluate(op["source"], args, params)
			return resolve(op.get("value"))

		def key() -> Any:
			if "key_source" in op:
				return self.evaluate(op["key_source"], args, params)
			return resolve(op.get("key"))

		if op_type in ("set", "expr"):
			cell.set(operand())
		elif op_type == "increment":
			cell.increment(resolve(op.get("step", 1)))
		elif op_type == "decrement":
			cell.decrement(resolve(op.get("step", 1)))
		elif op_type == "toggle":
			cell.toggle()
		elif op_type in ("push", "push_expr"):
			cell.push(operand())
		elif op_type == "pop":
			cell.pop()
		elif op_type == "update":
			cell.update(key(), operand())
		elif op_type == "remove":
			cell.remove(key())
		elif op_type == "merge":
			cell.merge(operand())
		else:
			report("codegen.operation", f"Unknown operation '{op_type}'", operation=dict(op))

	def evaluate(self, source: str, args: Sequence[Any] = (), params: Sequence[str] = ()) -> Any:
		"""Evaluate a handler expression against the replay cells."""
		namespace: dict[str, Any] = {
			name: self.cells[slot] for name, slot in self.bindings.items() if slot in self.cells
		}
		for slot, cell in self.cells.items():
			namespace.setdefault(slot, cell)
		for index, name in enumerate(params):
			namespace[name] = args[index] if index < len(args) else None
		code = rewrite_expression(source, [n for n in namespace if n not in params])
		logger.debug("Replaying expression %r as %r", source, code)
		return eval(code, {"__builtins__": builtins}, namespace)


def replay(
	operations: Sequence[Mapping[str, Any]],
	initial: Mapping[str, Any],
	*,
	args: Sequence[Any] = (),
	params: Sequence[str] = (),
	bindings: Mapping[str, str] | None = None,
) -> dict[str, Any]:
	"""Final cell values after applying ``operations`` to ``initial``."""
	return Replayer(initial, bindings=bindings).run(operations, args, params)


def replay_action(
	context: "ComponentContext",
	name: str,
	*args: Any,
	initial: Mapping[str, Any] | None = None,
) -> dict[str, Any]:
	"""Replay a recorded action from the values its trace started with."""
	record = context.actions.get(name)
	if record is None:
		raise TraceError(f"Unknown action '{name}'")
	start = record.initial_values if initial is None else initial
	return replay(
		record.operations,
		start,
		args=args,
		params=record.params,
		bindings={**context.bindings, **record.bindings},
	)


__all__ = ["Replayer", "replay", "replay_action"]
