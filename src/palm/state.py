"""
Reactive state cells for palm components.

A StateCell holds one value and exposes the same mutation API as the
client-side container generated by ``palm.codegen``. Outside of recording,
mutations apply immediately (copy-on-write for lists and dicts) and notify
subscribers. While the owning ComponentContext records an action, mutations
are appended to the operation log instead.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from palm.types import ArgRef, arg_ref

if TYPE_CHECKING:
	from palm.tracer import ComponentContext

logger = logging.getLogger(__name__)

Subscriber = Callable[[Any], None]


def values_equal(a: Any, b: Any) -> bool:
	if a is b:
		return True
	# True == 1 in Python but not on the client
	if isinstance(a, bool) != isinstance(b, bool):
		return False
	try:
		return bool(a == b)
	except Exception:
		return False


def js_truthy(value: Any) -> bool:
	"""Truthiness as the client sees it. Empty lists and dicts are truthy there."""
	if value is None or value is False:
		return False
	if isinstance(value, float) and math.isnan(value):
		return False
	if isinstance(value, (int, float, str)):
		return bool(value)
	return True


class ActionArgument:
	"""Placeholder for a positional action parameter during tracing.

	Arithmetic on a placeholder yields the placeholder, so handler bodies such
	as ``total.set(price * qty)`` still evaluate while recording. The recorded
	operation then references the argument instead of a literal.
	"""

	__slots__: tuple[str, ...] = ("index", "name")

	index: int
	name: str | None

	def __init__(self, index: int, name: str | None = None) -> None:
		self.index = index
		self.name = name

	def to_ref(self) -> ArgRef:
		return arg_ref(self.index)

	def _passthrough(self, *_: Any) -> "ActionArgument":
		return self

	__add__ = __radd__ = _passthrough
	__sub__ = __rsub__ = _passthrough
	__mul__ = __rmul__ = _passthrough
	__truediv__ = __rtruediv__ = _passthrough
	__floordiv__ = __rfloordiv__ = _passthrough
	__mod__ = __rmod__ = _passthrough
	__pow__ = __rpow__ = _passthrough
	__neg__ = __pos__ = __abs__ = _passthrough

	def __str__(self) -> str:
		return "{{arg:" + str(self.index) + "}}"

	def __repr__(self) -> str:
		if self.name:
			return f"ActionArgument({self.index}, {self.name!r})"
		return f"ActionArgument({self.index})"


@dataclass(frozen=True, slots=True)
class ExpressionReference:
	"""An evaluated host value together with the source text it came from.

	The rewriter wraps right-hand sides in this so the tracer can compile the
	text for the client while the host still sees the value.
	"""

	value: Any
	expression: str


class StateCell:
	"""A single reactive value owned by a ComponentContext."""

	__slots__: tuple[str, ...] = (
		"_context",
		"_subscribers",
		"_value",
		"bound_name",
		"dependencies",
		"expression",
		"global_key",
		"id",
		"initial",
		"is_computed",
		"is_global",
	)

	id: str
	initial: Any
	is_global: bool
	global_key: str | None
	is_computed: bool
	dependencies: list["StateCell"]
	bound_name: str | None
	expression: str | None

	def __init__(
		self,
		context: "ComponentContext | None",
		cell_id: str,
		initial: Any = None,
		*,
		is_global: bool = False,
		global_key: str | None = None,
		bound_name: str | None = None,
	) -> None:
		self._context = context
		self._subscribers: list[Subscriber] = []
		self._value = initial
		self.id = cell_id
		self.initial = initial
		self.is_global = is_global
		self.global_key = (global_key or cell_id) if is_global else None
		self.is_computed = False
		self.dependencies = []
		self.bound_name = bound_name
		self.expression = None

	@property
	def context(self) -> "ComponentContext | None":
		return self._context

	@property
	def recording(self) -> bool:
		return self._context is not None and self._context.is_recording

	# -----------------------------
	# Reads
	# -----------------------------

	def get(self) -> Any:
		if self._context is not None and self._context.is_recording:
			self._context.note_read(self)
		return self._value

	def subscribe(self, fn: Subscriber) -> Callable[[], None]:
		self._subscribers.append(fn)

		def unsubscribe() -> None:
			if fn in self._subscribers:
				self._subscribers.remove(fn)

		return unsubscribe

	def _write(self, value: Any) -> None:
		if values_equal(self._value, value):
			return
		self._value = value
		for fn in list(self._subscribers):
			fn(value)

	def reset(self, value: Any) -> None:
		"""Replace the value without notifying subscribers."""
		self._value = value

	def _record(self, op_type: str, **fields: Any) -> None:
		assert self._context is not None
		self._context.record(self, op_type, **fields)

	# -----------------------------
	# Mutations
	# -----------------------------

	def set(self, value: Any) -> None:
		if self.recording:
			self._record("set", value=value)
			return
		self._write(_unwrap(value))

	def increment(self, step: Any = 1) -> None:
		if self.recording:
			self._record("increment", step=step)
			# Later reads in the same trace see the new value
			raw = _unwrap(step)
			if not isinstance(raw, ActionArgument):
				self._write(_base_number(self._value) + raw)
			return
		self._write(_base_number(self._value) + _unwrap(step))

	def decrement(self, step: Any = 1) -> None:
		if self.recording:
			self._record("decrement", step=step)
			raw = _unwrap(step)
			if not isinstance(raw, ActionArgument):
				self._write(_base_number(self._value) - raw)
			return
		self._write(_base_number(self._value) - _unwrap(step))

	def post_increment(self, step: Any = 1) -> Any:
		"""Increment and return the value from before the mutation."""
		old = self._value
		self.increment(step)
		return old

	def post_decrement(self, step: Any = 1) -> Any:
		old = self._value
		self.decrement(step)
		return old

	def toggle(self) -> None:
		if self.recording:
			self._record("toggle")
		self._write(not js_truthy(self._value))

	def push(self, item: Any) -> None:
		if self.recording:
			self._record("push", value=item)
			return
		base = self._value if isinstance(self._value, list) else []
		self._write([*base, _unwrap(item)])

	def pop(self) -> Any:
		if self.recording:
			# Deferred: the popped value only exists on replay
			self._record("pop")
			return None
		if not isinstance(self._value, list) or not self._value:
			return None
		item = self._value[-1]
		self._write(self._value[:-1])
		return item

	def update(self, key: Any, item: Any) -> None:
		if self.recording:
			self._record("update", key=key, value=item)
			return
		key = _unwrap(key)
		item = _unwrap(item)
		value = self._value
		if isinstance(value, list):
			if not isinstance(key, int) or isinstance(key, bool):
				raise TypeError(
					f"Cannot update list state '{self.id}' with non-integer key {key!r}"
				)
			updated = list(value)
			if key < 0:
				key += len(updated)
				if key < 0:
					return
			while len(updated) < key:
				updated.append(None)
			if key == len(updated):
				updated.append(item)
			else:
				updated[key] = item
			self._write(updated)
		elif isinstance(value, dict):
			self._write({**value, key: item})
		else:
			self._write({key: item})

	def remove(self, key: Any) -> None:
		if self.recording:
			self._record("remove", key=key)
			return
		key = _unwrap(key)
		value = self._value
		if isinstance(value, list):
			if not isinstance(key, int) or isinstance(key, bool):
				return
			if not -len(value) <= key < len(value):
				return
			updated = list(value)
			del updated[key]
			self._write(updated)
		elif isinstance(value, dict):
			if key not in value:
				return
			self._write({k: v for k, v in value.items() if k != key})

	def merge(self, values: Any) -> None:
		if self.recording:
			self._record("merge", value=values)
			return
		values = _unwrap(values)
		current = self._value
		if isinstance(current, list) and isinstance(values, (list, tuple)):
			self._write([*current, *values])
		elif isinstance(current, dict) and isinstance(values, dict):
			self._write({**current, **values})
		else:
			self._write(values)

	# -----------------------------
	# Rendering
	# -----------------------------

	def token(self) -> str:
		component_id = self._context.id if self._context is not None else ""
		return f"{component_id}::{self.id}"

	def render(self) -> str:
		from palm.markup import render_bind

		return render_bind(self)

	def __str__(self) -> str:
		return self.render()

	def __repr__(self) -> str:
		kind = "computed" if self.is_computed else ("global" if self.is_global else "state")
		return f"StateCell({self.id!r}, {kind}, value={self._value!r})"

	# Read-only container access, so `items[0]` and `len(items)` work on a cell
	def __getitem__(self, key: Any) -> Any:
		return self._value[key]

	def __len__(self) -> int:
		return len(self._value)

	def __iter__(self) -> Iterator[Any]:
		return iter(self._value)

	def __contains__(self, item: Any) -> bool:
		return item in self._value

	def __bool__(self) -> bool:
		return bool(self._value)


def _unwrap(value: Any) -> Any:
	if isinstance(value, ExpressionReference):
		value = value.value
	if isinstance(value, StateCell):
		return value.get()
	return value


def _base_number(value: Any) -> Any:
	return 0 if value is None else value


__all__ = [
	"ActionArgument",
	"ExpressionReference",
	"StateCell",
	"js_truthy",
	"values_equal",
]
