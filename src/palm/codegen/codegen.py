from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

from palm.env import env
from palm.errors import DegradedError, report
from palm.javascript.nodes import JSStateRef, json_literal, to_js_expr
from palm.types import OperationDict, PayloadDict

from .templates.module import MODULE_TEMPLATE

logger = logging.getLogger(__name__)


@dataclass
class CodegenConfig:
	"""
	Configuration for client module generation.

	Attributes:
	    attribute_prefix (str): Prefix of the data attributes the module scans.
	    expose_globals (bool): Publish actions on ``window`` for inline handlers.
	    batch_updates (bool): Coalesce DOM updates into one animation frame.
	    source_name (str | None): Shown in the module header comment.
	"""

	attribute_prefix: str = field(default_factory=lambda: env.attribute_prefix)
	"""Prefix of the data attributes, e.g. ``data-palm``."""

	expose_globals: bool = True
	"""Publish actions and the state table on ``window``."""

	batch_updates: bool = True
	"""Batch bound-element updates with requestAnimationFrame."""

	source_name: str | None = None
	"""Origin of the payload, for the header comment."""

	def attribute(self, name: str) -> str:
		return f"{self.attribute_prefix}-{name}"


class CodeGenerator:
	"""Turn a component payload into a self-contained ES module."""

	cfg: CodegenConfig

	def __init__(self, config: CodegenConfig | None = None) -> None:
		self.cfg = config or CodegenConfig()
		self._emitters: dict[str, Callable[[str, OperationDict], str]] = {
			"set": self._emit_set,
			"increment": self._emit_step,
			"decrement": self._emit_step,
			"toggle": self._emit_plain,
			"pop": self._emit_plain,
			"push": self._emit_push,
			"update": self._emit_update,
			"remove": self._emit_remove,
			"merge": self._emit_merge,
			"expr": self._emit_expr,
			"push_expr": self._emit_expr,
		}

	def generate(self, payload: PayloadDict) -> str:
		component_id = payload["id"]
		states: list[dict[str, Any]] = []
		computed: list[dict[str, Any]] = []
		for record in payload["states"]:
			slot = record["id"]
			is_global = bool(record.get("global"))
			states.append(
				{
					"id_json": json_literal(slot),
					"value_json": self._literal(record.get("value")),
					"global_key_json": json_literal(record.get("key") or slot) if is_global else None,
				}
			)
			expression = record.get("expression")
			if record.get("computed") and expression:
				computed.append(
					{
						"id_json": json_literal(slot),
						"expression": expression,
						"dependencies": [json_literal(d) for d in record.get("dependencies", [])],
					}
				)

		actions = [
			{"name_json": json_literal(name), "lines": self.emit_operations(operations)}
			for name, operations in payload["actions"].items()
		]
		effects = [
			{
				"id_json": json_literal(effect["id"]),
				"expression": effect["expression"],
				"dependencies": [json_literal(d) for d in effect["dependencies"]],
			}
			for effect in payload.get("effects", [])
			if effect.get("expression")
		]
		lifecycle = payload.get("lifecycle") or {"mount": [], "unmount": []}

		logger.debug(
			"Generating module for %s: %d states, %d actions, %d effects",
			component_id,
			len(states),
			len(actions),
			len(effects),
		)
		return str(
			MODULE_TEMPLATE.render_unicode(
				source_name=_comment_safe(self.cfg.source_name or ""),
				component_comment=_comment_safe(component_id),
				component_id_json=json_literal(component_id),
				attrs={
					name: json_literal(self.cfg.attribute(name))
					for name in ("action", "component", "args", "bind")
				},
				states=states,
				computed=computed,
				actions=actions,
				effects=effects,
				mount_hooks=list(lifecycle.get("mount", [])),
				unmount_hooks=list(lifecycle.get("unmount", [])),
				batch_updates=self.cfg.batch_updates,
				expose_globals=self.cfg.expose_globals,
			)
		)

	def emit_operations(self, operations: list[OperationDict]) -> list[str]:
		return [self.emit_operation(op) for op in operations]

	def emit_operation(self, op: Mapping[str, Any]) -> str:
		"""One JS statement for a recorded operation."""
		op_type = str(op.get("type"))
		slot = op.get("slot")
		emitter = self._emitters.get(op_type)
		if emitter is None or not isinstance(slot, str):
			report("codegen.operation", f"Unknown operation '{op_type}'", operation=dict(op))
			return f"// Unknown operation: {_comment_safe(op_type)}"
		try:
			return emitter(JSStateRef(slot).emit(), op)  # pyright: ignore[reportArgumentType]
		except DegradedError:
			raise
		except (TypeError, ValueError) as exc:
			report("codegen.operation", f"Cannot emit '{op_type}': {exc}", operation=dict(op))
			return f"// Unsupported operation value: {_comment_safe(op_type)}"

	def _value(self, value: Any) -> str:
		return to_js_expr(value).emit()

	def _literal(self, value: Any) -> str:
		try:
			return json_literal(value)
		except (TypeError, ValueError):
			report("codegen.module", "State value is not JSON; seeded as null", value=repr(value))
			return "null"

	def _emit_set(self, ref: str, op: OperationDict) -> str:
		return f"{ref}.set({self._value(op.get('value'))});"

	def _emit_step(self, ref: str, op: OperationDict) -> str:
		step = op.get("step", 1)
		return f"{ref}.{op['type']}({self._value(step)});"

	def _emit_plain(self, ref: str, op: OperationDict) -> str:
		return f"{ref}.{op['type']}();"

	def _emit_push(self, ref: str, op: OperationDict) -> str:
		return f"{ref}.push({self._value(op.get('value'))});"

	def _key(self, op: OperationDict) -> str:
		key_expr = op.get("key_expr")
		if key_expr:
			return key_expr
		return self._value(op.get("key"))

	def _emit_update(self, ref: str, op: OperationDict) -> str:
		key = self._key(op)
		if "expr" in op:
			return _guarded(f"{ref}.update({key}, {op['expr']});", op["expr"])
		statement = f"{ref}.update({key}, {self._value(op.get('value'))});"
		if "key_expr" in op:
			return _guarded(statement, key)
		return statement

	def _emit_remove(self, ref: str, op: OperationDict) -> str:
		key = self._key(op)
		statement = f"{ref}.remove({key});"
		if "key_expr" in op:
			return _guarded(statement, key)
		return statement

	def _emit_merge(self, ref: str, op: OperationDict) -> str:
		if "expr" in op:
			return _guarded(f"{ref}.merge({op['expr']});", op["expr"])
		return f"{ref}.merge({self._value(op.get('value'))});"

	def _emit_expr(self, ref: str, op: OperationDict) -> str:
		expr = (op.get("expr") or "").strip()
		if not expr:
			return "// Empty expression"
		method = "push" if op["type"] == "push_expr" else "set"
		return _guarded(f"{ref}.{method}({expr});", expr)


def _guarded(statement: str, expr: str) -> str:
	"""Expression-backed mutations must not abort the rest of the action."""
	return (
		f"try {{ {statement} }} catch (err) "
		+ f'{{ console.error("Palm: expression error", {json_literal(expr)}, err); }}'
	)


def _comment_safe(text: str) -> str:
	return text.replace("*/", "* /").replace("\n", " ").replace("\r", " ")


def generate_module(payload: PayloadDict, config: CodegenConfig | None = None) -> str:
	return CodeGenerator(config).generate(payload)


def generate_empty_module() -> str:
	"""Module for a component without reactive state: mount is a no-op."""
	return (
		"/**\n * Generated by palm. No reactive state.\n */\n\n"
		+ "export function mount(root, initial) {\n"
		+ "  return { state: {}, actions: {}, unmount() {} };\n"
		+ "}\n"
	)
