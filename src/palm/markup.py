"""
Server-side markup for reactive components.

Cells render as bind spans the client module keeps up to date. Inline
``onclick="action(args)"`` calls to registered actions are rewritten into
data attributes the client wires to its action table.
"""

from __future__ import annotations

import ast
import html
import json
import logging
import math
import re
from typing import TYPE_CHECKING, Any

from palm.env import env
from palm.errors import report

if TYPE_CHECKING:
	from palm.state import StateCell
	from palm.tracer import ComponentContext

logger = logging.getLogger(__name__)

# Elements that get a deterministic hydration id
HYDRATION_TAGS: frozenset[str] = frozenset(
	{
		"button",
		"input",
		"select",
		"textarea",
		"a",
		"div",
		"span",
		"p",
		"h1",
		"h2",
		"h3",
		"h4",
		"h5",
		"h6",
	}
)

_ONCLICK_RE = re.compile(
	r"""\bonclick\s*=\s*(?P<quote>["'])(?P<body>.*?)(?P=quote)""",
	re.IGNORECASE | re.DOTALL,
)
_CALL_RE = re.compile(r"^\s*(?P<name>[A-Za-z_$][\w$]*)\s*(?:\((?P<args>.*)\))?\s*;?\s*$", re.DOTALL)
_OPEN_TAG_RE = re.compile(r"<(?P<tag>[A-Za-z][\w-]*)(?P<attrs>(?:\s[^<>]*?)?)(?P<close>/?)>")


def attribute(name: str, prefix: str | None = None) -> str:
	return f"{prefix or env.attribute_prefix}-{name}"


def display_value(value: Any) -> str:
	"""Text of a value the way the client's ``String(value)`` shows it."""
	if value is None:
		return ""
	if isinstance(value, bool):
		return "true" if value else "false"
	if isinstance(value, float):
		if math.isnan(value):
			return "NaN"
		if math.isinf(value):
			return "Infinity" if value > 0 else "-Infinity"
		if value.is_integer():
			return str(int(value))
		return repr(value)
	if isinstance(value, (list, tuple)):
		return ",".join(display_value(v) for v in value)
	if isinstance(value, dict):
		return "[object Object]"
	return str(value)


def render_bind(cell: "StateCell", *, prefix: str | None = None) -> str:
	attrs = [f'{attribute("bind", prefix)}="{html.escape(cell.token(), quote=True)}"']
	if cell.is_global and cell.global_key is not None:
		attrs.append(f'{attribute("scope", prefix)}="global"')
		attrs.append(f'{attribute("key", prefix)}="{html.escape(cell.global_key, quote=True)}"')
	return f"<span {' '.join(attrs)}>{html.escape(display_value(cell.get()))}</span>"


def action_attributes(
	context: "ComponentContext",
	name: str,
	args: list[Any] | None = None,
	*,
	prefix: str | None = None,
) -> str:
	"""Attributes that make an element trigger ``name`` on click."""
	attrs = [
		f'{attribute("action", prefix)}="{html.escape(name, quote=True)}"',
		f'{attribute("component", prefix)}="{html.escape(context.id, quote=True)}"',
	]
	if args:
		encoded = json.dumps(args, ensure_ascii=False, default=str)
		attrs.append(f'{attribute("args", prefix)}="{html.escape(encoded, quote=True)}"')
	return " ".join(attrs)


def parse_call_args(text: str) -> list[Any]:
	"""Literal arguments of an inline call, e.g. ``1, 'a', true``."""
	text = text.strip()
	if not text:
		return []
	try:
		value = json.loads(f"[{text}]")
	except json.JSONDecodeError:
		pass
	else:
		return list(value)
	try:
		value = ast.literal_eval(f"[{text}]")
	except (ValueError, SyntaxError, TypeError, MemoryError, RecursionError):
		report("markup.args", "Inline action arguments are not literals", args=text)
		return [text]
	return list(value)


def add_hydration_ids(context: "ComponentContext", markup: str, *, prefix: str | None = None) -> str:
	id_attr = attribute("id", prefix)
	counter = 0

	def replace(m: re.Match[str]) -> str:
		nonlocal counter
		if m.group("tag").lower() not in HYDRATION_TAGS or f"{id_attr}=" in m.group("attrs"):
			return m.group(0)
		counter += 1
		hydration_id = html.escape(f"{context.id}_{counter}", quote=True)
		close = " /" if m.group("close") else ""
		return f'<{m.group("tag")}{m.group("attrs").rstrip()} {id_attr}="{hydration_id}"{close}>'

	return _OPEN_TAG_RE.sub(replace, markup)


def finalize_html(
	context: "ComponentContext",
	markup: str,
	*,
	prefix: str | None = None,
	hydration_ids: bool = False,
) -> str:
	"""Wire registered actions and wrap the markup in the component root.

	Markup of a component without cells is returned unchanged. Inline calls
	to unknown names are left alone, since they may belong to other scripts.
	"""
	if not context.has_interactive_state:
		return markup

	def replace(m: re.Match[str]) -> str:
		call = _CALL_RE.match(html.unescape(m.group("body")))
		if call is None or call.group("name") not in context.actions:
			return m.group(0)
		args = parse_call_args(call.group("args") or "")
		return action_attributes(context, call.group("name"), args, prefix=prefix)

	body = _ONCLICK_RE.sub(replace, markup)
	if hydration_ids:
		body = add_hydration_ids(context, body, prefix=prefix)
	component = html.escape(context.id, quote=True)
	return f'<div {attribute("component", prefix)}="{component}">{body}</div>'


__all__ = [
	"HYDRATION_TAGS",
	"action_attributes",
	"add_hydration_ids",
	"attribute",
	"display_value",
	"finalize_html",
	"parse_call_args",
	"render_bind",
]
