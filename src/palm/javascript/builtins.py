"""
Python builtins and common methods -> JavaScript equivalents.

Only what makes sense inside a single client expression is covered. Anything
else raises CompileError so the caller can fall back.

``round``, ``str`` and ``in`` call the palmRound, palmStr and palmContains
helpers every generated module defines, so halves round to even, booleans print
as True/False and membership works on dicts. F-string fields still use the JS
conversion: ``f"{flag}"`` shows ``true``.
"""

from __future__ import annotations

from collections.abc import Callable

from palm.errors import CompileError
from palm.javascript.nodes import (
	JSArrowFunction,
	JSBinary,
	JSCall,
	JSExpr,
	JSIdentifier,
	JSMember,
	JSMemberCall,
	JSSubscript,
	JSTertiary,
	JSUnary,
	JSUndefined,
)

Emitter = Callable[..., JSExpr]


def _namespaced(namespace: str, fn: str, arity: int | None = None) -> Emitter:
	"""``name(*args)`` -> ``namespace.fn(*args)``, optionally with a fixed arity."""

	def emit(*args: JSExpr) -> JSExpr:
		if arity is not None and len(args) != arity:
			raise CompileError(f"{fn}() expects {arity} argument(s), got {len(args)}")
		return JSMemberCall(JSIdentifier(namespace), fn, list(args))

	return emit


def _global(fn: str) -> Emitter:
	def emit(value: JSExpr) -> JSExpr:
		return JSCall(JSIdentifier(fn), [value])

	return emit


def _length(value: JSExpr) -> JSExpr:
	# Arrays and strings have length, Sets and Maps have size
	return JSBinary(JSMember(value, "length"), "??", JSMember(value, "size"))


def _round(value: JSExpr, ndigits: JSExpr | None = None) -> JSExpr:
	# Half-to-even, like Python; Math.round rounds halves up
	args = [value] if ndigits is None else [value, ndigits]
	return JSCall(JSIdentifier("palmRound"), args)


def _int(value: JSExpr, base: JSExpr | None = None) -> JSExpr:
	if base is not None:
		return JSCall(JSIdentifier("parseInt"), [value, base])
	return JSMemberCall(JSIdentifier("Math"), "trunc", [JSCall(JSIdentifier("Number"), [value])])


def _truthy(value: JSExpr) -> JSExpr:
	return JSUnary("!", JSUnary("!", value))


BUILTINS: dict[str, Emitter] = {
	"abs": _namespaced("Math", "abs", 1),
	"bool": _truthy,
	"float": _global("parseFloat"),
	"int": _int,
	"len": _length,
	"max": _namespaced("Math", "max"),
	"min": _namespaced("Math", "min"),
	"print": _namespaced("console", "log"),
	"round": _round,
	"str": _global("palmStr"),
}


# Python method name -> JS method name, for receivers that are not cells
METHOD_RENAMES: dict[str, str] = {
	"append": "push",
	"endswith": "endsWith",
	"index": "indexOf",
	"lower": "toLowerCase",
	"lstrip": "trimStart",
	"rstrip": "trimEnd",
	"startswith": "startsWith",
	"strip": "trim",
	"upper": "toUpperCase",
}


def emit_method(obj: JSExpr, method: str, args: list[JSExpr]) -> JSExpr:
	"""Method call on a plain value, with the few Python idioms JS lacks."""
	if method == "join" and len(args) == 1:
		# sep.join(items) -> items.join(sep)
		return JSMemberCall(args[0], "join", [obj])
	if method == "get" and len(args) in (1, 2):
		present = JSMemberCall(JSIdentifier("Object"), "hasOwn", [obj, args[0]])
		default = args[1] if len(args) == 2 else JSUndefined()
		return JSTertiary(present, JSSubscript(obj, args[0]), default)
	if method == "count" and len(args) == 1:
		same = JSArrowFunction("__v", JSBinary(JSIdentifier("__v"), "===", args[0]))
		return JSMember(JSMemberCall(obj, "filter", [same]), "length")
	return JSMemberCall(obj, METHOD_RENAMES.get(method, method), args)


__all__ = ["BUILTINS", "METHOD_RENAMES", "emit_method"]
