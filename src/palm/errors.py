from __future__ import annotations

import logging
from typing import Any, Literal

from palm.env import env

logger = logging.getLogger(__name__)

ErrorCode = Literal[
	"rewrite.unsupported",
	"rewrite.source",
	"rewrite.recompile",
	"compile.fallback",
	"compile.empty",
	"computed.expression",
	"codegen.operation",
	"codegen.module",
	"markup.args",
	"trace.value",
]


class PalmError(Exception):
	"""Base error for all palm operations."""


class TraceError(PalmError):
	"""Invalid use of the action tracer."""


class ReentrantTraceError(TraceError):
	"""Raised when an action is registered while another one is recording."""

	def __init__(self, active: str, requested: str) -> None:
		super().__init__(
			f"Cannot record action '{requested}' while '{active}' is recording. "
			+ "Nested action registration is not supported."
		)
		self.active = active
		self.requested = requested


class CompileError(PalmError):
	"""A host expression could not be translated to JavaScript."""


class PayloadError(PalmError):
	"""The component payload violates an invariant."""


class DegradedError(PalmError):
	"""Raised instead of degrading when strict mode is enabled."""

	def __init__(self, code: ErrorCode, message: str) -> None:
		super().__init__(f"[{code}] {message}")
		self.code = code


def report(code: ErrorCode, message: str, /, **details: Any) -> None:
	"""Report a construct that degraded to non-reactive behavior.

	Outside strict mode this only logs; the caller carries on with its
	fallback. With PALM_STRICT enabled the degradation becomes an error.
	"""
	if env.strict:
		logger.error("Palm error code=%s message=%s details=%s", code, message, details)
		raise DegradedError(code, message)
	logger.warning("Palm degraded code=%s message=%s details=%s", code, message, details)


__all__ = [
	"CompileError",
	"DegradedError",
	"ErrorCode",
	"PalmError",
	"PayloadError",
	"ReentrantTraceError",
	"TraceError",
	"report",
]
