"""Environment-driven configuration for palm.

Every setting is read lazily from ``os.environ`` so tests and the CLI can
change it at runtime. Setters write back to the environment.
"""

import os

ENV_PALM_STRICT = "PALM_STRICT"
ENV_PALM_LOG_LEVEL = "PALM_LOG_LEVEL"
ENV_PALM_REWRITE = "PALM_REWRITE"
ENV_PALM_ATTRIBUTE_PREFIX = "PALM_ATTRIBUTE_PREFIX"

_FALSY = {"0", "false", "False", "no", "off"}


def _flag(name: str, default: bool) -> bool:
	value = os.environ.get(name)
	if value is None or value == "":
		return default
	return value not in _FALSY


class PalmEnv:
	@property
	def strict(self) -> bool:
		"""Raise instead of degrading to non-reactive output."""
		return _flag(ENV_PALM_STRICT, False)

	@strict.setter
	def strict(self, value: bool) -> None:
		os.environ[ENV_PALM_STRICT] = "1" if value else "0"

	@property
	def log_level(self) -> str:
		return os.environ.get(ENV_PALM_LOG_LEVEL, "WARNING").upper()

	@log_level.setter
	def log_level(self, value: str) -> None:
		os.environ[ENV_PALM_LOG_LEVEL] = value

	@property
	def rewrite(self) -> bool:
		"""Rewrite operator sugar in action handlers before tracing."""
		return _flag(ENV_PALM_REWRITE, True)

	@rewrite.setter
	def rewrite(self, value: bool) -> None:
		os.environ[ENV_PALM_REWRITE] = "1" if value else "0"

	@property
	def attribute_prefix(self) -> str:
		return os.environ.get(ENV_PALM_ATTRIBUTE_PREFIX) or "data-palm"

	@attribute_prefix.setter
	def attribute_prefix(self, value: str) -> None:
		os.environ[ENV_PALM_ATTRIBUTE_PREFIX] = value


env = PalmEnv()

__all__ = [
	"ENV_PALM_ATTRIBUTE_PREFIX",
	"ENV_PALM_LOG_LEVEL",
	"ENV_PALM_REWRITE",
	"ENV_PALM_STRICT",
	"PalmEnv",
	"env",
]
