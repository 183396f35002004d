"""Installed version of palm, or the one declared in the local pyproject.toml."""

from __future__ import annotations

from importlib.metadata import PackageNotFoundError
from importlib.metadata import version as _pkg_version
from pathlib import Path

DISTRIBUTION = "palm-reactive"


def _local_version() -> str | None:
	# src/palm/version.py -> repository root
	pyproject = Path(__file__).resolve().parents[2] / "pyproject.toml"
	if not pyproject.exists():
		return None
	for line in pyproject.read_text().splitlines():
		key, sep, value = line.partition("=")
		if sep and key.strip() == "version":
			return value.strip().strip("\"'") or None
	return None


def _resolve_version() -> str:
	try:
		return _pkg_version(DISTRIBUTION)
	except PackageNotFoundError:
		return _local_version() or "0.0.0"


__version__: str = _resolve_version()

__all__ = ["__version__"]
