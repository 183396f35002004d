import os

import pytest
from palm.env import (
	ENV_PALM_ATTRIBUTE_PREFIX,
	ENV_PALM_LOG_LEVEL,
	ENV_PALM_REWRITE,
	ENV_PALM_STRICT,
)
from palm.rewriter import clear_rewrite_cache

PALM_VARS = (ENV_PALM_ATTRIBUTE_PREFIX, ENV_PALM_LOG_LEVEL, ENV_PALM_REWRITE, ENV_PALM_STRICT)


@pytest.fixture(autouse=True)
def _palm_env():  # pyright: ignore[reportUnusedFunction]
	saved = {name: os.environ.get(name) for name in PALM_VARS}
	for name in PALM_VARS:
		os.environ.pop(name, None)
	clear_rewrite_cache()
	yield
	for name, value in saved.items():
		if value is None:
			os.environ.pop(name, None)
		else:
			os.environ[name] = value
