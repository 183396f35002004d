"""
Render pipeline: component function -> markup, payload and client module.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from palm.codegen import CodegenConfig, generate_empty_module, generate_module
from palm.markup import finalize_html
from palm.tracer import ComponentContext
from palm.types import PayloadDict

logger = logging.getLogger(__name__)


@dataclass
class RenderResult:
	html: str
	payload: PayloadDict | None
	module: str
	context: ComponentContext

	@property
	def interactive(self) -> bool:
		return self.payload is not None


def render_component(
	component_id: str,
	render_fn: Callable[[ComponentContext], str],
	*,
	config: CodegenConfig | None = None,
	rewrite: bool | None = None,
	hydration_ids: bool = False,
) -> RenderResult:
	"""Render one component.

	``render_fn`` declares cells and actions on the context it receives and
	returns the component's markup. Actions are traced as they are
	registered, so by the time it returns the payload is complete.
	"""
	ctx = ComponentContext(component_id, rewrite=rewrite)
	markup = render_fn(ctx)
	config = config or CodegenConfig()
	html = finalize_html(
		ctx, markup, prefix=config.attribute_prefix, hydration_ids=hydration_ids
	)
	payload = ctx.build_payload()
	if payload is None:
		logger.debug("Component %s has no reactive state", component_id)
		return RenderResult(html, None, generate_empty_module(), ctx)
	module = generate_module(payload, config)
	return RenderResult(html, payload, module, ctx)


def initial_state(payload: PayloadDict | None) -> dict[str, Any]:
	"""The ``initial`` argument the client passes to ``mount``."""
	if payload is None:
		return {"states": []}
	return {"states": [{"id": s["id"], "value": s["value"]} for s in payload["states"]]}


__all__ = ["RenderResult", "initial_state", "render_component"]
