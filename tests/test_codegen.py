import json
from typing import Any

import pytest
from palm.codegen import CodegenConfig, CodeGenerator, generate_empty_module, generate_module
from palm.env import env
from palm.errors import DegradedError
from palm.tracer import ComponentContext
from palm.types import PayloadDict


def payload(**overrides: Any) -> PayloadDict:
	base: dict[str, Any] = {
		"id": "counter",
		"states": [{"id": "s0", "value": 0, "global": False}],
		"actions": {"increment": [{"type": "increment", "slot": "s0", "step": 1}]},
		"effects": [],
	}
	base.update(overrides)
	return base  # pyright: ignore[reportReturnType]


def emit(op: dict[str, Any]) -> str:
	return CodeGenerator().emit_operation(op)


# =============================================================================
# Operations
# =============================================================================


def test_emit_literal_operations():
	assert emit({"type": "set", "slot": "s0", "value": "hi"}) == "state['s0'].set(\"hi\");"
	assert emit({"type": "increment", "slot": "s0", "step": 2}) == "state['s0'].increment(2);"
	assert emit({"type": "decrement", "slot": "s0"}) == "state['s0'].decrement(1);"
	assert emit({"type": "toggle", "slot": "s0"}) == "state['s0'].toggle();"
	assert emit({"type": "pop", "slot": "s0"}) == "state['s0'].pop();"
	assert emit({"type": "push", "slot": "s1", "value": {"a": [1]}}) == (
		'state[\'s1\'].push({"a": [1]});'
	)
	assert emit({"type": "update", "slot": "s1", "key": 0, "value": None}) == (
		"state['s1'].update(0, null);"
	)
	assert emit({"type": "remove", "slot": "s1", "key": "k"}) == "state['s1'].remove(\"k\");"
	assert emit({"type": "merge", "slot": "s1", "value": [1, 2]}) == "state['s1'].merge([1, 2]);"


def test_emit_argument_references():
	arg = {"type": "arg", "index": 0}
	assert emit({"type": "set", "slot": "s0", "value": arg}) == "state['s0'].set(arguments[0]);"
	assert emit({"type": "increment", "slot": "s0", "step": arg}) == (
		"state['s0'].increment(arguments[0]);"
	)
	assert emit({"type": "push", "slot": "s0", "value": {"id": arg}}) == (
		'state[\'s0\'].push({"id": arguments[0]});'
	)


def test_emit_expression_operations_are_guarded():
	expr = "state['s0'].get() + arguments[0]"
	assert emit({"type": "expr", "slot": "s0", "expr": expr}) == (
		f"try {{ state['s0'].set({expr}); }} catch (err) "
		+ f'{{ console.error("Palm: expression error", {json.dumps(expr)}, err); }}'
	)
	assert emit({"type": "push_expr", "slot": "s1", "expr": "arguments[0]"}).startswith(
		"try { state['s1'].push(arguments[0]); }"
	)
	assert emit({"type": "update", "slot": "s1", "key": 0, "expr": "x"}).startswith(
		"try { state['s1'].update(0, x); }"
	)
	assert emit({"type": "merge", "slot": "s1", "expr": "x"}).startswith(
		"try { state['s1'].merge(x); }"
	)
	assert emit({"type": "expr", "slot": "s0", "expr": "  "}) == "// Empty expression"


def test_emit_computed_keys():
	last = "state['s0'].get().length - 1"
	assert emit({"type": "remove", "slot": "s0", "key_expr": last}).startswith(
		f"try {{ state['s0'].remove({last}); }}"
	)
	assert emit({"type": "update", "slot": "s0", "key_expr": "arguments[0] + 1", "value": "x"}) == (
		"try { state['s0'].update(arguments[0] + 1, \"x\"); } catch (err) "
		+ '{ console.error("Palm: expression error", "arguments[0] + 1", err); }'
	)


def test_unknown_operation_becomes_comment():
	assert emit({"type": "explode", "slot": "s0"}) == "// Unknown operation: explode"
	assert emit({"type": "set"}) == "// Unknown operation: set"


def test_unknown_operation_in_strict_mode():
	env.strict = True
	with pytest.raises(DegradedError):
		emit({"type": "explode", "slot": "s0"})


# =============================================================================
# Module
# =============================================================================


def test_module_structure():
	module = generate_module(payload())
	assert "export function mount(root, initial) {" in module
	assert 'state["s0"] = createState(seed("s0", 0));' in module
	assert 'actions["increment"] = function () {' in module
	assert "    state['s0'].increment(1);" in module
	assert 'const ACTION_ATTR = "data-palm-action";' in module
	assert "unmount() {" in module
	assert "requestFrame(flush);" in module
	assert 'window[registryKey] = { state, actions };' in module


def test_module_global_state():
	module = generate_module(
		payload(states=[{"id": "s0", "value": "dark", "global": True, "key": "theme"}])
	)
	assert 'state["s0"] = globalState("theme", seed("s0", "dark"), hasSeed("s0"));' in module
	assert "__PALM_GLOBAL_STATE__" in module
	assert "} else if (reseed) {" in module


def test_module_lifecycle_hooks():
	module = generate_module(
		payload(lifecycle={"mount": ["state['s0'].increment(1)"], "unmount": ["console.log(1)"]})
	)
	assert "// Mount hooks" in module
	assert "    state['s0'].increment(1);" in module
	assert 'console.error("Palm: mount hook error", err);' in module
	assert "        console.log(1);" in module
	assert 'console.error("Palm: unmount hook error", err);' in module
	assert module.index("// Mount hooks") < module.index("let mounted = true;")
	assert "// Mount hooks" not in generate_module(payload())


def test_module_computed_and_effects():
	ctx = ComponentContext("shop")
	price = ctx.create_state(2, name="price")
	qty = ctx.create_state(3, name="qty")
	ctx.create_computed("total", "price * qty", [price, qty])
	ctx.register_effect(None, [qty], "print(qty)")
	data = ctx.build_payload()
	assert data is not None
	module = generate_module(data)
	assert "next = state['s0'].get() * state['s1'].get();" in module
	assert 'if (!valuesEqual(state["c2"].get(), next)) {' in module
	assert 'if (state["s0"]) cleanups.push(state["s0"].subscribe(recompute));' in module
	assert "console.log(state['s1'].get());" in module
	assert 'if (state["s1"]) cleanups.push(state["s1"].subscribe(run));' in module


def test_module_config():
	config = CodegenConfig(
		attribute_prefix="data-x",
		expose_globals=False,
		batch_updates=False,
		source_name="page*/.py",
	)
	module = generate_module(payload(), config)
	assert 'const BIND_ATTR = "data-x-bind";' in module
	assert "window[registryKey]" not in module
	assert "requestFrame(flush);" not in module
	assert "Generated by palm from page* /.py." in module


def test_module_values_are_script_safe():
	module = generate_module(
		payload(states=[{"id": "s0", "value": "</script>", "global": False}])
	)
	assert "</script>" not in module
	assert 'seed("s0", "<\\/script>")' in module


def test_attribute_prefix_comes_from_env():
	env.attribute_prefix = "data-env"
	assert CodegenConfig().attribute("bind") == "data-env-bind"


def test_empty_module():
	module = generate_empty_module()
	assert "No reactive state" in module
	assert "export function mount(root, initial)" in module
