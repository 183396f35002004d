import logging
from typing import Any

import pytest
from palm.env import env
from palm.errors import DegradedError, TraceError
from palm.replay import Replayer, replay, replay_action
from palm.tracer import ComponentContext


def values(ctx: ComponentContext) -> dict[str, Any]:
	return {slot: cell.get() for slot, cell in ctx.states.items()}


# =============================================================================
# Scenarios
# =============================================================================


def test_scenario_a():
	assert replay([{"type": "increment", "slot": "s0", "step": 1}], {"s0": 5}) == {"s0": 6}
	expr = {
		"type": "expr",
		"slot": "s0",
		"expr": "state['s0'].get() + 1",
		"source": "count + 1",
	}
	assert replay([expr], {"s0": 5}, bindings={"count": "s0"}) == {"s0": 6}


def test_scenario_b():
	assert replay([{"type": "push", "slot": "s1", "value": "x"}], {"s1": []}) == {"s1": ["x"]}


def test_scenario_c():
	assert replay([{"type": "toggle", "slot": "s2"}], {"s2": True}) == {"s2": False}


def test_argument_references_resolve_to_call_arguments():
	operations = [
		{"type": "increment", "slot": "s0", "step": {"type": "arg", "index": 0}},
		{"type": "push", "slot": "s1", "value": {"n": {"type": "arg", "index": 1}}},
	]
	result = replay(operations, {"s0": 1, "s1": []}, args=[4, "x"])
	assert result == {"s0": 5, "s1": [{"n": "x"}]}


def test_expression_source_sees_cells_by_slot_and_params():
	op = {"type": "expr", "slot": "s1", "expr": "", "source": "s0 * factor"}
	result = replay([op], {"s0": 3, "s1": 0}, args=[2], params=["factor"])
	assert result == {"s0": 3, "s1": 6}


# =============================================================================
# Laws
# =============================================================================


def test_replay_is_deterministic_and_does_not_touch_input():
	initial = {"s0": [1, 2]}
	operations = [{"type": "push", "slot": "s0", "value": 3}, {"type": "remove", "slot": "s0", "key": 0}]
	first = replay(operations, initial)
	second = replay(operations, initial)
	assert first == second == {"s0": [2, 3]}
	assert initial == {"s0": [1, 2]}


def test_increment_then_decrement_is_identity():
	operations = [
		{"type": "increment", "slot": "s0", "step": 7},
		{"type": "decrement", "slot": "s0", "step": 7},
	]
	assert replay(operations, {"s0": 3}) == {"s0": 3}


def test_push_then_pop_is_identity():
	operations = [{"type": "push", "slot": "s0", "value": "x"}, {"type": "pop", "slot": "s0"}]
	assert replay(operations, {"s0": ["a"]}) == {"s0": ["a"]}


def test_replay_matches_host_execution():
	ctx = ComponentContext("cart")
	count = ctx.create_state(5, name="count")
	items = ctx.create_state(["a"], name="items")
	flag = ctx.create_state(True, name="flag")

	def checkout(amount, label):
		nonlocal count, flag
		count += amount
		count = count + 1
		items.append(label)
		items[0] = "first"
		flag = not flag

	ctx.register_action("checkout", checkout)
	replayed = replay_action(ctx, "checkout", 3, "b")
	ctx.invoke("checkout", 3, "b")
	assert replayed == values(ctx)
	assert replayed == {"s0": 9, "s1": ["first", "b"], "s2": False}


def test_handler_locals_replay_against_current_values():
	ctx = ComponentContext("k")
	count = ctx.create_state(2, name="count")
	total = ctx.create_state(0, name="total")

	def recompute():
		nonlocal total
		double = count * 2
		total = double + 1

	ctx.register_action("recompute", recompute)
	count.set(10)
	replayed = replay_action(ctx, "recompute", initial=values(ctx))
	ctx.invoke("recompute")
	assert replayed == values(ctx) == {"s0": 10, "s1": 21}


def test_computed_keys_replay_against_current_values():
	ctx = ComponentContext("k")
	items = ctx.create_state([1, 2, 3], name="items")

	def drop_last():
		del items[len(items) - 1]

	ctx.register_action("drop_last", drop_last)
	ctx.invoke("drop_last")
	replayed = replay_action(ctx, "drop_last", initial=values(ctx))
	ctx.invoke("drop_last")
	assert replayed == values(ctx) == {"s0": [1]}


def test_replay_action_from_custom_initial_values():
	ctx = ComponentContext("k")
	count = ctx.create_state(0, name="count")

	def bump():
		nonlocal count
		count += 1

	ctx.register_action("bump", bump)
	assert replay_action(ctx, "bump", initial={"s0": 41}) == {"s0": 42}
	with pytest.raises(TraceError):
		replay_action(ctx, "missing")


# =============================================================================
# Errors
# =============================================================================


def test_unknown_slot_raises():
	with pytest.raises(TraceError):
		replay([{"type": "set", "slot": "s9", "value": 1}], {"s0": 0})


def test_unknown_operation_is_skipped(caplog: pytest.LogCaptureFixture):
	replayer = Replayer({"s0": 1})
	with caplog.at_level(logging.WARNING, logger="palm"):
		result = replayer.run(
			[{"type": "explode", "slot": "s0"}, {"type": "increment", "slot": "s0", "step": 1}]
		)
	assert result == {"s0": 2}
	assert "codegen.operation" in caplog.text


def test_unknown_operation_in_strict_mode():
	env.strict = True
	with pytest.raises(DegradedError):
		replay([{"type": "explode", "slot": "s0"}], {"s0": 1})
