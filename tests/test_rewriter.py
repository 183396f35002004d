import logging

import pytest
from palm.rewriter import (
	REF_NAME,
	_REWRITE_CACHE,  # pyright: ignore[reportPrivateUsage]
	bound_cells,
	callable_expression,
	closure_cells,
	rewrite_action,
	rewrite_expression,
	rewrite_source,
)
from palm.state import StateCell
from palm.tracer import ComponentContext


def rewrite(body: str, *bound: str, params: str = "") -> str:
	source = f"def handler({params}):\n" + "".join(f"    {line}\n" for line in body.splitlines())
	result = rewrite_source(source, bound)
	assert result.changed, result
	return result.source


# =============================================================================
# Statement rewrites
# =============================================================================


def test_increment_forms():
	assert rewrite("count = count + 1", "count") == "def handler():\n    count.increment(1)"
	assert rewrite("count = 2 + count", "count") == "def handler():\n    count.increment(2)"
	assert rewrite("count += 3", "count") == "def handler():\n    count.increment(3)"


def test_decrement_forms():
	assert rewrite("count = count - 1", "count") == "def handler():\n    count.decrement(1)"
	assert rewrite("count -= -2", "count") == "def handler():\n    count.decrement(-2)"


def test_toggle():
	assert rewrite("flag = not flag", "flag") == "def handler():\n    flag.toggle()"


def test_list_literal_augmented_assignment_merges():
	out = rewrite("items += [1, 2]", "items")
	assert out == f"def handler():\n    items.merge({REF_NAME}([1, 2], '[1, 2]'))"


def test_other_augmented_assignment_sets_combined_value():
	out = rewrite("count *= 2", "count")
	assert out == f"def handler():\n    count.set({REF_NAME}(count.get() * 2, 'count * (2)'))"


def test_plain_assignment_wraps_reads():
	out = rewrite("total = price * qty", "total", "price", "qty")
	assert out == (
		f"def handler():\n    total.set({REF_NAME}(price.get() * qty.get(), 'price * qty'))"
	)


def test_subscript_assignment_and_delete():
	assert rewrite("items[0] = 5", "items") == (
		f"def handler():\n    items.update({REF_NAME}(0, '0'), {REF_NAME}(5, '5'))"
	)
	out = rewrite("del items[0]", "items")
	assert out == f"def handler():\n    items.remove({REF_NAME}(0, '0'))"
	out = rewrite("del items[len(items) - 1]", "items")
	assert out == (
		f"def handler():\n    items.remove({REF_NAME}(len(items.get()) - 1, 'len(items) - 1'))"
	)


def test_subscript_augmented_assignment():
	out = rewrite("scores['a'] += 1", "scores")
	assert out == (
		f"def handler():\n    scores.update({REF_NAME}('a', \"'a'\"), "
		+ f"{REF_NAME}(scores['a'] + 1, \"scores['a'] + (1)\"))"
	)


def test_container_methods():
	assert f"items.push({REF_NAME}('x', \"'x'\"))" in rewrite("items.append('x')", "items")
	assert f"items.merge({REF_NAME}(more.get(), 'more'))" in rewrite(
		"items.extend(more)", "items", "more"
	)
	assert f"data.merge({REF_NAME}({{'a': 1}}, \"{{'a': 1}}\"))" in rewrite(
		"data.update({'a': 1})", "data"
	)
	assert f"data.remove({REF_NAME}('k', \"'k'\"))" in rewrite("data.pop('k')", "data")


def test_value_arguments_of_cell_methods_are_wrapped():
	out = rewrite("count.set(other + 1)", "count", "other")
	assert out == f"def handler():\n    count.set({REF_NAME}(other.get() + 1, 'other + 1'))"
	out = rewrite("data.update(key, value)", "data", params="key, value")
	assert out == (
		f"def handler(key, value):\n    "
		+ f"data.update({REF_NAME}(key, 'key'), {REF_NAME}(value, 'value'))"
	)


def test_straight_line_locals_are_inlined_into_text():
	out = rewrite("double = count * 2\ntotal = double + 1", "count", "total")
	assert out == (
		"def handler():\n    double = count.get() * 2\n"
		+ f"    total.set({REF_NAME}(double + 1, 'count * 2 + 1'))"
	)
	out = rewrite("step = amount * 2\nstep += 1\ncount.set(step)", "count", params="amount")
	assert f"count.set({REF_NAME}(step, 'amount * 2 + 1'))" in out


def test_locals_are_not_inlined_past_a_mutation_or_inside_blocks():
	out = rewrite("before = count\ncount += 1\ntotal = before", "count", "total")
	assert f"{REF_NAME}(before, 'before')" in out
	out = rewrite("for i in range(3):\n    last = i\ntotal = last", "total")
	assert f"{REF_NAME}(last, 'last')" in out
	out = rewrite("popped = items.pop()\ntotal = popped", "items", "total")
	assert f"{REF_NAME}(popped, 'popped')" in out


def test_global_and_nonlocal_declarations_are_removed():
	out = rewrite("nonlocal count, other\ncount += 1", "count")
	assert out == "def handler():\n    nonlocal other\n    count.increment(1)"
	out = rewrite("global count\ncount += 1", "count")
	assert out == "def handler():\n    count.increment(1)"


def test_parameters_shadow_bound_names():
	result = rewrite_source("def handler(count):\n    count = count + 1\n", ["count"])
	assert not result.changed


def test_lambda_parameters_shadow_bound_names():
	out = rewrite("total.set(sorted(items, key=lambda items: items))", "total", "items")
	assert "key=lambda items: items" in out
	assert "sorted(items.get()" in out


def test_attribute_receivers_are_not_read():
	result = rewrite_source("def handler():\n    count.increment()\n", ["count"])
	assert not result.changed


def test_unsupported_constructs_are_listed():
	result = rewrite_source("def handler():\n    a, count = 1, 2\n", ["count"])
	assert result.unsupported == ["unpacking assignment to 'count'"]
	result = rewrite_source("def handler():\n    print((count := 3))\n", ["count"])
	assert result.unsupported == ["walrus assignment to 'count'"]


def test_unparsable_source():
	result = rewrite_source("def handler(:\n", ["count"])
	assert not result.changed
	assert result.unsupported[0].startswith("unparsable source")


def test_rewrite_expression():
	assert rewrite_expression("price * qty", ["price", "qty"]) == "price.get() * qty.get()"
	assert rewrite_expression("items[0] + len(items)", ["items"]) == "items[0] + len(items.get())"
	assert rewrite_expression("a + b", ["price"]) == "a + b"
	assert rewrite_expression("a +", ["a"]) == "a +"


# =============================================================================
# Cell discovery
# =============================================================================


def test_closure_and_bound_cells():
	ctx = ComponentContext("k")
	count = ctx.create_state(0, name="count")
	named = ctx.create_state(1, name="named")
	plain = 3

	def handler():
		count.increment(plain)

	assert closure_cells(handler) == {"count": count}
	cells = bound_cells(handler, ctx)
	assert cells == {"count": count}
	assert named not in cells.values()


def test_callable_expression():
	assert callable_expression(lambda: 1 + 2) == "1 + 2"

	def single():
		"""Docstrings are skipped."""
		return 4 * 5

	def multi():
		x = 1
		return x

	assert callable_expression(single) == "4 * 5"
	assert callable_expression(multi) is None
	assert callable_expression(len) is None


# =============================================================================
# Recompilation
# =============================================================================


def test_rewrite_action_keeps_metadata_and_defaults():
	ctx = ComponentContext("k")
	count = ctx.create_state(0, name="count")

	def add(amount=2):
		"""Add to the count."""
		nonlocal count
		count += amount

	rewritten = rewrite_action(add, ctx)
	assert rewritten is not add
	assert rewritten.__name__ == "add"
	assert rewritten.__doc__ == "Add to the count."
	rewritten()
	assert isinstance(count, StateCell)
	assert count.get() == 2


def test_rewrite_action_sees_other_closure_values():
	ctx = ComponentContext("k")
	count = ctx.create_state(0, name="count")
	step = 5

	def bump():
		nonlocal count
		count = count + step

	rewrite_action(bump, ctx)()
	assert count.get() == 5


def test_rewrite_is_memoized_per_code_object():
	ctx = ComponentContext("k")
	count = ctx.create_state(0, name="count")

	def bump():
		nonlocal count
		count += 1

	rewrite_action(bump, ctx)
	rewrite_action(bump, ctx)
	assert len(_REWRITE_CACHE) == 1


def test_rewrite_action_without_cells_returns_handler():
	def noop():
		return 1

	assert rewrite_action(noop) is noop
	assert rewrite_action(print) is print


def test_unsupported_handler_is_reported(caplog: pytest.LogCaptureFixture):
	ctx = ComponentContext("k")
	count = ctx.create_state(0, name="count")

	def walrus():
		print((count := 3))  # noqa: F841

	with caplog.at_level(logging.WARNING, logger="palm"):
		assert rewrite_action(walrus, ctx) is walrus
	assert "rewrite.unsupported" in caplog.text
