from typing import Any

import pytest
from palm.state import ActionArgument, ExpressionReference, StateCell, js_truthy, values_equal
from palm.tracer import ComponentContext


def cell(value: Any) -> StateCell:
	return StateCell(None, "s0", value)


# =============================================================================
# Equality
# =============================================================================


def test_values_equal_distinguishes_bool_and_int():
	assert values_equal(1, 1)
	assert values_equal([1, {"a": 2}], [1, {"a": 2}])
	assert not values_equal(True, 1)
	assert not values_equal(0, False)


# =============================================================================
# Mutations outside of recording
# =============================================================================


def test_set_notifies_only_on_change():
	c = cell(1)
	seen: list[Any] = []
	c.subscribe(seen.append)
	c.set(1)
	c.set(2)
	c.set(2)
	assert seen == [2]
	assert c.get() == 2


def test_set_bool_after_int_is_a_change():
	c = cell(1)
	seen: list[Any] = []
	c.subscribe(seen.append)
	c.set(True)
	assert seen == [True]


def test_unsubscribe():
	c = cell(0)
	seen: list[Any] = []
	unsubscribe = c.subscribe(seen.append)
	c.set(1)
	unsubscribe()
	unsubscribe()
	c.set(2)
	assert seen == [1]


def test_increment_and_decrement():
	c = cell(None)
	c.increment()
	assert c.get() == 1
	c.increment(4)
	c.decrement(2)
	assert c.get() == 3
	c.decrement()
	assert c.get() == 2


def test_post_increment_returns_previous_value():
	c = cell(5)
	assert c.post_increment() == 5
	assert c.get() == 6
	assert c.post_decrement(2) == 6
	assert c.get() == 4


def test_toggle():
	c = cell(True)
	c.toggle()
	assert c.get() is False
	c = cell(None)
	c.toggle()
	assert c.get() is True


@pytest.mark.parametrize(
	("value", "expected"),
	[([], False), ({}, False), ("", True), (0, True), (float("nan"), True), ("x", False)],
)
def test_toggle_uses_client_truthiness(value: Any, expected: bool):
	c = cell(value)
	c.toggle()
	assert c.get() is expected
	assert js_truthy(value) is not expected


def test_push_is_copy_on_write():
	original = [1]
	c = cell(original)
	c.push(2)
	assert c.get() == [1, 2]
	assert original == [1]


def test_push_onto_non_list_starts_a_list():
	c = cell("text")
	c.push("x")
	assert c.get() == ["x"]


def test_pop():
	c = cell([1, 2])
	assert c.pop() == 2
	assert c.get() == [1]
	assert c.pop() == 1
	assert c.pop() is None
	assert cell(None).pop() is None


def test_update_list():
	c = cell(["a", "b"])
	c.update(0, "z")
	assert c.get() == ["z", "b"]
	c.update(2, "c")
	assert c.get() == ["z", "b", "c"]
	c.update(5, "f")
	assert c.get() == ["z", "b", "c", None, None, "f"]
	c.update(-1, "last")
	assert c.get()[-1] == "last"


def test_update_list_rejects_non_integer_key():
	c = cell([1])
	with pytest.raises(TypeError):
		c.update("a", 2)


def test_update_dict_and_scalar():
	c = cell({"a": 1})
	c.update("b", 2)
	assert c.get() == {"a": 1, "b": 2}
	c = cell(None)
	c.update("k", "v")
	assert c.get() == {"k": "v"}


def test_remove():
	c = cell([1, 2, 3])
	c.remove(1)
	assert c.get() == [1, 3]
	c.remove(10)
	c.remove("x")
	assert c.get() == [1, 3]

	d = cell({"a": 1, "b": 2})
	d.remove("a")
	d.remove("missing")
	assert d.get() == {"b": 2}


def test_merge():
	c = cell([1])
	c.merge([2, 3])
	assert c.get() == [1, 2, 3]
	d = cell({"a": 1})
	d.merge({"b": 2})
	assert d.get() == {"a": 1, "b": 2}
	e = cell([1])
	e.merge({"a": 1})
	assert e.get() == {"a": 1}


def test_mutations_unwrap_expression_references():
	c = cell(0)
	c.set(ExpressionReference(7, "3 + 4"))
	assert c.get() == 7
	other = cell(3)
	c.set(other)
	assert c.get() == 3


def test_container_helpers_read_current_value():
	c = cell(["a", "b"])
	assert c[0] == "a"
	assert len(c) == 2
	assert list(c) == ["a", "b"]
	assert "b" in c
	assert bool(c)
	assert not cell([])


# =============================================================================
# Placeholders
# =============================================================================


def test_action_argument_arithmetic_yields_itself():
	arg = ActionArgument(1, "qty")
	assert arg * 3 is arg
	assert 3 - arg is arg
	assert -arg is arg
	assert arg.to_ref() == {"type": "arg", "index": 1}
	assert repr(arg) == "ActionArgument(1, 'qty')"


# =============================================================================
# Rendering
# =============================================================================


def test_str_renders_bind_marker():
	ctx = ComponentContext("counter")
	count = ctx.create_state(5)
	assert count.token() == "counter::s0"
	assert str(count) == '<span data-palm-bind="counter::s0">5</span>'


def test_render_escapes_value():
	ctx = ComponentContext("k")
	label = ctx.create_state("<b>&</b>")
	assert label.render() == '<span data-palm-bind="k::s0">&lt;b&gt;&amp;&lt;/b&gt;</span>'
