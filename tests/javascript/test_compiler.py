import logging

import pytest
from palm.env import env
from palm.errors import DegradedError
from palm.javascript import ExpressionCompiler, compile_expression, param_renames

BINDINGS = {"count": "s0", "items": "s1", "flag": "s2", "data": "s3"}


def js(source: str, **kwargs: str) -> str:
	return ExpressionCompiler(BINDINGS).compile(source, **kwargs)


# =============================================================================
# Cell access
# =============================================================================


class TestCellAccess:
	def test_bound_reads(self):
		assert js("count + 1") == "state['s0'].get() + 1"
		assert js("count.get() + 1") == "state['s0'].get() + 1"

	def test_free_names_pass_through(self):
		compiled = compile_expression("count.get() + y", BINDINGS)
		assert compiled.code == "state['s0'].get() + y"
		assert compiled.cells == frozenset({"s0"})
		assert compiled.free_names == frozenset({"y"})
		assert compiled.structural

	def test_assignments(self):
		assert js("count = count + 1") == "state['s0'].set(state['s0'].get() + 1)"
		assert js("count += 2") == "state['s0'].set(state['s0'].get() + 2)"
		assert js("data['k'] = 1") == "state['s3'].update(\"k\", 1)"
		assert js("data['k'] += 1") == "state['s3'].update(\"k\", state['s3'].get()[\"k\"] + 1)"

	def test_walrus_mutates_then_reads(self):
		assert js("(count := 5)") == "(state['s0'].set(5), state['s0'].get())"

	def test_postfix_update(self):
		assert js("count.post_increment()") == (
			"(() => { const __old = state['s0'].get(); "
			+ "state['s0'].set(__old + 1); return __old; })()"
		)
		assert "__old - 2" in js("count.post_decrement(2)")

	def test_cell_method_calls(self):
		assert js("items.append(3)") == "state['s1'].push(3)"
		assert js("items.extend([1])") == "state['s1'].merge([1])"
		assert js("flag.toggle()") == "state['s2'].toggle()"

	def test_parameters_are_renamed(self):
		compiled = compile_expression("count + step", BINDINGS, rename=param_renames(["step"]))
		assert compiled.code == "state['s0'].get() + arguments[0]"
		assert compiled.params == frozenset({"step"})
		assert param_renames(["a", "b"]) == {"a": "arguments[0]", "b": "arguments[1]"}


# =============================================================================
# Operators
# =============================================================================


class TestOperators:
	def test_comparisons_and_logic(self):
		assert js("a == b") == "a === b"
		assert js("a != b") == "a !== b"
		assert js("x is None") == "x == null"
		assert js("x is not None") == "x != null"
		assert js("a and not b") == "a && !b"
		assert js("a or b") == "a || b"
		assert js("0 < x < 10") == "0 < x && x < 10"

	def test_conditional_and_nullish(self):
		assert js("1 if flag else 2") == "state['s2'].get() ? 1 : 2"
		assert js("x if x is not None else 0") == "x ?? 0"
		assert js("0 if x is None else x") == "x ?? 0"

	def test_arithmetic(self):
		assert js("a // b") == "Math.floor(a / b)"
		assert js("(a + b) * c") == "(a + b) * c"
		assert js("a - (b - c)") == "a - (b - c)"
		assert js("-a ** 2") == "-(a ** 2)"

	def test_membership(self):
		assert js("'a' in items") == "palmContains(state['s1'].get(), \"a\")"
		assert js("'a' not in items") == "!palmContains(state['s1'].get(), \"a\")"
		assert js("key in data") == "palmContains(state['s3'].get(), key)"


# =============================================================================
# Literals and access
# =============================================================================


class TestLiteralsAndAccess:
	def test_literals(self):
		assert js("None") == "null"
		assert js("True") == "true"
		assert js("[1, 'a', None]") == '[1, "a", null]'
		assert js("{'a': 1, key: 2}") == '{"a": 1, [key]: 2}'
		assert js("{1, 2}") == "new Set([1, 2])"

	def test_subscripts_and_slices(self):
		assert js("items[0]") == "state['s1'].get()[0]"
		assert js("items[-1]") == "state['s1'].get().at(-1)"
		assert js("items[1:3]") == "state['s1'].get().slice(1, 3)"
		assert js("items[:2]") == "state['s1'].get().slice(0, 2)"
		assert js("items[1:]") == "state['s1'].get().slice(1)"

	def test_fstring(self):
		assert js("f'Count: {count}'") == "`Count: ${state['s0'].get()}`"

	def test_builtins_and_methods(self):
		assert js("len(items)") == "state['s1'].get().length ?? state['s1'].get().size"
		assert js("str(count)") == "palmStr(state['s0'].get())"
		assert js("round(x)") == "palmRound(x)"
		assert js("round(x, 2)") == "palmRound(x, 2)"
		assert js("max(a, b)") == "Math.max(a, b)"
		assert js("name.upper()") == "name.toUpperCase()"
		assert js("', '.join(items)") == 'state[\'s1\'].get().join(", ")'
		assert js("d.get('k', 0)") == 'Object.hasOwn(d, "k") ? d["k"] : 0'

	def test_lambda_and_comprehension(self):
		assert js("[x * 2 for x in items if x > 1]") == (
			"state['s1'].get().filter(x => x > 1).map(x => x * 2)"
		)
		assert js("map(lambda count: count + 1, xs)") == "map(count => count + 1, xs)"


# =============================================================================
# Fallback
# =============================================================================


def test_textual_fallback(caplog: pytest.LogCaptureFixture):
	with caplog.at_level(logging.WARNING, logger="palm"):
		compiled = compile_expression('count === 1 && label == "count"', BINDINGS)
	assert compiled.code == 'state[\'s0\'].get() === 1 && label === "count"'
	assert not compiled.structural
	assert compiled.cells == frozenset({"s0"})
	assert "compile.fallback" in caplog.text


def test_fallback_keeps_container_before_dot():
	compiled = compile_expression("count.get() ?? flag", BINDINGS)
	assert compiled.code == "state['s0'].get() ?? state['s2'].get()"


def test_unusable_input_reads_target(caplog: pytest.LogCaptureFixture):
	with caplog.at_level(logging.WARNING, logger="palm"):
		assert js("count = (", target="s0") == "state['s0'].get()"
		assert js("   ") == "undefined"
	assert "compile.empty" in caplog.text


def test_strict_mode_raises_instead_of_falling_back():
	env.strict = True
	with pytest.raises(DegradedError) as info:
		js("count === 1")
	assert info.value.code == "compile.fallback"
