import math

import pytest
from palm.javascript.nodes import (
	JSArrowFunction,
	JSBinary,
	JSIdentifier,
	JSLogicalChain,
	JSNumber,
	JSObjectExpr,
	JSPostfixUpdate,
	JSStateRef,
	JSString,
	JSTertiary,
	json_literal,
	state_get,
	state_set,
	to_js_expr,
)


def test_string_escaping():
	assert JSString('say "hi"\n').emit() == '"say \\"hi\\"\\n"'
	assert JSString("\u2028").emit() == '"\\u2028"'


def test_numbers():
	assert JSNumber(3).emit() == "3"
	assert JSNumber(1.5).emit() == "1.5"
	assert JSNumber(math.nan).emit() == "NaN"
	assert JSNumber(-math.inf).emit() == "-Infinity"


def test_state_helpers():
	assert JSStateRef("s0").emit() == "state['s0']"
	assert JSStateRef("it's").emit() == "state['it\\'s']"
	assert state_get("c1").emit() == "state['c1'].get()"
	assert state_set("s0", JSNumber(2)).emit() == "state['s0'].set(2)"


def test_precedence():
	a, b, c = JSIdentifier("a"), JSIdentifier("b"), JSIdentifier("c")
	assert JSBinary(JSBinary(a, "+", b), "*", c).emit() == "(a + b) * c"
	assert JSBinary(a, "*", JSBinary(b, "+", c)).emit() == "a * (b + c)"
	assert JSBinary(JSBinary(a, "**", b), "**", c).emit() == "(a ** b) ** c"
	assert JSBinary(JSTertiary(a, b, c), "+", a).emit() == "(a ? b : c) + a"
	assert JSLogicalChain("&&", [JSBinary(a, "??", b), c]).emit() == "(a ?? b) && c"


def test_arrow_returning_object_is_wrapped():
	assert JSArrowFunction("x", JSObjectExpr([])).emit() == "x => ({})"


def test_postfix_update():
	node = JSPostfixUpdate("s0", "-", JSBinary(JSIdentifier("a"), "+", JSNumber(1)))
	assert node.emit() == (
		"(() => { const __old = state['s0'].get(); "
		+ "state['s0'].set(__old - (a + 1)); return __old; })()"
	)


def test_to_js_expr():
	assert to_js_expr({"type": "arg", "index": 1}).emit() == "arguments[1]"
	assert to_js_expr([1, True, None, "x"]).emit() == '[1, true, null, "x"]'
	assert to_js_expr({"a": [{"type": "arg", "index": 0}]}).emit() == '{"a": [arguments[0]]}'
	with pytest.raises(TypeError):
		to_js_expr(object())


def test_json_literal_is_script_safe():
	assert json_literal("</script>") == '"<\\/script>"'
	assert json_literal({"a": "\u2028"}) == '{"a": "\\u2028"}'
