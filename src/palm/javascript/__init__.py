from palm.javascript.compiler import (
	CompiledExpression as CompiledExpression,
)
from palm.javascript.compiler import (
	ExpressionCompiler as ExpressionCompiler,
)
from palm.javascript.compiler import (
	compile_expression as compile_expression,
)
from palm.javascript.compiler import (
	param_renames as param_renames,
)
from palm.javascript.nodes import json_literal as json_literal
from palm.javascript.nodes import to_js_expr as to_js_expr
