from .codegen import CodegenConfig, CodeGenerator, generate_empty_module, generate_module
from .env import PalmEnv, env
from .errors import (
	CompileError,
	DegradedError,
	PalmError,
	PayloadError,
	ReentrantTraceError,
	TraceError,
)
from .javascript import CompiledExpression, ExpressionCompiler, compile_expression
from .markup import display_value, finalize_html
from .render import RenderResult, initial_state, render_component
from .replay import Replayer, replay, replay_action
from .rewriter import clear_rewrite_cache, rewrite_action, rewrite_source
from .state import ActionArgument, ExpressionReference, StateCell
from .tracer import ActionRecord, CellHandles, ComponentContext, Effect
from .types import OperationDict, PayloadDict
from .version import __version__

__all__ = [
	"ActionArgument",
	"ActionRecord",
	"CellHandles",
	"CodeGenerator",
	"CodegenConfig",
	"CompileError",
	"CompiledExpression",
	"ComponentContext",
	"DegradedError",
	"Effect",
	"ExpressionCompiler",
	"ExpressionReference",
	"OperationDict",
	"PalmEnv",
	"PalmError",
	"PayloadDict",
	"PayloadError",
	"ReentrantTraceError",
	"RenderResult",
	"Replayer",
	"StateCell",
	"TraceError",
	"__version__",
	"clear_rewrite_cache",
	"compile_expression",
	"display_value",
	"env",
	"finalize_html",
	"generate_empty_module",
	"generate_module",
	"initial_state",
	"render_component",
	"replay",
	"replay_action",
	"rewrite_action",
	"rewrite_source",
]
