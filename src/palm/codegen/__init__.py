from palm.codegen.codegen import CodegenConfig as CodegenConfig
from palm.codegen.codegen import CodeGenerator as CodeGenerator
from palm.codegen.codegen import generate_empty_module as generate_empty_module
from palm.codegen.codegen import generate_module as generate_module
