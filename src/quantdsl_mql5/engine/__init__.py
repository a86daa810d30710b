# src/quantdsl_mql5/engine/__init__.py

from .compiler import CompileResult, compile_strategy, generate_mql5_code
from .context import CompileOptions, GeneratedCode, InputParam
from .set_file import inputs_frame, render_set_file

__all__ = [
    "generate_mql5_code",
    "compile_strategy",
    "CompileResult",
    "CompileOptions",
    "GeneratedCode",
    "InputParam",
    "inputs_frame",
    "render_set_file",
]
