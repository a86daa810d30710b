# src/quantdsl_mql5/engine/assembler.py

from __future__ import annotations

from .context import CompileContext, GeneratedCode
from .templates import (
    file_header,
    global_variables_section,
    helper_functions_section,
    inputs_section,
    on_deinit,
    on_init,
    on_tick,
    trade_includes,
)


def assemble(ctx: CompileContext, code: GeneratedCode) -> str:
    """
    Stitch the accumulated code into one source file, always in this order:
    header, includes, inputs, globals, OnInit, OnDeinit, OnTick, helpers.
    """
    warmup = max(ctx.options.warmup_bars, code.max_indicator_period)
    sections = [
        file_header(ctx),
        trade_includes(),
        inputs_section(code.inputs),
        global_variables_section(code.global_variables),
        on_init(code.on_init),
        on_deinit(code.on_deinit),
        on_tick(code.on_tick, warmup),
        helper_functions_section(code.helper_functions),
    ]
    return "\n".join(sections)
