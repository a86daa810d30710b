# src/quantdsl_mql5/engine/compiler.py

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping, Optional, Union

from ..dsl.graph import StrategyGraph, load_graph
from ..utils.logging import get_logger
from .assembler import assemble
from .categorizer import categorize
from .context import (
    CompileContext,
    CompileOptions,
    GeneratedCode,
    InputParam,
    build_compile_context,
)
from .decomposition import decompose_entry_strategies
from .entry_logic import generate_entry_logic
from .exits import generate_close_condition_code, generate_close_time_gate, generate_time_exit_code
from .indicators import generate_indicator_code
from .price_action import generate_price_action_code
from .reachability import filter_reachable
from .timing import generate_spread_filter, generate_timing_code
from .trade_management import finalize_trade_management, generate_trade_management_code
from .trading import (
    generate_place_buy_code,
    generate_place_sell_code,
    generate_stop_loss_code,
    generate_take_profit_code,
)


log = get_logger(__name__)


Document = Union[Mapping[str, Any], StrategyGraph]


@dataclass(slots=True)
class CompileResult:
    """
    Output of one compile.

    `code` is the filled accumulator, kept for tooling that needs the input
    table (e.g. the .set exporter) without re-parsing the source text.
    """

    source: str
    code: GeneratedCode
    context: CompileContext


def _base_inputs(ctx: CompileContext, code: GeneratedCode) -> None:
    settings = ctx.settings
    code.add_input(InputParam("InpMagicNumber", "int", settings.magic_number, "Magic Number", False, "General Settings"))
    code.add_input(InputParam("InpTradeComment", "string", settings.comment, "Trade Comment", False, "General Settings"))
    code.add_input(InputParam("InpMaxSlippage", "int", 10, "Max Slippage (points)", False, "Risk Management"))


def compile_strategy(
    document: Document,
    project_name: str,
    options: Optional[CompileOptions] = None,
) -> CompileResult:
    """
    Compile a strategy graph document into MQL5 source text.

    Either the full text is produced or an exception is raised; document
    errors (GraphDocumentError) surface before any text exists.
    """

    # ------------------------------------------------------------------ #
    # 1. Parse, expand composite entries, drop dead nodes
    # ------------------------------------------------------------------ #
    graph = load_graph(document)
    nodes, edges = decompose_entry_strategies(graph.nodes, graph.edges)
    known_ids = {n.id for n in graph.nodes} | {n.id for n in nodes}
    live = filter_reachable(nodes, edges)
    buckets = categorize(live)

    ctx = build_compile_context(project_name, graph.settings, options, buckets.timing)
    code = GeneratedCode()
    log.info(
        "Compiling '%s': %d nodes (%d live), %d edges",
        ctx.project_name,
        len(nodes),
        len(live),
        len(edges),
    )

    # ------------------------------------------------------------------ #
    # 2. Process-wide gates
    # ------------------------------------------------------------------ #
    _base_inputs(ctx, code)
    generate_spread_filter(buckets.max_spread, code)
    generate_timing_code(buckets.timing, code)
    generate_close_time_gate(buckets.time_exit, ctx, code)

    # ------------------------------------------------------------------ #
    # 3. Signals
    # ------------------------------------------------------------------ #
    for i, node in enumerate(buckets.indicators):
        generate_indicator_code(node, i, code)
    for i, node in enumerate(buckets.price_action):
        generate_price_action_code(node, i, code)

    # ------------------------------------------------------------------ #
    # 4. Risk: stop loss and take profit first, sizing depends on the stop
    # ------------------------------------------------------------------ #
    if buckets.has_entry:
        if buckets.stop_loss:
            generate_stop_loss_code(
                buckets.stop_loss[0],
                buckets.indicators,
                buckets.price_action,
                edges,
                known_ids,
                ctx,
                code,
            )
        else:
            code.on_tick.append("double slPips = 0; // No Stop Loss connected")
        if buckets.take_profit:
            generate_take_profit_code(buckets.take_profit[0], code)
        else:
            code.on_tick.append("double tpPips = 0; // No Take Profit connected")

        if buckets.place_buy:
            generate_place_buy_code(buckets.place_buy[0], code)
        if buckets.place_sell:
            generate_place_sell_code(buckets.place_sell[0], code)

    # ------------------------------------------------------------------ #
    # 5. Entries, exits, management
    # ------------------------------------------------------------------ #
    generate_entry_logic(
        buckets.indicators,
        buckets.price_action,
        buckets.place_buy[0] if buckets.place_buy else None,
        buckets.place_sell[0] if buckets.place_sell else None,
        ctx,
        code,
    )
    for i, node in enumerate(buckets.close_condition):
        generate_close_condition_code(node, i, buckets.indicators, buckets.price_action, edges, code)
    for i, node in enumerate(buckets.time_exit):
        generate_time_exit_code(node, i, ctx, code)
    for node in buckets.management:
        generate_trade_management_code(node, code)
    finalize_trade_management(code)

    # ------------------------------------------------------------------ #
    # 6. Assemble
    # ------------------------------------------------------------------ #
    source = assemble(ctx, code)
    log.info(
        "Compiled '%s': %d inputs, %d helper blocks, %d lines",
        ctx.project_name,
        len(code.inputs),
        len(code.helper_functions),
        source.count("\n") + 1,
    )
    return CompileResult(source=source, code=code, context=ctx)


def generate_mql5_code(
    document: Document,
    project_name: str,
    options: Optional[CompileOptions] = None,
) -> str:
    return compile_strategy(document, project_name, options).source
