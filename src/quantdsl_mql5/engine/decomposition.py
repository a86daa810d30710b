# src/quantdsl_mql5/engine/decomposition.py

from __future__ import annotations

from typing import Dict, List, Optional, Tuple

from ..dsl.graph import Edge, Node
from ..dsl.nodes import (
    ADXData,
    EmaCrossoverEntry,
    EntryStrategyData,
    MACDData,
    MacdCrossoverEntry,
    MovingAverageData,
    NodeData,
    PlaceBuyData,
    PlaceSellData,
    RangeBreakoutData,
    RangeBreakoutEntry,
    RSIData,
    RsiReversalEntry,
    StopLossData,
    TakeProfitData,
    TrendPullbackEntry,
)
from ..utils.logging import get_logger


log = get_logger(__name__)


SL_METHOD_MAP = {
    "ATR": "ATR_BASED",
    "PIPS": "FIXED_PIPS",
    "PERCENT": "PERCENT",
    "RANGE_OPPOSITE": "RANGE_OPPOSITE",
}

RANGE_METHOD_MAP = {
    "CANDLES": ("PREVIOUS_CANDLES", "ASIAN"),
    "ASIAN_SESSION": ("SESSION", "ASIAN"),
    "LONDON_SESSION": ("SESSION", "LONDON"),
    "NEW_YORK_SESSION": ("SESSION", "NEW_YORK"),
    "CUSTOM_TIME": ("TIME_WINDOW", "CUSTOM"),
}


# ---------------------------------------------------------------------------
# Optimizable-flag translation
# ---------------------------------------------------------------------------


def _translate_flags(
    entry: EntryStrategyData, mapping: Dict[str, str]
) -> Optional[List[str]]:
    """
    Map the composite's optimizable wire names onto the virtual node's
    field names. `mapping` is {composite field -> virtual field}.

    None (no list on the composite) stays None so every field of the virtual
    node remains optimizable.
    """
    if entry.optimizable_fields is None:
        return None
    return [virtual for composite, virtual in mapping.items() if composite in entry.optimizable_fields]


# ---------------------------------------------------------------------------
# Per-entry-type signal nodes
# ---------------------------------------------------------------------------


SignalSpec = Tuple[str, NodeData]  # (role, data)


def _marker(entry: EntryStrategyData, entry_id: str, role: str, **extra) -> dict:
    return {
        "entry_strategy_type": entry.KIND,
        "entry_strategy_id": entry_id,
        "role": role,
        "signal_mode": "candle_close",
        **extra,
    }


def _htf_trend_filter(entry: EntryStrategyData, entry_id: str, applied_price: str = "CLOSE") -> SignalSpec:
    return (
        "htf-ema",
        MovingAverageData(
            label=f"HTF EMA({entry.htf_ema})",
            period=entry.htf_ema,
            method="EMA",
            applied_price=applied_price,
            timeframe=entry.htf_timeframe,
            filter_role="htf-trend",
            optimizable_fields=_translate_flags(entry, {"htfEma": "period"}),
            **_marker(entry, entry_id, "htf-ema"),
        ),
    )


def _ema_crossover_signals(entry: EmaCrossoverEntry, entry_id: str) -> List[SignalSpec]:
    tf = entry.timeframe
    specs: List[SignalSpec] = [
        (
            "ma-fast",
            MovingAverageData(
                label=f"Fast EMA({entry.fast_ema})",
                period=entry.fast_ema,
                method="EMA",
                applied_price=entry.applied_price,
                timeframe=tf,
                min_ema_separation=entry.min_ema_separation,
                optimizable_fields=_translate_flags(entry, {"fastEma": "period"}),
                **_marker(entry, entry_id, "fast"),
            ),
        ),
        (
            "ma-slow",
            MovingAverageData(
                label=f"Slow EMA({entry.slow_ema})",
                period=entry.slow_ema,
                method="EMA",
                applied_price=entry.applied_price,
                timeframe=tf,
                min_ema_separation=entry.min_ema_separation,
                optimizable_fields=_translate_flags(entry, {"slowEma": "period"}),
                **_marker(entry, entry_id, "slow"),
            ),
        ),
    ]
    if entry.htf_trend_filter:
        specs.append(_htf_trend_filter(entry, entry_id, entry.applied_price))
    if entry.rsi_confirmation:
        specs.append(
            (
                "rsi-confirm",
                RSIData(
                    label=f"RSI({entry.rsi_period}) confirmation",
                    period=entry.rsi_period,
                    timeframe=tf,
                    overbought_level=entry.rsi_long_max,
                    oversold_level=entry.rsi_short_min,
                    filter_role="rsi-confirm",
                    optimizable_fields=_translate_flags(
                        entry,
                        {
                            "rsiPeriod": "period",
                            "rsiLongMax": "overboughtLevel",
                            "rsiShortMin": "oversoldLevel",
                        },
                    ),
                    **_marker(entry, entry_id, "rsi-confirm"),
                ),
            )
        )
    return specs


def _trend_pullback_signals(entry: TrendPullbackEntry, entry_id: str) -> List[SignalSpec]:
    tf = entry.timeframe
    specs: List[SignalSpec] = [
        (
            "trend-ema",
            MovingAverageData(
                label=f"Trend EMA({entry.trend_ema})",
                period=entry.trend_ema,
                method="EMA",
                timeframe=tf,
                require_ema_buffer=entry.require_ema_buffer,
                pullback_max_distance=entry.pullback_max_distance,
                optimizable_fields=_translate_flags(entry, {"trendEma": "period"}),
                **_marker(entry, entry_id, "trend"),
            ),
        ),
        (
            "rsi",
            RSIData(
                label=f"Pullback RSI({entry.pullback_rsi_period})",
                period=entry.pullback_rsi_period,
                timeframe=tf,
                oversold_level=entry.rsi_pullback_level,
                overbought_level=100 - entry.rsi_pullback_level,
                optimizable_fields=_translate_flags(
                    entry,
                    {
                        "pullbackRsiPeriod": "period",
                        "rsiPullbackLevel": "oversoldLevel",
                    },
                ),
                **_marker(entry, entry_id, "pullback"),
            ),
        ),
    ]
    if entry.use_adx_filter:
        specs.append(
            (
                "adx",
                ADXData(
                    label=f"ADX({entry.adx_period}) filter",
                    period=entry.adx_period,
                    trend_level=entry.adx_threshold,
                    timeframe=tf,
                    filter_role="adx-trend-strength",
                    optimizable_fields=_translate_flags(
                        entry, {"adxPeriod": "period", "adxThreshold": "trendLevel"}
                    ),
                    **_marker(entry, entry_id, "adx"),
                ),
            )
        )
    return specs


def _rsi_reversal_signals(entry: RsiReversalEntry, entry_id: str) -> List[SignalSpec]:
    tf = entry.timeframe
    specs: List[SignalSpec] = [
        (
            "rsi",
            RSIData(
                label=f"RSI({entry.rsi_period})",
                period=entry.rsi_period,
                timeframe=tf,
                overbought_level=entry.overbought_level,
                oversold_level=entry.oversold_level,
                optimizable_fields=_translate_flags(
                    entry,
                    {
                        "rsiPeriod": "period",
                        "overboughtLevel": "overboughtLevel",
                        "oversoldLevel": "oversoldLevel",
                    },
                ),
                **_marker(entry, entry_id, "reversal"),
            ),
        )
    ]
    if entry.trend_filter:
        specs.append(
            (
                "trend-ema",
                MovingAverageData(
                    label=f"Trend EMA({entry.trend_ema})",
                    period=entry.trend_ema,
                    method="EMA",
                    timeframe=tf,
                    filter_role="htf-trend",
                    optimizable_fields=_translate_flags(entry, {"trendEma": "period"}),
                    **_marker(entry, entry_id, "trend"),
                ),
            )
        )
    return specs


def _macd_crossover_signals(entry: MacdCrossoverEntry, entry_id: str) -> List[SignalSpec]:
    return [
        (
            "macd",
            MACDData(
                label=f"MACD({entry.macd_fast},{entry.macd_slow},{entry.macd_signal})",
                fast_period=entry.macd_fast,
                slow_period=entry.macd_slow,
                signal_period=entry.macd_signal,
                timeframe=entry.timeframe,
                optimizable_fields=_translate_flags(
                    entry,
                    {
                        "macdFast": "fastPeriod",
                        "macdSlow": "slowPeriod",
                        "macdSignal": "signalPeriod",
                    },
                ),
                **_marker(entry, entry_id, "crossover"),
            ),
        )
    ]


def _range_breakout_signals(entry: RangeBreakoutEntry, entry_id: str) -> List[SignalSpec]:
    range_type, session = RANGE_METHOD_MAP[entry.range_method]
    specs: List[SignalSpec] = [
        (
            "range",
            RangeBreakoutData(
                label="Range Breakout",
                timeframe=entry.range_timeframe,
                range_type=range_type,
                range_session=session,
                lookback_candles=entry.range_period,
                session_start_hour=entry.custom_start_hour,
                session_start_minute=entry.custom_start_minute,
                session_end_hour=entry.custom_end_hour,
                session_end_minute=entry.custom_end_minute,
                breakout_direction="BOTH",
                entry_mode=entry.entry_mode,
                buffer_pips=entry.buffer_pips,
                min_range_pips=entry.min_range_pips,
                max_range_pips=entry.max_range_pips,
                cancel_opposite=entry.cancel_opposite,
                optimizable_fields=_translate_flags(
                    entry,
                    {
                        "rangePeriod": "lookbackCandles",
                        "bufferPips": "bufferPips",
                        "minRangePips": "minRangePips",
                        "maxRangePips": "maxRangePips",
                        "customStartHour": "sessionStartHour",
                        "customStartMinute": "sessionStartMinute",
                        "customEndHour": "sessionEndHour",
                        "customEndMinute": "sessionEndMinute",
                    },
                ),
            ),
        )
    ]
    if entry.htf_trend_filter:
        specs.append(_htf_trend_filter(entry, entry_id))
    return specs


_SIGNAL_BUILDERS = {
    EmaCrossoverEntry: _ema_crossover_signals,
    TrendPullbackEntry: _trend_pullback_signals,
    RsiReversalEntry: _rsi_reversal_signals,
    MacdCrossoverEntry: _macd_crossover_signals,
    RangeBreakoutEntry: _range_breakout_signals,
}


# ---------------------------------------------------------------------------
# Risk nodes shared by every entry type
# ---------------------------------------------------------------------------


def _risk_nodes(entry: EntryStrategyData) -> Dict[str, NodeData]:
    sizing = dict(
        method="RISK_PERCENT",
        risk_percent=entry.risk_percent,
        min_lot=0.01,
        max_lot=100,
        optimizable_fields=_translate_flags(entry, {"riskPercent": "riskPercent"}),
    )
    nodes: Dict[str, NodeData] = {}
    if entry.direction in ("BUY", "BOTH"):
        nodes["buy"] = PlaceBuyData(label="Place Buy", **sizing)
    if entry.direction in ("SELL", "BOTH"):
        nodes["sell"] = PlaceSellData(label="Place Sell", **sizing)

    nodes["sl"] = StopLossData(
        label="Stop Loss",
        method=SL_METHOD_MAP[entry.sl_method],
        fixed_pips=entry.sl_fixed_pips,
        sl_percent=entry.sl_percent,
        atr_multiplier=entry.sl_atr_multiplier,
        atr_period=entry.sl_atr_period,
        atr_timeframe=entry.timeframe,
        optimizable_fields=_translate_flags(
            entry,
            {
                "slFixedPips": "fixedPips",
                "slPercent": "slPercent",
                "slAtrMultiplier": "atrMultiplier",
                "slAtrPeriod": "atrPeriod",
            },
        ),
    )
    nodes["tp"] = TakeProfitData(
        label="Take Profit",
        method="RISK_REWARD",
        risk_reward_ratio=entry.tp_r_multiple,
        optimizable_fields=_translate_flags(entry, {"tpRMultiple": "riskRewardRatio"}),
    )
    return nodes


_NODE_TYPES = {
    "buy": "place-buy",
    "sell": "place-sell",
    "sl": "stop-loss",
    "tp": "take-profit",
}


# ---------------------------------------------------------------------------
# Pass
# ---------------------------------------------------------------------------


def _expand(node: Node) -> Tuple[List[Node], List[Node], List[Edge]]:
    """
    Expand one composite node; returns (signal nodes, all new nodes, internal edges).
    """
    entry = node.data
    builder = _SIGNAL_BUILDERS.get(type(entry))
    if builder is None:
        raise TypeError(f"Unsupported entry strategy type: {type(entry)!r}")

    signals = [
        Node(id=f"{node.id}__{role}", type=data.KIND, data=data, position=node.position)
        for role, data in builder(entry, node.id)
    ]
    risk = {
        role: Node(id=f"{node.id}__{role}", type=_NODE_TYPES[role], data=data, position=node.position)
        for role, data in _risk_nodes(entry).items()
    }

    counter = 0
    edges: List[Edge] = []

    def link(src: str, dst: str) -> None:
        nonlocal counter
        edges.append(Edge(id=f"{node.id}__e{counter}", source=src, target=dst))
        counter += 1

    positions = [risk[r] for r in ("buy", "sell") if r in risk]
    for sig in signals:
        for pos in positions:
            link(sig.id, pos.id)
    for pos in positions:
        link(pos.id, risk["sl"].id)
        link(pos.id, risk["tp"].id)

    return signals, signals + list(risk.values()), edges


def decompose_entry_strategies(
    nodes: List[Node], edges: List[Edge]
) -> Tuple[List[Node], List[Edge]]:
    """
    Replace every composite entry-strategy node by its primitive subgraph.

    Edges that touched the composite are fanned out: inbound edges now
    reach every synthesized signal node, outbound edges leave from every
    one of them. Graphs without composites come back unchanged.
    """
    composites = [n for n in nodes if isinstance(n.data, EntryStrategyData)]
    if not composites:
        return list(nodes), list(edges)

    out_nodes: List[Node] = []
    internal: List[Edge] = []
    signal_ids: Dict[str, List[str]] = {}

    for node in nodes:
        if not isinstance(node.data, EntryStrategyData):
            out_nodes.append(node)
            continue
        signals, created, wiring = _expand(node)
        signal_ids[node.id] = [s.id for s in signals]
        out_nodes.extend(created)
        internal.extend(wiring)
        log.debug(
            "Expanded %s '%s' into %d nodes (%s)",
            node.data.KIND,
            node.id,
            len(created),
            ", ".join(n.id for n in created),
        )

    out_edges: List[Edge] = []
    for edge in edges:
        sources = signal_ids.get(edge.source, [edge.source])
        targets = signal_ids.get(edge.target, [edge.target])
        if len(sources) == 1 and len(targets) == 1 and sources[0] == edge.source and targets[0] == edge.target:
            out_edges.append(edge)
            continue
        n = 0
        for src in sources:
            for dst in targets:
                out_edges.append(Edge(id=f"{edge.id}__{n}", source=src, target=dst))
                n += 1

    out_edges.extend(internal)
    log.info("Decomposed %d entry strategy node(s)", len(composites))
    return out_nodes, out_edges
