# src/quantdsl_mql5/engine/trading.py

from __future__ import annotations

from typing import Iterable, List, Optional, Set

from ..dsl.graph import Edge, Node
from ..dsl.nodes import (
    ADXData,
    ATRData,
    BollingerBandsData,
    MovingAverageData,
    PlaceBuyData,
    PlaceSellData,
    RangeBreakoutData,
    StopLossData,
    TakeProfitData,
)
from ..utils.errors import GraphDocumentError
from ..utils.logging import get_logger
from ..utils.mql import get_timeframe_enum
from .context import CompileContext, GeneratedCode, InputParam, node_input
from .templates import CALCULATE_LOT_SIZE, NORMALIZE_LOT


log = get_logger(__name__)


# ---------------------------------------------------------------------------
# Position sizing
# ---------------------------------------------------------------------------


def _sizing(node: Node, code: GeneratedCode, side: str) -> None:
    """
    side is "Buy" or "Sell". Emits `{side.lower()}LotSize`, clamped to the
    node's min/max lot and normalized to the broker's lot step.
    """
    data = node.data
    if not isinstance(data, (PlaceBuyData, PlaceSellData)):
        raise TypeError(f"Unsupported position node type: {type(data)!r}")

    group = f"{side} Order"
    var = f"{side.lower()}LotSize"

    if data.is_pending:
        code.add_input(
            node_input(node, "pendingOffset", f"Inp{side}PendingOffset", "double", data.pending_offset, f"{side} Pending Offset (pips)", group)
        )

    if data.method == "FIXED_LOT":
        code.add_input(node_input(node, "fixedLot", f"Inp{side}LotSize", "double", data.fixed_lot, f"{side} Lot Size", group))
        code.on_tick.append(f"double {var} = Inp{side}LotSize;")
    else:
        code.add_input(node_input(node, "riskPercent", f"Inp{side}RiskPercent", "double", data.risk_percent, f"{side} Risk %", group))
        sl_var = "slSellPips" if side == "Sell" and code.has_directional_sl else "slPips"
        code.on_tick.append(f"double {var} = CalculateLotSize(Inp{side}RiskPercent, {sl_var});")
        if data.is_pending and code.sl_method == "PERCENT":
            # a percent stop is measured from the pending entry price, not the current one
            price = "SYMBOL_ASK" if side == "Buy" else "SYMBOL_BID"
            above = (side == "Buy") == (data.order_type == "STOP")
            code.on_tick.append("{")
            code.on_tick.append(
                f"   double pendEntry = SymbolInfoDouble(_Symbol, {price}) {'+' if above else '-'} "
                f"Inp{side}PendingOffset * _pipFactor * _Point;"
            )
            code.on_tick.append("   double adjSlPips = (pendEntry * InpSLPercent / 100.0) / _Point;")
            code.on_tick.append(f"   {var} = CalculateLotSize(Inp{side}RiskPercent, adjSlPips);")
            code.on_tick.append("}")
        code.add_helper("CalculateLotSize", CALCULATE_LOT_SIZE)

    code.add_input(node_input(node, "minLot", f"Inp{side}MinLot", "double", data.min_lot, f"{side} Minimum Lot", group))
    code.add_input(node_input(node, "maxLot", f"Inp{side}MaxLot", "double", data.max_lot, f"{side} Maximum Lot", group))
    code.on_tick.append(f"{var} = NormalizeLot(MathMax(Inp{side}MinLot, MathMin(Inp{side}MaxLot, {var})));")
    code.add_helper("NormalizeLot", NORMALIZE_LOT)


def generate_place_buy_code(node: Node, code: GeneratedCode) -> None:
    _sizing(node, code, "Buy")


def generate_place_sell_code(node: Node, code: GeneratedCode) -> None:
    _sizing(node, code, "Sell")


# ---------------------------------------------------------------------------
# Stop loss
# ---------------------------------------------------------------------------


def neighbour_ids(node_id: str, edges: Iterable[Edge]) -> List[str]:
    """Ids connected to node_id through any edge, in edge order, either direction."""
    out: List[str] = []
    for edge in edges:
        if edge.source == node_id:
            other = edge.target
        elif edge.target == node_id:
            other = edge.source
        else:
            continue
        if other not in out:
            out.append(other)
    return out


def resolve_sl_indicator(
    sl_node: Node,
    indicator_nodes: List[Node],
    edges: Iterable[Edge],
    known_ids: Set[str],
) -> Optional[Node]:
    """
    The indicator an INDICATOR stop-loss refers to: the explicit
    `indicatorNodeId` first, then any live indicator linked to the stop-loss
    by an edge pointing either way.
    """
    data: StopLossData = sl_node.data
    by_id = {n.id: n for n in indicator_nodes}

    if data.indicator_node_id:
        if data.indicator_node_id not in known_ids:
            raise GraphDocumentError(
                f"indicatorNodeId '{data.indicator_node_id}' does not name any node", node_id=sl_node.id
            )
        if data.indicator_node_id in by_id:
            return by_id[data.indicator_node_id]

    for other in neighbour_ids(sl_node.id, edges):
        if other in by_id:
            return by_id[other]
    return None


def _sl_inputs_fixed(node: Node, code: GeneratedCode, value: float, comment: str) -> None:
    code.add_input(node_input(node, "fixedPips", "InpStopLoss", "double", value, comment, "Stop Loss"))


def _indicator_sl(
    node: Node,
    indicator_nodes: List[Node],
    edges: List[Edge],
    known_ids: Set[str],
    ctx: CompileContext,
    code: GeneratedCode,
) -> None:
    indicator = resolve_sl_indicator(node, indicator_nodes, edges, known_ids)
    if indicator is None:
        if ctx.options.strict_stop_loss:
            raise GraphDocumentError("indicator-based stop loss has no connected indicator", node_id=node.id)
        log.warning("Stop loss '%s' is indicator-based but no indicator is connected; trading without a stop", node.id)
        code.on_tick.append(
            "double slPips = 0; // WARNING: indicator-based stop loss has no connected indicator, no stop loss is set"
        )
        return

    p = f"ind{indicator_nodes.index(indicator)}"
    data = indicator.data
    tick = code.on_tick
    group = "Stop Loss"

    if isinstance(data, BollingerBandsData):
        code.add_input(InputParam("InpBBSLBuffer", "double", 5, "Additional buffer pips for BB SL", False, group))
        tick.append("// Indicator-based SL using Bollinger Bands (direction-aware)")
        tick.append("double slPrice = SymbolInfoDouble(_Symbol, SYMBOL_BID);")
        tick.append(f"double distToLower = MathAbs(slPrice - {p}LowerBuffer[0]) / _Point;")
        tick.append(f"double distToUpper = MathAbs({p}UpperBuffer[0] - slPrice) / _Point;")
        tick.append("double slPips = MathMax(distToLower + (InpBBSLBuffer * _pipFactor), 10 * _pipFactor); // Buy direction")
        tick.append("double slSellPips = MathMax(distToUpper + (InpBBSLBuffer * _pipFactor), 10 * _pipFactor); // Sell direction")
        code.has_directional_sl = True
    elif isinstance(data, MovingAverageData):
        code.add_input(InputParam("InpMASLMultiplier", "double", 1.5, "MA SL distance multiplier", False, group))
        tick.append("// Indicator-based SL using Moving Average")
        tick.append(f"double distToMA = MathAbs(SymbolInfoDouble(_Symbol, SYMBOL_BID) - {p}Buffer[0]) / _Point;")
        tick.append("double slPips = MathMax(distToMA * InpMASLMultiplier, 10 * _pipFactor); // Minimum 10 pips SL")
    elif isinstance(data, ATRData):
        code.add_input(InputParam("InpATRSLMultiplier", "double", 1.5, "ATR SL multiplier", False, group))
        tick.append("// Indicator-based SL using ATR")
        tick.append(f"double slPips = ({p}Buffer[0] / _Point) * InpATRSLMultiplier;")
    elif isinstance(data, ADXData):
        code.add_input(InputParam("InpADXSLBase", "double", 50, "Base SL pips when ADX is at trend level", False, group))
        tick.append("// Indicator-based SL using ADX: stronger trend, tighter stop")
        tick.append(f"double slMultiplier = 2.0 - ({p}MainBuffer[0] / 100.0); // 1.0 .. 2.0")
        tick.append("double slPips = InpADXSLBase * slMultiplier * _pipFactor;")
    else:
        _sl_inputs_fixed(node, code, node.data.fixed_pips, "Stop Loss (pips)")
        tick.append(f"double slPips = InpStopLoss * _pipFactor; // {indicator.kind} not suitable for SL calculation")
    log.debug("Stop loss '%s' uses indicator '%s' (%s)", node.id, indicator.id, indicator.kind)


def _range_opposite_sl(node: Node, price_action_nodes: List[Node], code: GeneratedCode) -> None:
    index = next((i for i, n in enumerate(price_action_nodes) if isinstance(n.data, RangeBreakoutData)), -1)
    if index < 0:
        raise GraphDocumentError("RANGE_OPPOSITE stop loss requires a range breakout node", node_id=node.id)
    p = f"pa{index}"
    code.on_tick.append("//--- Range Opposite SL: use range high/low as stop loss")
    code.on_tick.append(f"double slPips = MathMax((SymbolInfoDouble(_Symbol, SYMBOL_ASK) - {p}Low) / _Point, 10 * _pipFactor);")
    code.on_tick.append(f"double slSellPips = MathMax(({p}High - SymbolInfoDouble(_Symbol, SYMBOL_BID)) / _Point, 10 * _pipFactor);")
    code.has_directional_sl = True


def generate_stop_loss_code(
    node: Node,
    indicator_nodes: List[Node],
    price_action_nodes: List[Node],
    edges: List[Edge],
    known_ids: Set[str],
    ctx: CompileContext,
    code: GeneratedCode,
) -> None:
    """
    Emit `slPips` (distance in points) and, for direction-aware methods,
    `slSellPips`. Must run before position sizing.
    """
    data = node.data
    if not isinstance(data, StopLossData):
        raise TypeError(f"Unsupported stop loss type: {type(data)!r}")
    code.sl_method = data.method
    group = "Stop Loss"

    if data.method == "FIXED_PIPS":
        _sl_inputs_fixed(node, code, data.fixed_pips, "Stop Loss (pips)")
        code.on_tick.append("double slPips = InpStopLoss * _pipFactor; // Convert to points")

    elif data.method == "PERCENT":
        code.add_input(node_input(node, "slPercent", "InpSLPercent", "double", data.sl_percent, "Stop Loss (%)", group))
        code.on_tick.append("double slPips = (SymbolInfoDouble(_Symbol, SYMBOL_ASK) * InpSLPercent / 100.0) / _Point;")
        code.on_tick.append("double slSellPips = (SymbolInfoDouble(_Symbol, SYMBOL_BID) * InpSLPercent / 100.0) / _Point;")
        code.has_directional_sl = True

    elif data.method == "ATR_BASED":
        code.add_input(
            node_input(node, "atrTimeframe", "InpATRSLTimeframe", "ENUM_AS_TIMEFRAMES", get_timeframe_enum(data.atr_timeframe), "ATR Timeframe for SL", group)
        )
        code.add_input(node_input(node, "atrPeriod", "InpATRPeriod", "int", data.atr_period, "ATR Period for SL", group))
        code.add_input(node_input(node, "atrMultiplier", "InpATRMultiplier", "double", data.atr_multiplier, "ATR Multiplier for SL", group))
        code.global_variables.append("int atrHandle = INVALID_HANDLE;")
        code.global_variables.append("double atrBuffer[];")
        code.on_init.append("atrHandle = iATR(_Symbol, (ENUM_TIMEFRAMES)InpATRSLTimeframe, InpATRPeriod);")
        code.on_init.append('if(atrHandle == INVALID_HANDLE) { Print("Failed to create ATR handle for SL"); return(INIT_FAILED); }')
        code.on_init.append("ArraySetAsSeries(atrBuffer, true);")
        code.on_deinit.append("if(atrHandle != INVALID_HANDLE) IndicatorRelease(atrHandle);")
        code.on_tick.append("bool atrOk = (CopyBuffer(atrHandle, 0, 0, 1, atrBuffer) >= 1);")
        code.on_tick.append("double slPips = atrOk ? (atrBuffer[0] / _Point) * InpATRMultiplier : 0;")
        code.entry_gates.append("atrOk")
        code.note_period(data.atr_period)

    elif data.method == "RANGE_OPPOSITE":
        _range_opposite_sl(node, price_action_nodes, code)

    elif data.method == "INDICATOR":
        _indicator_sl(node, indicator_nodes, edges, known_ids, ctx, code)

    else:
        raise TypeError(f"Unsupported stop loss method: {data.method!r}")


# ---------------------------------------------------------------------------
# Take profit
# ---------------------------------------------------------------------------


def generate_take_profit_code(node: Node, code: GeneratedCode) -> None:
    data = node.data
    if not isinstance(data, TakeProfitData):
        raise TypeError(f"Unsupported take profit type: {type(data)!r}")
    code.tp_method = data.method
    group = "Take Profit"

    if data.method == "FIXED_PIPS":
        code.add_input(node_input(node, "fixedPips", "InpTakeProfit", "double", data.fixed_pips, "Take Profit (pips)", group))
        code.on_tick.append("double tpPips = InpTakeProfit * _pipFactor; // Convert to points")

    elif data.method == "RISK_REWARD":
        code.add_input(node_input(node, "riskRewardRatio", "InpRiskReward", "double", data.risk_reward_ratio, "Risk:Reward Ratio", group))
        code.on_tick.append("double tpPips = slPips * InpRiskReward;")

    elif data.method == "ATR_BASED":
        code.add_input(node_input(node, "atrMultiplier", "InpTPATRMultiplier", "double", data.atr_multiplier, "ATR Multiplier for TP", group))
        if code.has_global("int atrHandle"):
            # share the stop-loss ATR handle and buffer
            code.on_tick.append("double tpPips = atrOk ? (atrBuffer[0] / _Point) * InpTPATRMultiplier : 0;")
        else:
            code.add_input(node_input(node, "atrPeriod", "InpTPATRPeriod", "int", data.atr_period, "ATR Period for TP", group))
            code.global_variables.append("int tpAtrHandle = INVALID_HANDLE;")
            code.global_variables.append("double tpAtrBuffer[];")
            code.on_init.append("tpAtrHandle = iATR(_Symbol, PERIOD_CURRENT, InpTPATRPeriod);")
            code.on_init.append('if(tpAtrHandle == INVALID_HANDLE) { Print("Failed to create ATR handle for TP"); return(INIT_FAILED); }')
            code.on_init.append("ArraySetAsSeries(tpAtrBuffer, true);")
            code.on_deinit.append("if(tpAtrHandle != INVALID_HANDLE) IndicatorRelease(tpAtrHandle);")
            code.on_tick.append("bool tpAtrOk = (CopyBuffer(tpAtrHandle, 0, 0, 1, tpAtrBuffer) >= 1);")
            code.on_tick.append("double tpPips = tpAtrOk ? (tpAtrBuffer[0] / _Point) * InpTPATRMultiplier : 0;")
            code.entry_gates.append("tpAtrOk")
            code.note_period(data.atr_period)

    else:
        raise TypeError(f"Unsupported take profit method: {data.method!r}")
