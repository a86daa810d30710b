# src/quantdsl_mql5/engine/exits.py

from __future__ import annotations

from typing import List, Tuple

from ..dsl.graph import Edge, Node
from ..dsl.nodes import (
    ADXData,
    BollingerBandsData,
    CandlestickPatternData,
    CCIData,
    CloseConditionData,
    MACDData,
    MovingAverageData,
    RangeBreakoutData,
    RSIData,
    StochasticData,
    SupportResistanceData,
    TimeExitData,
)
from ..utils.logging import get_logger
from ..utils.mql import get_timeframe, hhmm
from .context import CompileContext, GeneratedCode, node_input
from .templates import DELETE_PENDING_ORDERS, close_positions_helper
from .trading import neighbour_ids

log = get_logger(__name__)


# ---------------------------------------------------------------------------
# Close conditions: the reverse of each connected node's entry signal
# ---------------------------------------------------------------------------


def _into_zone(buffer: str, s: int, overbought: str, oversold: str) -> Tuple[str, str]:
    """Close longs on a cross into overbought, shorts on a cross into oversold."""
    prev, cur = 1 + s, 0 + s
    close_buy = f"(DoubleLT({buffer}[{prev}], {overbought}) && DoubleGE({buffer}[{cur}], {overbought}))"
    close_sell = f"(DoubleGT({buffer}[{prev}], {oversold}) && DoubleLE({buffer}[{cur}], {oversold}))"
    return close_buy, close_sell


def _indicator_exit(node: Node, i: int) -> Tuple[List[str], List[str]]:
    data = node.data
    p = f"ind{i}"
    s = data.bar_shift
    b = 1 + s

    if isinstance(data, MovingAverageData):
        close = f"iClose(_Symbol, PERIOD_CURRENT, {b})"
        return [f"(DoubleLT({close}, {p}Buffer[{b}]))"], [f"(DoubleGT({close}, {p}Buffer[{b}]))"]
    if isinstance(data, RSIData):
        cb, cs = _into_zone(f"{p}Buffer", s, f"InpRSI{i}Overbought", f"InpRSI{i}Oversold")
        return [cb], [cs]
    if isinstance(data, StochasticData):
        cb, cs = _into_zone(f"{p}MainBuffer", s, f"InpStoch{i}Overbought", f"InpStoch{i}Oversold")
        return [cb], [cs]
    if isinstance(data, CCIData):
        cb, cs = _into_zone(f"{p}Buffer", s, f"InpCCI{i}Overbought", f"InpCCI{i}Oversold")
        return [cb], [cs]
    if isinstance(data, MACDData):
        prev, cur = 1 + s, 0 + s
        bearish = (
            f"(DoubleGE({p}MainBuffer[{prev}], {p}SignalBuffer[{prev}]) && "
            f"DoubleLT({p}MainBuffer[{cur}], {p}SignalBuffer[{cur}]))"
        )
        bullish = (
            f"(DoubleLE({p}MainBuffer[{prev}], {p}SignalBuffer[{prev}]) && "
            f"DoubleGT({p}MainBuffer[{cur}], {p}SignalBuffer[{cur}]))"
        )
        return [bearish], [bullish]
    if isinstance(data, BollingerBandsData):
        return (
            [f"(DoubleGE(iHigh(_Symbol, PERIOD_CURRENT, {b}), {p}UpperBuffer[{b}]))"],
            [f"(DoubleLE(iLow(_Symbol, PERIOD_CURRENT, {b}), {p}LowerBuffer[{b}]))"],
        )
    if isinstance(data, ADXData):
        # trend fading closes both sides
        weak = f"(DoubleLT({p}MainBuffer[{s}], InpADX{i}TrendLevel))"
        return [weak], [weak]
    # ATR carries no direction to reverse
    return [], []


def _price_action_exit(node: Node, i: int) -> Tuple[List[str], List[str]]:
    data = node.data
    p = f"pa{i}"
    if isinstance(data, CandlestickPatternData):
        return [f"({p}SellSignal)"], [f"({p}BuySignal)"]
    if isinstance(data, SupportResistanceData):
        return [f"({p}NearResistance)"], [f"({p}NearSupport)"]
    if isinstance(data, RangeBreakoutData):
        close_buy = [f"({p}BreakoutDown)"] if data.breakout_direction in ("SELL_ON_LOW", "BOTH") else []
        close_sell = [f"({p}BreakoutUp)"] if data.breakout_direction in ("BUY_ON_HIGH", "BOTH") else []
        return close_buy, close_sell
    raise TypeError(f"Unsupported price action type: {type(data)!r}")


def generate_close_condition_code(
    node: Node,
    index: int,
    indicators: List[Node],
    price_action: List[Node],
    edges: List[Edge],
    code: GeneratedCode,
) -> None:
    """
    Close open positions when a node connected to the close-condition
    (edge in either direction) gives the opposite signal. Skipped entirely
    while no position is open.
    """
    data = node.data
    if not isinstance(data, CloseConditionData):
        raise TypeError(f"Unsupported close condition type: {type(data)!r}")

    ind_index = {n.id: i for i, n in enumerate(indicators)}
    pa_index = {n.id: i for i, n in enumerate(price_action)}
    close_buys: List[str] = []
    close_sells: List[str] = []

    for other in neighbour_ids(node.id, edges):
        if other in ind_index:
            i = ind_index[other]
            cb, cs = _indicator_exit(indicators[i], i)
        elif other in pa_index:
            i = pa_index[other]
            cb, cs = _price_action_exit(price_action[i], i)
        else:
            continue
        close_buys.extend(cb)
        close_sells.extend(cs)

    tick = code.on_tick
    tick.append("")
    if not close_buys and not close_sells:
        tick.append("//--- Exit Signal: no indicator or price action connected")
        log.debug("Close condition '%s' has no usable source", node.id)
        return

    suffix = "" if index == 0 else str(index + 1)
    tick.append("//--- Exit Signal Conditions")
    tick.append("if(positionsCount > 0)")
    tick.append("{")
    if data.close_direction in ("BUY", "BOTH"):
        expr = " || ".join(close_buys) if close_buys else "false"
        tick.append(f"   bool closeBuyCondition{suffix} = {expr};")
        tick.append(f"   if(closeBuyCondition{suffix}) CloseBuyPositions();")
        code.add_helper("CloseBuyPositions", close_positions_helper("Buy"))
    if data.close_direction in ("SELL", "BOTH"):
        expr = " || ".join(close_sells) if close_sells else "false"
        tick.append(f"   bool closeSellCondition{suffix} = {expr};")
        tick.append(f"   if(closeSellCondition{suffix}) CloseSellPositions();")
        code.add_helper("CloseSellPositions", close_positions_helper("Sell"))
    tick.append("}")


# ---------------------------------------------------------------------------
# Time exit
# ---------------------------------------------------------------------------


def _bars_exit(node: Node, data: TimeExitData, suffix: str, code: GeneratedCode) -> None:
    tf = get_timeframe(data.exit_timeframe)
    name = f"InpTimeExitBars{suffix}"
    code.add_input(node_input(node, "exitAfterBars", name, "int", data.exit_after_bars, "Exit After N Bars", "Time Exit"))

    tick = code.on_tick
    tick.append("//--- Time-Based Exit (bars since entry)")
    tick.append("for(int i = PositionsTotal() - 1; i >= 0; i--)")
    tick.append("{")
    tick.append("   ulong ticket = PositionGetTicket(i);")
    tick.append("   if(ticket == 0) continue;")
    tick.append("   if(PositionGetInteger(POSITION_MAGIC) != InpMagicNumber) continue;")
    tick.append("   if(PositionGetString(POSITION_SYMBOL) != _Symbol) continue;")
    tick.append("   datetime openTime = (datetime)PositionGetInteger(POSITION_TIME);")
    tick.append(f"   int barsSinceEntry = iBarShift(_Symbol, {tf}, openTime);")
    tick.append("   if(barsSinceEntry < 0) continue; // iBarShift failed")
    tick.append(f"   if(barsSinceEntry >= {name})")
    tick.append("   {")
    tick.append("      if(!trade.PositionClose(ticket))")
    tick.append('         Print("Time exit: failed to close #", ticket, ", retcode ", trade.ResultRetcode());')
    tick.append("   }")
    tick.append("}")


def _close_time_flag(node: Node, suffix: str, ctx: CompileContext, code: GeneratedCode) -> str:
    """Emit `pastCloseTime{suffix}` once; returns the flag name."""
    flag = f"pastCloseTime{suffix}"
    hour, minute = f"InpCloseHour{suffix}", f"InpCloseMinute{suffix}"
    if code.has_input(hour):
        return flag
    data: TimeExitData = node.data
    group = "Time Exit"
    code.add_input(node_input(node, "closeHour", hour, "int", data.close_hour, "Close Hour", group))
    code.add_input(node_input(node, "closeMinute", minute, "int", data.close_minute, "Close Minute", group))

    clock = "TimeCurrent()" if ctx.uses_server_time else "TimeGMT()"
    label = "Server Time" if ctx.uses_server_time else "GMT"
    tick = code.on_tick
    tick.append(f"//--- Close time reached ({hhmm(data.close_hour, data.close_minute)} {label})")
    tick.append(f"bool {flag} = false;")
    tick.append("{")
    tick.append("   MqlDateTime exitDt;")
    tick.append(f"   TimeToStruct({clock}, exitDt);")
    tick.append(f"   {flag} = (exitDt.hour * 60 + exitDt.min >= {hour} * 60 + {minute});")
    tick.append("}")
    return flag


def generate_close_time_gate(time_exit_nodes: List[Node], ctx: CompileContext, code: GeneratedCode) -> None:
    """
    Emit the close-at-time flags ahead of the entry logic so that no new
    position is opened between the close time and the end of the day.
    """
    flags = []
    for index, node in enumerate(time_exit_nodes):
        if not isinstance(node.data, TimeExitData) or node.data.exit_mode != "CLOSE_AT_TIME":
            continue
        suffix = "" if index == 0 else str(index + 1)
        flags.append(_close_time_flag(node, suffix, ctx, code))
    if flags:
        code.entry_gates.extend(f"!{flag}" for flag in flags)
        code.on_tick.append("")


def _clock_exit(node: Node, data: TimeExitData, suffix: str, ctx: CompileContext, code: GeneratedCode) -> None:
    flag = _close_time_flag(node, suffix, ctx, code)
    code.add_helper("CloseBuyPositions", close_positions_helper("Buy"))
    code.add_helper("CloseSellPositions", close_positions_helper("Sell"))
    code.add_helper("DeletePendingOrders", DELETE_PENDING_ORDERS)

    label = "Server Time" if ctx.uses_server_time else "GMT"
    tick = code.on_tick
    tick.append(f"//--- Close At Time ({hhmm(data.close_hour, data.close_minute)} {label})")
    tick.append(f"if({flag})")
    tick.append("{")
    tick.append("   if(positionsCount > 0)")
    tick.append("   {")
    tick.append("      CloseBuyPositions();")
    tick.append("      CloseSellPositions();")
    tick.append("   }")
    tick.append("   DeletePendingOrders();")
    tick.append("}")


def generate_time_exit_code(node: Node, index: int, ctx: CompileContext, code: GeneratedCode) -> None:
    data = node.data
    if not isinstance(data, TimeExitData):
        raise TypeError(f"Unsupported time exit type: {type(data)!r}")
    suffix = "" if index == 0 else str(index + 1)
    code.on_tick.append("")
    if data.exit_mode == "BARS":
        _bars_exit(node, data, suffix, code)
    elif data.exit_mode == "CLOSE_AT_TIME":
        _clock_exit(node, data, suffix, ctx, code)
    else:
        raise TypeError(f"Unsupported time exit mode: {data.exit_mode!r}")
