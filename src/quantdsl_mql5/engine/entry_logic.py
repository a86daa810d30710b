# src/quantdsl_mql5/engine/entry_logic.py

from __future__ import annotations

from collections import OrderedDict
from typing import Dict, List, Optional, Tuple

from ..dsl.graph import Node
from ..dsl.nodes import (
    ADXData,
    ATRData,
    BollingerBandsData,
    CandlestickPatternData,
    CCIData,
    MACDData,
    MovingAverageData,
    RangeBreakoutData,
    RSIData,
    StochasticData,
    SupportResistanceData,
)
from ..utils.logging import get_logger
from .context import CompileContext, GeneratedCode, InputParam, node_input
from .templates import (
    COUNT_POSITIONS_BY_TYPE,
    DELETE_PENDING_ORDERS,
    PENDING_EXPIRY,
    open_order_helper,
    pending_order_helper,
)

log = get_logger(__name__)


Conditions = Tuple[List[str], List[str]]  # (buy expressions, sell expressions)


def _close(bar: int) -> str:
    return f"iClose(_Symbol, PERIOD_CURRENT, {bar})"


def _unique_input(code: GeneratedCode, base: str) -> str:
    if not code.has_input(base):
        return base
    n = 2
    while code.has_input(f"{base}{n}"):
        n += 1
    return f"{base}{n}"


# ---------------------------------------------------------------------------
# Per-kind signal expressions
# ---------------------------------------------------------------------------


def _moving_average_signal(node: Node, p: str, code: GeneratedCode) -> Conditions:
    data: MovingAverageData = node.data
    b = 1 + data.bar_shift
    if data.require_ema_buffer:
        name = _unique_input(code, "InpPullbackMaxDist")
        code.add_input(
            node_input(
                node, "pullbackMaxDistance", name, "double", data.pullback_max_distance,
                "Max Distance from EMA (%)", "Trend Pullback",
            )
        )
        # price on the trend side of the EMA but still close to it
        buy = (
            f"(DoubleGT({_close(b)}, {p}Buffer[{b}]) && "
            f"({_close(b)} - {p}Buffer[{b}]) / {p}Buffer[{b}] < {name} / 100.0)"
        )
        sell = (
            f"(DoubleLT({_close(b)}, {p}Buffer[{b}]) && "
            f"({p}Buffer[{b}] - {_close(b)}) / {p}Buffer[{b}] < {name} / 100.0)"
        )
        return [buy], [sell]
    return [f"(DoubleGT({_close(b)}, {p}Buffer[{b}]))"], [f"(DoubleLT({_close(b)}, {p}Buffer[{b}]))"]


def _level_cross(buffer: str, s: int, oversold: str, overbought: str) -> Conditions:
    """Buy when leaving the oversold zone upward, sell when leaving overbought downward."""
    prev, cur = 1 + s, 0 + s
    buy = f"(DoubleLE({buffer}[{prev}], {oversold}) && DoubleGT({buffer}[{cur}], {oversold}))"
    sell = f"(DoubleGE({buffer}[{prev}], {overbought}) && DoubleLT({buffer}[{cur}], {overbought}))"
    return [buy], [sell]


def _indicator_signal(node: Node, i: int, code: GeneratedCode) -> Conditions:
    data = node.data
    p = f"ind{i}"
    s = data.bar_shift

    if isinstance(data, MovingAverageData):
        return _moving_average_signal(node, p, code)
    if isinstance(data, RSIData):
        return _level_cross(f"{p}Buffer", s, f"InpRSI{i}Oversold", f"InpRSI{i}Overbought")
    if isinstance(data, MACDData):
        prev, cur = 1 + s, 0 + s
        buy = (
            f"(DoubleLE({p}MainBuffer[{prev}], {p}SignalBuffer[{prev}]) && "
            f"DoubleGT({p}MainBuffer[{cur}], {p}SignalBuffer[{cur}]))"
        )
        sell = (
            f"(DoubleGE({p}MainBuffer[{prev}], {p}SignalBuffer[{prev}]) && "
            f"DoubleLT({p}MainBuffer[{cur}], {p}SignalBuffer[{cur}]))"
        )
        return [buy], [sell]
    if isinstance(data, BollingerBandsData):
        b = 1 + s
        return (
            [f"(DoubleLE(iLow(_Symbol, PERIOD_CURRENT, {b}), {p}LowerBuffer[{b}]))"],
            [f"(DoubleGE(iHigh(_Symbol, PERIOD_CURRENT, {b}), {p}UpperBuffer[{b}]))"],
        )
    if isinstance(data, ATRData):
        # non-directional: rising volatility confirms both sides
        rising = f"(DoubleGT({p}Buffer[{0 + s}], {p}Buffer[{1 + s}]))"
        return [rising], [rising]
    if isinstance(data, ADXData):
        above = f"DoubleGT({p}MainBuffer[{s}], InpADX{i}TrendLevel)"
        return (
            [f"({above} && DoubleGT({p}PlusDIBuffer[{s}], {p}MinusDIBuffer[{s}]))"],
            [f"({above} && DoubleGT({p}MinusDIBuffer[{s}], {p}PlusDIBuffer[{s}]))"],
        )
    if isinstance(data, StochasticData):
        return _level_cross(f"{p}MainBuffer", s, f"InpStoch{i}Oversold", f"InpStoch{i}Overbought")
    if isinstance(data, CCIData):
        return _level_cross(f"{p}Buffer", s, f"InpCCI{i}Oversold", f"InpCCI{i}Overbought")
    raise TypeError(f"Unsupported indicator type: {type(data)!r}")


def _price_action_signal(node: Node, i: int) -> Conditions:
    data = node.data
    p = f"pa{i}"
    if isinstance(data, RangeBreakoutData):
        return [f"({p}BreakoutUp)"], [f"({p}BreakoutDown)"]
    if isinstance(data, CandlestickPatternData):
        return [f"({p}BuySignal)"], [f"({p}SellSignal)"]
    if isinstance(data, SupportResistanceData):
        return [f"({p}NearSupport)"], [f"({p}NearResistance)"]
    raise TypeError(f"Unsupported price action type: {type(data)!r}")


# ---------------------------------------------------------------------------
# Composite-entry groups and filters
# ---------------------------------------------------------------------------


def _filter_signal(node: Node, i: int) -> Conditions:
    data = node.data
    p = f"ind{i}"
    s = data.bar_shift
    if data.filter_role == "htf-trend":
        # close of the current chart vs. the (possibly higher timeframe) trend EMA
        return (
            [f"(DoubleGT({_close(s)}, {p}Buffer[0]))"],
            [f"(DoubleLT({_close(s)}, {p}Buffer[0]))"],
        )
    if data.filter_role == "rsi-confirm":
        return (
            [f"DoubleLT({p}Buffer[{s}], InpRSI{i}Overbought)"],
            [f"DoubleGT({p}Buffer[{s}], InpRSI{i}Oversold)"],
        )
    if data.filter_role == "adx-trend-strength":
        strong = f"DoubleGT({p}MainBuffer[{s}], InpADX{i}TrendLevel)"
        return [strong], [strong]
    raise TypeError(f"Unsupported filter role: {data.filter_role!r}")


def _ema_crossover_groups(indicators: List[Node]) -> Dict[str, Dict[str, int]]:
    """entry_strategy_id -> {"fast": index, "slow": index} for complete crossover pairs."""
    groups: Dict[str, Dict[str, int]] = OrderedDict()
    for i, node in enumerate(indicators):
        data = node.data
        if data.entry_strategy_type == "ema-crossover" and data.role in ("fast", "slow") and data.entry_strategy_id:
            groups.setdefault(data.entry_strategy_id, {})[data.role] = i
    return OrderedDict((k, v) for k, v in groups.items() if "fast" in v and "slow" in v)


def _crossover_signal(fast: Node, fi: int, si: int, code: GeneratedCode) -> Conditions:
    fb, sb = f"ind{fi}Buffer", f"ind{si}Buffer"
    buy = f"(DoubleLE({fb}[2], {sb}[2]) && DoubleGT({fb}[1], {sb}[1]))"
    sell = f"(DoubleGE({fb}[2], {sb}[2]) && DoubleLT({fb}[1], {sb}[1]))"
    if fast.data.min_ema_separation > 0:
        name = _unique_input(code, "InpMinEmaSeparation")
        code.add_input(
            node_input(
                fast, "minEmaSeparation", name, "double", fast.data.min_ema_separation,
                "Min EMA Separation (pips)", "EMA Crossover",
            )
        )
        separated = f"MathAbs({fb}[1] - {sb}[1]) / (_Point * _pipFactor) >= {name}"
        buy = f"({buy} && {separated})"
        sell = f"({sell} && {separated})"
    return [buy], [sell]


def collect_entry_conditions(
    indicators: List[Node],
    price_action: List[Node],
    code: GeneratedCode,
) -> Conditions:
    """
    One buy and one sell expression per live signal node, in bucket order.
    EMA crossover legs are emitted once per pair; filter-role nodes add their
    filter instead of a standalone signal.
    """
    buys: List[str] = []
    sells: List[str] = []

    groups = _ema_crossover_groups(indicators)
    grouped = {i for pair in groups.values() for i in pair.values()}
    emitted = set()

    for i, node in enumerate(indicators):
        data = node.data
        if i in grouped:
            group_id = data.entry_strategy_id
            if group_id in emitted:
                continue
            emitted.add(group_id)
            pair = groups[group_id]
            b, s = _crossover_signal(indicators[pair["fast"]], pair["fast"], pair["slow"], code)
        elif data.filter_role:
            b, s = _filter_signal(node, i)
        else:
            b, s = _indicator_signal(node, i, code)
        buys.extend(b)
        sells.extend(s)

    for i, node in enumerate(price_action):
        b, s = _price_action_signal(node, i)
        buys.extend(b)
        sells.extend(s)

    return buys, sells


# ---------------------------------------------------------------------------
# Daily limits
# ---------------------------------------------------------------------------


def _daily_trade_counter(code: GeneratedCode) -> None:
    code.global_variables.append("datetime lastTradeDay = 0;")
    code.global_variables.append("int tradesToday = 0;")
    code.on_tick.append("//--- Daily trade counter (resets on a new trading day)")
    code.on_tick.append("datetime today = iTime(_Symbol, PERIOD_D1, 0);")
    code.on_tick.append("if(today != lastTradeDay)")
    code.on_tick.append("{")
    code.on_tick.append("   lastTradeDay = today;")
    code.on_tick.append("   tradesToday = 0;")
    code.on_tick.append("}")


def _daily_pl_limits(ctx: CompileContext, code: GeneratedCode) -> None:
    settings = ctx.settings
    group = "Risk Management"
    if settings.max_daily_profit_percent > 0:
        code.add_input(
            InputParam("InpMaxDailyProfitPct", "double", settings.max_daily_profit_percent, "Max daily profit (%)", False, group)
        )
    if settings.max_daily_loss_percent > 0:
        code.add_input(
            InputParam("InpMaxDailyLossPct", "double", settings.max_daily_loss_percent, "Max daily loss (%)", False, group)
        )
    code.global_variables.append("datetime plDayStart = 0;")
    code.global_variables.append("double dayStartBalance = 0;")

    tick = code.on_tick
    tick.append("//--- Daily profit / loss limits (realized + floating)")
    tick.append("datetime plDay = iTime(_Symbol, PERIOD_D1, 0);")
    tick.append("if(plDay != plDayStart)")
    tick.append("{")
    tick.append("   plDayStart = plDay;")
    tick.append("   dayStartBalance = AccountInfoDouble(ACCOUNT_BALANCE);")
    tick.append("}")
    tick.append("double dayPLPercent = 0;")
    tick.append("if(dayStartBalance > 0)")
    tick.append("   dayPLPercent = (AccountInfoDouble(ACCOUNT_EQUITY) - dayStartBalance) / dayStartBalance * 100.0;")
    tick.append("bool dailyLimitHit = false;")
    if settings.max_daily_profit_percent > 0:
        tick.append("if(dayPLPercent >= InpMaxDailyProfitPct) dailyLimitHit = true;")
    if settings.max_daily_loss_percent > 0:
        tick.append("if(dayPLPercent <= -InpMaxDailyLossPct) dailyLimitHit = true;")


# ---------------------------------------------------------------------------
# Public generator
# ---------------------------------------------------------------------------


def _order_call(node: Node, side: str, sl: str, tp: str, ctx: CompileContext, code: GeneratedCode) -> str:
    """The order-placing call for one side, registering its helper."""
    data = node.data
    lot = f"{side.lower()}LotSize"
    if not data.is_pending:
        code.add_helper(f"Open{side}", open_order_helper(side, ctx.options))
        return f"Open{side}({lot}, {sl}, {tp})"
    kind = "Stop" if data.order_type == "STOP" else "Limit"
    code.add_helper(f"Place{side}{kind}", pending_order_helper(side, data.order_type))
    return f"Place{side}{kind}({lot}, {sl}, {tp}, Inp{side}PendingOffset)"


def _pending_support(ctx: CompileContext, code: GeneratedCode) -> None:
    if not code.has_input("InpPendingExpiryHours"):
        code.add_input(
            InputParam("InpPendingExpiryHours", "int", 24, "Pending Order Expiry (hours, 0=no expiry)", False, "Pending Orders")
        )
    code.add_helper("GetPendingExpiry", PENDING_EXPIRY)
    code.add_helper("DeletePendingOrders", DELETE_PENDING_ORDERS)


def generate_entry_logic(
    indicators: List[Node],
    price_action: List[Node],
    buy_node: Optional[Node],
    sell_node: Optional[Node],
    ctx: CompileContext,
    code: GeneratedCode,
) -> None:
    """
    Emit `buyCondition` / `sellCondition` and the gated order execution.
    Only the directions that have a position node are emitted. Stop and
    limit entries replace this EA's stale pending orders on every new
    signal bar.
    """
    has_buy, has_sell = buy_node is not None, sell_node is not None
    if not (has_buy or has_sell):
        return

    settings = ctx.settings
    joiner = " || " if settings.condition_mode == "OR" else " && "
    buys, sells = collect_entry_conditions(indicators, price_action, code)
    log.debug(
        "Entry logic: %d buy / %d sell expressions joined with %s",
        len(buys), len(sells), settings.condition_mode,
    )

    tick = code.on_tick
    tick.append("")
    tick.append("//--- Entry Logic")
    buy_expr = joiner.join(buys) if buys else "false"
    sell_expr = joiner.join(sells) if sells else "false"
    if has_buy:
        if has_sell and not buys and sells:
            tick.append("// WARNING: no signal produces a buy condition, buy orders are never opened")
        tick.append(f"bool buyCondition = {buy_expr};")
    if has_sell:
        if has_buy and not sells and buys:
            tick.append("// WARNING: no signal produces a sell condition, sell orders are never opened")
        tick.append(f"bool sellCondition = {sell_expr};")

    code.global_variables.append("datetime lastEntryBar = 0; // Prevent multiple entries per bar")
    tick.append("")
    tick.append("//--- One entry per bar")
    tick.append("bool newBar = (currentBarTime != lastEntryBar);")

    gates = [f"positionsCount < {settings.max_open_trades}", "newBar", *code.entry_gates]
    if ctx.has_timing:
        gates.insert(0, "isTradingTime")
    if settings.max_trades_per_day > 0:
        tick.append("")
        _daily_trade_counter(code)
        gates.append(f"tradesToday < {settings.max_trades_per_day}")
    if settings.max_daily_profit_percent > 0 or settings.max_daily_loss_percent > 0:
        tick.append("")
        _daily_pl_limits(ctx, code)
        gates.append("!dailyLimitHit")

    on_open = ["lastEntryBar = currentBarTime;"]
    if settings.max_trades_per_day > 0:
        on_open.append("tradesToday++;")

    pending = [n for n in (buy_node, sell_node) if n is not None and n.data.is_pending]
    if pending:
        _pending_support(ctx, code)
        log.debug("Entry logic: pending %s order(s)", "/".join(n.data.order_type for n in pending))

    code.add_helper("CountPositionsByType", COUNT_POSITIONS_BY_TYPE)

    tick.append("")
    tick.append("//--- Execute Entry")
    tick.append(f"if({' && '.join(gates)})")
    tick.append("{")
    if pending:
        tick.append("   DeletePendingOrders(); // replace stale pending orders")
    if has_buy:
        buy_gate = f"buyCondition && CountPositionsByType(POSITION_TYPE_BUY) < {settings.max_buy_positions}"
        if not settings.allow_hedging:
            buy_gate += " && CountPositionsByType(POSITION_TYPE_SELL) == 0"
        tick.append(f"   if({buy_gate})")
        tick.append("   {")
        tick.append(f"      if({_order_call(buy_node, 'Buy', 'slPips', 'tpPips', ctx, code)})")
        tick.append("      {")
        tick.extend(f"         {line}" for line in on_open)
        tick.append("      }")
        tick.append("   }")
    if has_sell:
        sell_sl = "slSellPips" if code.has_directional_sl else "slPips"
        sell_tp = "tpPips"
        if code.has_directional_sl and code.tp_method == "RISK_REWARD":
            sell_tp = "(slSellPips * InpRiskReward)"
        sell_gate = f"sellCondition && CountPositionsByType(POSITION_TYPE_SELL) < {settings.max_sell_positions}"
        if not settings.allow_hedging:
            sell_gate += " && CountPositionsByType(POSITION_TYPE_BUY) == 0"
        tick.append(f"   if({sell_gate})")
        tick.append("   {")
        tick.append(f"      if({_order_call(sell_node, 'Sell', sell_sl, sell_tp, ctx, code)})")
        tick.append("      {")
        tick.extend(f"         {line}" for line in on_open)
        tick.append("      }")
        tick.append("   }")
    tick.append("}")

    if pending and any(getattr(n.data, "cancel_opposite", False) for n in price_action):
        tick.append("")
        tick.append("//--- One cancels other: drop the remaining pending orders once a position is open")
        tick.append("if(positionsCount > 0) DeletePendingOrders();")
