# src/quantdsl_mql5/engine/price_action.py

from __future__ import annotations

from typing import List, Tuple

from ..dsl.graph import Node
from ..dsl.nodes import (
    THREE_CANDLE_PATTERNS,
    CandlestickPatternData,
    RangeBreakoutData,
    SupportResistanceData,
)
from ..utils.logging import get_logger
from ..utils.mql import format_value, get_timeframe
from .context import GeneratedCode, node_input


log = get_logger(__name__)


# Fixed session boundaries used by range-breakout SESSION ranges
# (start hour, start minute, end hour, end minute).
RANGE_SESSIONS = {
    "ASIAN": (0, 0, 8, 0),
    "LONDON": (8, 0, 16, 0),
    "NEW_YORK": (13, 0, 21, 0),
}


GET_SESSION_RANGE = """
//+------------------------------------------------------------------+
//| High/low of a clock-time window (last completed occurrence)      |
//+------------------------------------------------------------------+
void GetSessionRange(ENUM_TIMEFRAMES tf, int startHour, int startMin, int endHour, int endMin, double &high, double &low, bool useGMT = false)
{
   high = 0;
   low = 0;

   MqlDateTime dt;
   datetime now = useGMT ? TimeGMT() : TimeCurrent();
   TimeToStruct(now, dt);

   dt.hour = startHour;
   dt.min = startMin;
   dt.sec = 0;
   datetime startTime = StructToTime(dt);

   dt.hour = endHour;
   dt.min = endMin;
   datetime endTime = StructToTime(dt);

   // Window spans midnight: it started the previous day
   if(endTime <= startTime)
      startTime -= 86400;

   // Today's window is not finished yet: use yesterday's
   if(now < endTime)
   {
      startTime -= 86400;
      endTime -= 86400;
   }

   int startBar = iBarShift(_Symbol, tf, startTime, false);
   int endBar = iBarShift(_Symbol, tf, endTime, false);
   if(startBar < 0 || endBar < 0 || startBar <= endBar)
      return;

   // endBar itself opens at the window end and extends past it
   int count = startBar - endBar;
   int highestBar = iHighest(_Symbol, tf, MODE_HIGH, count, endBar + 1);
   int lowestBar = iLowest(_Symbol, tf, MODE_LOW, count, endBar + 1);
   if(highestBar < 0 || lowestBar < 0)
      return;

   high = iHigh(_Symbol, tf, highestBar);
   low = iLow(_Symbol, tf, lowestBar);
}"""


FIND_SUPPORT_RESISTANCE = """
//+------------------------------------------------------------------+
//| Nearest clustered swing levels below / above the current price   |
//+------------------------------------------------------------------+
void FindSupportResistance(ENUM_TIMEFRAMES tf, int lookback, int minTouches, double zonePips, double &support, double &resistance)
{
   support = 0;
   resistance = 0;
   double currentPrice = SymbolInfoDouble(_Symbol, SYMBOL_BID);
   double zonePoints = zonePips * _pipFactor * _Point;

   double levels[];
   int levelCount = 0;
   ArrayResize(levels, lookback * 2);

   // Swing points: a high/low that is extreme against both neighbours
   for(int i = 2; i < lookback - 1; i++)
   {
      double high_i = iHigh(_Symbol, tf, i);
      double low_i  = iLow(_Symbol, tf, i);

      if(high_i >= iHigh(_Symbol, tf, i + 1) && high_i >= iHigh(_Symbol, tf, i - 1))
         levels[levelCount++] = high_i;

      if(low_i <= iLow(_Symbol, tf, i + 1) && low_i <= iLow(_Symbol, tf, i - 1))
         levels[levelCount++] = low_i;
   }

   if(levelCount == 0) return;

   // Cluster: every level within the zone of level i counts as a touch of i
   for(int i = 0; i < levelCount; i++)
   {
      int touches = 0;
      double levelSum = 0;

      for(int j = 0; j < levelCount; j++)
      {
         if(MathAbs(levels[j] - levels[i]) <= zonePoints)
         {
            touches++;
            levelSum += levels[j];
         }
      }

      if(touches < minTouches) continue;

      double avgLevel = levelSum / touches;
      if(avgLevel < currentPrice && (support == 0 || avgLevel > support))
         support = avgLevel;
      if(avgLevel > currentPrice && (resistance == 0 || avgLevel < resistance))
         resistance = avgLevel;
   }
}"""


# ---------------------------------------------------------------------------
# Range breakout
# ---------------------------------------------------------------------------


def _range_window(data: RangeBreakoutData) -> Tuple[int, int, int, int, bool]:
    """Window bounds plus whether they are user-tunable inputs."""
    if data.range_type == "SESSION" and data.range_session in RANGE_SESSIONS:
        return (*RANGE_SESSIONS[data.range_session], False)
    return (
        data.session_start_hour,
        data.session_start_minute,
        data.session_end_hour,
        data.session_end_minute,
        True,
    )


def _range_breakout(node: Node, data: RangeBreakoutData, i: int, code: GeneratedCode) -> None:
    p = f"pa{i}"
    tf = get_timeframe(data.timeframe)

    if data.range_type == "PREVIOUS_CANDLES":
        code.add_input(
            node_input(node, "lookbackCandles", f"InpRange{i}Lookback", "int", data.lookback_candles, f"Range {i + 1} Lookback Candles")
        )
        code.note_period(data.lookback_candles + 1)
    code.add_input(node_input(node, "bufferPips", f"InpRange{i}Buffer", "double", data.buffer_pips, f"Range {i + 1} Buffer (pips)"))
    code.add_input(
        node_input(node, "minRangePips", f"InpRange{i}MinRange", "double", data.min_range_pips, f"Range {i + 1} Min Size (pips)")
    )
    if data.max_range_pips > 0:
        code.add_input(
            node_input(node, "maxRangePips", f"InpRange{i}MaxRange", "double", data.max_range_pips, f"Range {i + 1} Max Size (pips)")
        )

    for decl in ("double {p}High;", "double {p}Low;", "double {p}Size;", "bool {p}Valid;", "bool {p}BreakoutUp;", "bool {p}BreakoutDown;"):
        code.global_variables.append(decl.format(p=p))

    code.on_tick.append(f"// Range Breakout {i + 1}")
    if data.range_type == "PREVIOUS_CANDLES":
        code.on_tick.append(f"int {p}HighBar = iHighest(_Symbol, {tf}, MODE_HIGH, InpRange{i}Lookback, 1);")
        code.on_tick.append(f"int {p}LowBar = iLowest(_Symbol, {tf}, MODE_LOW, InpRange{i}Lookback, 1);")
        code.on_tick.append(f"{p}High = ({p}HighBar >= 0) ? iHigh(_Symbol, {tf}, {p}HighBar) : 0;")
        code.on_tick.append(f"{p}Low = ({p}LowBar >= 0) ? iLow(_Symbol, {tf}, {p}LowBar) : 0;")
    else:
        code.add_helper("GetSessionRange", GET_SESSION_RANGE)
        sh, sm, eh, em, tunable = _range_window(data)
        use_gmt = format_value(not data.use_server_time)
        if tunable:
            group = f"Range {i + 1}"
            code.add_input(node_input(node, "sessionStartHour", f"InpRange{i}StartHour", "int", sh, f"Range {i + 1} Start Hour", group))
            code.add_input(node_input(node, "sessionStartMinute", f"InpRange{i}StartMin", "int", sm, f"Range {i + 1} Start Minute", group))
            code.add_input(node_input(node, "sessionEndHour", f"InpRange{i}EndHour", "int", eh, f"Range {i + 1} End Hour", group))
            code.add_input(node_input(node, "sessionEndMinute", f"InpRange{i}EndMin", "int", em, f"Range {i + 1} End Minute", group))
            bounds = f"InpRange{i}StartHour, InpRange{i}StartMin, InpRange{i}EndHour, InpRange{i}EndMin"
        else:
            bounds = f"{sh}, {sm}, {eh}, {em}"
        code.on_tick.append(f"GetSessionRange({tf}, {bounds}, {p}High, {p}Low, {use_gmt});")

    code.on_tick.append(f"{p}Size = ({p}High - {p}Low) / (_Point * _pipFactor); // Range size in pips")
    valid = f"{p}High > 0 && {p}Low > 0 && {p}Size > 0 && {p}Size >= InpRange{i}MinRange"
    if data.max_range_pips > 0:
        valid += f" && {p}Size <= InpRange{i}MaxRange"
    code.on_tick.append(f"{p}Valid = ({valid});")

    buf = f"InpRange{i}Buffer * _pipFactor * _Point"
    if data.entry_mode == "IMMEDIATE":
        up = f"SymbolInfoDouble(_Symbol, SYMBOL_ASK) > {p}High + {buf}"
        down = f"SymbolInfoDouble(_Symbol, SYMBOL_BID) < {p}Low - {buf}"
    elif data.entry_mode == "ON_CLOSE":
        up = f"iClose(_Symbol, {tf}, 1) > {p}High + {buf}"
        down = f"iClose(_Symbol, {tf}, 1) < {p}Low - {buf}"
    else:
        code.on_tick.append("// Retest: bar 2 closed beyond the range, bar 1 came back to the level and closed outside again")
        up = (
            f"iClose(_Symbol, {tf}, 2) > {p}High + {buf} && iLow(_Symbol, {tf}, 1) <= {p}High + {buf}"
            f" && iClose(_Symbol, {tf}, 1) > {p}High"
        )
        down = (
            f"iClose(_Symbol, {tf}, 2) < {p}Low - {buf} && iHigh(_Symbol, {tf}, 1) >= {p}Low - {buf}"
            f" && iClose(_Symbol, {tf}, 1) < {p}Low"
        )

    if data.breakout_direction == "SELL_ON_LOW":
        code.on_tick.append(f"{p}BreakoutUp = false;")
    else:
        code.on_tick.append(f"{p}BreakoutUp = {p}Valid && {up};")
    if data.breakout_direction == "BUY_ON_HIGH":
        code.on_tick.append(f"{p}BreakoutDown = false;")
    else:
        code.on_tick.append(f"{p}BreakoutDown = {p}Valid && {down};")
    code.on_tick.append("")


# ---------------------------------------------------------------------------
# Candlestick patterns
# ---------------------------------------------------------------------------


def _pattern_lines(pattern: str, p: str) -> List[str]:
    if pattern == "ENGULFING_BULLISH":
        return [
            "// Bullish Engulfing: bearish candle 2 engulfed by bullish candle 1",
            f"if({p}C2 < {p}O2 && {p}C1 > {p}O1 && {p}Body1 >= {p}MinBody && {p}C1 > {p}O2 && {p}O1 < {p}C2) {p}BuySignal = true;",
        ]
    if pattern == "ENGULFING_BEARISH":
        return [
            "// Bearish Engulfing: bullish candle 2 engulfed by bearish candle 1",
            f"if({p}C2 > {p}O2 && {p}C1 < {p}O1 && {p}Body1 >= {p}MinBody && {p}C1 < {p}O2 && {p}O1 > {p}C2) {p}SellSignal = true;",
        ]
    if pattern == "DOJI":
        return [
            "// Doji: tiny body, direction taken from the candle before",
            f"if({p}Range1 > 0 && {p}Body1 <= {p}Range1 * 0.1 && {p}Range1 >= {p}MinBody)",
            "{",
            f"   if({p}C2 < {p}O2) {p}BuySignal = true;",
            f"   if({p}C2 > {p}O2) {p}SellSignal = true;",
            "}",
        ]
    if pattern == "HAMMER":
        return [
            "// Hammer: small body at the top, long lower shadow",
            f"if({p}Body1 >= {p}MinBody && {p}Range1 > 0 && {p}LowerShadow1 >= {p}Body1 * 2 && {p}UpperShadow1 <= {p}Body1 * 0.5) {p}BuySignal = true;",
        ]
    if pattern == "SHOOTING_STAR":
        return [
            "// Shooting Star: small body at the bottom, long upper shadow",
            f"if({p}Body1 >= {p}MinBody && {p}Range1 > 0 && {p}UpperShadow1 >= {p}Body1 * 2 && {p}LowerShadow1 <= {p}Body1 * 0.5) {p}SellSignal = true;",
        ]
    if pattern == "MORNING_STAR":
        return [
            "// Morning Star: 3-candle bullish reversal",
            f"if({p}C3 < {p}O3 && {p}Body3 >= {p}MinBody",
            f"   && {p}Body2 < {p}Body3 * 0.5",
            f"   && {p}C1 > {p}O1 && {p}Body1 >= {p}MinBody",
            f"   && {p}C1 > ({p}O3 + {p}C3) / 2)",
            f"   {p}BuySignal = true;",
        ]
    if pattern == "EVENING_STAR":
        return [
            "// Evening Star: 3-candle bearish reversal",
            f"if({p}C3 > {p}O3 && {p}Body3 >= {p}MinBody",
            f"   && {p}Body2 < {p}Body3 * 0.5",
            f"   && {p}C1 < {p}O1 && {p}Body1 >= {p}MinBody",
            f"   && {p}C1 < ({p}O3 + {p}C3) / 2)",
            f"   {p}SellSignal = true;",
        ]
    if pattern == "THREE_WHITE_SOLDIERS":
        return [
            "// Three White Soldiers: 3 bullish candles with higher closes",
            f"if({p}C3 > {p}O3 && {p}Body3 >= {p}MinBody",
            f"   && {p}C2 > {p}O2 && {p}Body2 >= {p}MinBody && {p}C2 > {p}C3",
            f"   && {p}C1 > {p}O1 && {p}Body1 >= {p}MinBody && {p}C1 > {p}C2)",
            f"   {p}BuySignal = true;",
        ]
    if pattern == "THREE_BLACK_CROWS":
        return [
            "// Three Black Crows: 3 bearish candles with lower closes",
            f"if({p}C3 < {p}O3 && {p}Body3 >= {p}MinBody",
            f"   && {p}C2 < {p}O2 && {p}Body2 >= {p}MinBody && {p}C2 < {p}C3",
            f"   && {p}C1 < {p}O1 && {p}Body1 >= {p}MinBody && {p}C1 < {p}C2)",
            f"   {p}SellSignal = true;",
        ]
    raise TypeError(f"Unsupported candlestick pattern: {pattern!r}")


def _candlestick(node: Node, data: CandlestickPatternData, i: int, code: GeneratedCode) -> None:
    p = f"pa{i}"
    tf = get_timeframe(data.timeframe)
    patterns = list(dict.fromkeys(data.patterns))

    code.add_input(
        node_input(node, "minBodySize", f"InpCP{i}MinBody", "double", data.min_body_size, f"Candle Pattern {i + 1} Min Body (pips)")
    )
    code.global_variables.append(f"bool {p}BuySignal;")
    code.global_variables.append(f"bool {p}SellSignal;")

    tick = code.on_tick
    tick.append(f"// Candlestick Pattern Detection {i + 1}")
    tick.append(f"{p}BuySignal = false;")
    tick.append(f"{p}SellSignal = false;")
    tick.append(f"double {p}MinBody = InpCP{i}MinBody * _pipFactor * _Point;")
    for bar in (1, 2):
        tick.append(f"double {p}O{bar} = iOpen(_Symbol, {tf}, {bar});")
        tick.append(f"double {p}C{bar} = iClose(_Symbol, {tf}, {bar});")
        tick.append(f"double {p}H{bar} = iHigh(_Symbol, {tf}, {bar});")
        tick.append(f"double {p}L{bar} = iLow(_Symbol, {tf}, {bar});")
    tick.append(f"double {p}Body1 = MathAbs({p}C1 - {p}O1);")
    tick.append(f"double {p}Body2 = MathAbs({p}C2 - {p}O2);")
    tick.append(f"double {p}Range1 = {p}H1 - {p}L1;")

    if any(pat in ("HAMMER", "SHOOTING_STAR") for pat in patterns):
        tick.append(f"double {p}UpperBody1 = MathMax({p}O1, {p}C1);")
        tick.append(f"double {p}LowerBody1 = MathMin({p}O1, {p}C1);")
        tick.append(f"double {p}UpperShadow1 = {p}H1 - {p}UpperBody1;")
        tick.append(f"double {p}LowerShadow1 = {p}LowerBody1 - {p}L1;")

    # the third bar is only read when a 3-candle pattern needs it
    if any(pat in THREE_CANDLE_PATTERNS for pat in patterns):
        tick.append(f"double {p}O3 = iOpen(_Symbol, {tf}, 3);")
        tick.append(f"double {p}C3 = iClose(_Symbol, {tf}, 3);")
        tick.append(f"double {p}Body3 = MathAbs({p}C3 - {p}O3);")
        code.note_period(4)
    else:
        code.note_period(3)

    tick.append("")
    for pattern in patterns:
        tick.extend(_pattern_lines(pattern, p))
    tick.append("")


# ---------------------------------------------------------------------------
# Support / resistance
# ---------------------------------------------------------------------------


def _support_resistance(node: Node, data: SupportResistanceData, i: int, code: GeneratedCode) -> None:
    p = f"pa{i}"
    code.add_input(node_input(node, "lookbackPeriod", f"InpSR{i}Lookback", "int", data.lookback_period, f"S/R {i + 1} Lookback Period"))
    code.add_input(node_input(node, "touchCount", f"InpSR{i}Touches", "int", data.touch_count, f"S/R {i + 1} Min Touches"))
    code.add_input(node_input(node, "zoneSize", f"InpSR{i}ZoneSize", "double", data.zone_size, f"S/R {i + 1} Zone Size (pips)"))

    code.global_variables.append(f"double {p}Support;")
    code.global_variables.append(f"double {p}Resistance;")
    code.global_variables.append(f"bool {p}NearSupport;")
    code.global_variables.append(f"bool {p}NearResistance;")
    code.add_helper("FindSupportResistance", FIND_SUPPORT_RESISTANCE)
    code.note_period(data.lookback_period)

    tick = code.on_tick
    tick.append(f"// Support/Resistance Detection {i + 1}")
    # levels only move when a bar closes
    tick.append(f"if(isNewBar || {p}Support == 0)")
    tick.append("{")
    tick.append(
        f"   FindSupportResistance({get_timeframe(data.timeframe)}, InpSR{i}Lookback, InpSR{i}Touches, "
        f"InpSR{i}ZoneSize, {p}Support, {p}Resistance);"
    )
    tick.append("}")
    tick.append(f"double {p}ZonePoints = InpSR{i}ZoneSize * _pipFactor * _Point;")
    tick.append(f"double {p}Bid = SymbolInfoDouble(_Symbol, SYMBOL_BID);")
    tick.append(f"{p}NearSupport = ({p}Support > 0 && MathAbs({p}Bid - {p}Support) <= {p}ZonePoints);")
    tick.append(f"{p}NearResistance = ({p}Resistance > 0 && MathAbs({p}Bid - {p}Resistance) <= {p}ZonePoints);")
    tick.append("")


_GENERATORS = {
    RangeBreakoutData: _range_breakout,
    CandlestickPatternData: _candlestick,
    SupportResistanceData: _support_resistance,
}


def generate_price_action_code(node: Node, index: int, code: GeneratedCode) -> None:
    gen = _GENERATORS.get(type(node.data))
    if gen is None:
        raise TypeError(f"Unsupported price action type: {type(node.data)!r}")
    log.debug("Price action %d: %s '%s'", index, node.kind, node.id)
    gen(node, node.data, index, code)
