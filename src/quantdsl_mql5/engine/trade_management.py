# src/quantdsl_mql5/engine/trade_management.py

from __future__ import annotations

from typing import List

from ..dsl.graph import Node
from ..dsl.nodes import (
    BreakevenStopData,
    LockProfitData,
    MultiLevelTPData,
    PartialCloseData,
    TrailingStopData,
)
from ..utils.logging import get_logger
from .context import GeneratedCode, node_input
from .templates import indent, rule

log = get_logger(__name__)


# Side tables are pruned every N ticks instead of on every tick.
PRUNE_EVERY_TICKS = 100


SAFE_POSITION_MODIFY = """bool SafePositionModify(ulong ticket, double sl, double tp)
{
   if(!PositionSelectByTicket(ticket)) return(false);
   // the broker rejects modifications inside the freeze level
   double freezeLevel = (double)SymbolInfoInteger(_Symbol, SYMBOL_TRADE_FREEZE_LEVEL) * _Point;
   if(freezeLevel > 0)
   {
      long type = PositionGetInteger(POSITION_TYPE);
      double price = (type == POSITION_TYPE_BUY) ? SymbolInfoDouble(_Symbol, SYMBOL_BID) : SymbolInfoDouble(_Symbol, SYMBOL_ASK);
      if((sl > 0 && MathAbs(price - sl) < freezeLevel) || (tp > 0 && MathAbs(price - tp) < freezeLevel))
         return(false);
   }
   if(!trade.PositionModify(ticket, sl, tp))
   {
      PrintFormat("PositionModify failed for #%I64u: retcode %d, SL=%.5f, TP=%.5f", ticket, trade.ResultRetcode(), sl, tp);
      return(false);
   }
   return(true);
}"""


def _suffix(code: GeneratedCode, marker_input: str) -> str:
    """Name suffix: empty for the first node of a kind, then "2", "3" ..."""
    n = code.count_inputs(marker_input)
    return "" if n == 0 else str(n + 1)


def _label(text: str, suffix: str) -> str:
    return f"{text} {suffix}" if suffix else text


def _function(title: str, signature: str, body: List[str]) -> str:
    return "\n".join([rule(title), signature, "{", *indent(body), "}"])


def _atr_handle(code: GeneratedCode, name: str, period_input: str, what: str) -> None:
    """Private ATR handle for a management rule, refreshed once before the position loop."""
    code.global_variables.append(f"int {name}Handle = INVALID_HANDLE;")
    code.global_variables.append(f"double {name}Buffer[];")
    code.on_init.append(f"{name}Handle = iATR(_Symbol, PERIOD_CURRENT, {period_input});")
    code.on_init.append(f'if({name}Handle == INVALID_HANDLE) {{ Print("Failed to create ATR handle for {what}"); return(INIT_FAILED); }}')
    code.on_init.append(f"ArraySetAsSeries({name}Buffer, true);")
    code.on_deinit.append(f"if({name}Handle != INVALID_HANDLE) IndicatorRelease({name}Handle);")
    code.management_pre_loop.append(f"bool {name}Ready = (CopyBuffer({name}Handle, 0, 0, 1, {name}Buffer) >= 1);")


def _prune_every(code: GeneratedCode, counter: str, call: str) -> None:
    code.management_pre_loop.extend(
        [
            f"static int {counter} = 0;",
            f"if(++{counter} >= {PRUNE_EVERY_TICKS})",
            "{",
            f"   {call};",
            f"   {counter} = 0;",
            "}",
        ]
    )


# ---------------------------------------------------------------------------
# Breakeven stop
# ---------------------------------------------------------------------------


def _breakeven(node: Node, data: BreakevenStopData, code: GeneratedCode) -> None:
    sfx = _suffix(code, "InpBELockPips")
    group = "Breakeven Stop"

    if data.trigger == "PIPS":
        code.add_input(node_input(node, "triggerPips", f"InpBETriggerPips{sfx}", "double", data.trigger_pips, _label("Breakeven Trigger (pips)", sfx), group))
        trigger = [f"double triggerPoints = InpBETriggerPips{sfx} * _pipFactor;"]
    elif data.trigger == "PERCENTAGE":
        code.add_input(
            node_input(node, "triggerPercent", f"InpBETriggerPercent{sfx}", "double", data.trigger_percent, _label("Breakeven Trigger (% profit)", sfx), group)
        )
        trigger = []
    else:
        code.add_input(
            node_input(node, "triggerAtrPeriod", f"InpBEATRPeriod{sfx}", "int", data.trigger_atr_period, _label("Breakeven ATR Period", sfx), group)
        )
        code.add_input(
            node_input(
                node, "triggerAtrMultiplier", f"InpBEATRMultiplier{sfx}", "double", data.trigger_atr_multiplier, _label("Breakeven ATR Multiplier", sfx), group
            )
        )
        _atr_handle(code, f"beATR{sfx}", f"InpBEATRPeriod{sfx}", "Breakeven")
        code.note_period(data.trigger_atr_period)
        trigger = [f"double triggerPoints = (beATR{sfx}Buffer[0] / _Point) * InpBEATRMultiplier{sfx};"]
    code.add_input(node_input(node, "lockPips", f"InpBELockPips{sfx}", "double", data.lock_pips, _label("Breakeven Lock (pips beyond entry)", sfx), group))

    body = [f"double lockPoints = InpBELockPips{sfx} * _pipFactor;", "bool armed = false;"]
    if data.trigger == "PERCENTAGE":
        body += [
            "double balance = AccountInfoDouble(ACCOUNT_BALANCE);",
            f"armed = (balance > 0 && positionProfit / balance * 100.0 >= InpBETriggerPercent{sfx});",
        ]
    else:
        body += trigger + [
            "if(posType == POSITION_TYPE_BUY)",
            "   armed = (SymbolInfoDouble(_Symbol, SYMBOL_BID) >= openPrice + triggerPoints * _Point);",
            "else",
            "   armed = (SymbolInfoDouble(_Symbol, SYMBOL_ASK) <= openPrice - triggerPoints * _Point);",
        ]
    body += [
        "if(!armed) return;",
        "",
        "if(posType == POSITION_TYPE_BUY)",
        "{",
        "   double newSL = NormalizeDouble(openPrice + lockPoints * _Point, _Digits);",
        "   if(currentSL < newSL) SafePositionModify(ticket, newSL, currentTP);",
        "}",
        "else",
        "{",
        "   double newSL = NormalizeDouble(openPrice - lockPoints * _Point, _Digits);",
        "   if(currentSL > newSL || currentSL == 0) SafePositionModify(ticket, newSL, currentTP);",
        "}",
    ]
    fn = f"CheckBreakevenStop{sfx}"
    code.add_helper(
        fn,
        _function(
            "Breakeven stop for one position",
            f"void {fn}(ulong ticket, double openPrice, double currentSL, double currentTP, double positionProfit, long posType)",
            body,
        ),
    )
    call = f"{fn}(ticket, openPrice, currentSL, currentTP, positionProfit, posType);"
    code.management_calls.append(f"if(beATR{sfx}Ready) {call}" if data.trigger == "ATR" else call)


# ---------------------------------------------------------------------------
# Trailing stop
# ---------------------------------------------------------------------------


def _trailing(node: Node, data: TrailingStopData, code: GeneratedCode) -> None:
    sfx = _suffix(code, "InpTrailStartPips")
    group = "Trailing Stop"

    if data.method == "ATR_BASED":
        code.add_input(node_input(node, "trailAtrPeriod", f"InpTrailATRPeriod{sfx}", "int", data.trail_atr_period, _label("Trail ATR Period", sfx), group))
        code.add_input(
            node_input(node, "trailAtrMultiplier", f"InpTrailATRMultiplier{sfx}", "double", data.trail_atr_multiplier, _label("Trail ATR Multiplier", sfx), group)
        )
        _atr_handle(code, f"trailATR{sfx}", f"InpTrailATRPeriod{sfx}", "Trailing Stop")
        code.note_period(data.trail_atr_period)
        distance = [f"double trailPoints = (trailATR{sfx}Buffer[0] / _Point) * InpTrailATRMultiplier{sfx};"]
    elif data.method == "PERCENTAGE":
        code.add_input(node_input(node, "trailPercent", f"InpTrailPercent{sfx}", "double", data.trail_percent, _label("Trail Distance (% of profit)", sfx), group))
        distance = [
            "double profitPoints = (posType == POSITION_TYPE_BUY)",
            "   ? (SymbolInfoDouble(_Symbol, SYMBOL_BID) - openPrice) / _Point",
            "   : (openPrice - SymbolInfoDouble(_Symbol, SYMBOL_ASK)) / _Point;",
            f"double trailPoints = MathMax(profitPoints * InpTrailPercent{sfx} / 100.0, _pipFactor);",
        ]
    else:
        code.add_input(node_input(node, "trailPips", f"InpTrailPips{sfx}", "double", data.trail_pips, _label("Trail Distance (pips)", sfx), group))
        distance = [f"double trailPoints = InpTrailPips{sfx} * _pipFactor;"]
    code.add_input(
        node_input(node, "startAfterPips", f"InpTrailStartPips{sfx}", "double", data.start_after_pips, _label("Trail Start After (pips profit)", sfx), group)
    )

    body = [f"double startPoints = InpTrailStartPips{sfx} * _pipFactor;", *distance, ""]
    body += [
        "// the stop only ever moves in the position's favour",
        "if(posType == POSITION_TYPE_BUY)",
        "{",
        "   double bid = SymbolInfoDouble(_Symbol, SYMBOL_BID);",
        "   if(bid < openPrice + startPoints * _Point) return;",
        "   double newSL = NormalizeDouble(bid - trailPoints * _Point, _Digits);",
        "   if(newSL > currentSL) SafePositionModify(ticket, newSL, currentTP);",
        "}",
        "else",
        "{",
        "   double ask = SymbolInfoDouble(_Symbol, SYMBOL_ASK);",
        "   if(ask > openPrice - startPoints * _Point) return;",
        "   double newSL = NormalizeDouble(ask + trailPoints * _Point, _Digits);",
        "   if(newSL < currentSL || currentSL == 0) SafePositionModify(ticket, newSL, currentTP);",
        "}",
    ]
    fn = f"CheckTrailingStop{sfx}"
    code.add_helper(
        fn,
        _function(
            "Trailing stop for one position",
            f"void {fn}(ulong ticket, double openPrice, double currentSL, double currentTP, long posType)",
            body,
        ),
    )
    call = f"{fn}(ticket, openPrice, currentSL, currentTP, posType);"
    code.management_calls.append(f"if(trailATR{sfx}Ready) {call}" if data.method == "ATR_BASED" else call)


# ---------------------------------------------------------------------------
# Partial close (fires once per ticket)
# ---------------------------------------------------------------------------


def _ticket_table(sfx: str) -> str:
    table = f"partialClosedTickets{sfx}"
    return "\n\n".join(
        [
            _function(
                "Was the ticket already partially closed",
                f"bool IsPartialClosed{sfx}(ulong ticket)",
                [
                    f"for(int i = ArraySize({table}) - 1; i >= 0; i--)",
                    f"   if({table}[i] == ticket) return(true);",
                    "return(false);",
                ],
            ),
            _function(
                "Remember a partially closed ticket",
                f"void MarkPartialClosed{sfx}(ulong ticket)",
                [
                    f"int size = ArraySize({table});",
                    f"ArrayResize({table}, size + 1);",
                    f"{table}[size] = ticket;",
                ],
            ),
            _function(
                "Forget tickets whose position has closed",
                f"void PrunePartialClosed{sfx}()",
                [
                    f"for(int i = ArraySize({table}) - 1; i >= 0; i--)",
                    "{",
                    f"   if(PositionSelectByTicket({table}[i])) continue;",
                    f"   int last = ArraySize({table}) - 1;",
                    f"   {table}[i] = {table}[last];",
                    f"   ArrayResize({table}, last);",
                    "}",
                ],
            ),
        ]
    )


def _partial_close(node: Node, data: PartialCloseData, code: GeneratedCode) -> None:
    sfx = _suffix(code, "InpPartialClosePercent")
    group = "Partial Close"

    code.add_input(node_input(node, "closePercent", f"InpPartialClosePercent{sfx}", "double", data.close_percent, _label("Partial Close %", sfx), group))
    if data.trigger_method == "R_MULTIPLE":
        code.add_input(node_input(node, "rMultiple", f"InpPartialCloseRMultiple{sfx}", "double", data.r_multiple, _label("Partial Close at R-Multiple", sfx), group))
        trigger = [
            "double stopSL = PositionGetDouble(POSITION_SL);",
            "if(stopSL == 0) return; // an R-multiple needs a stop loss",
            f"double triggerPoints = MathAbs(openPrice - stopSL) / _Point * InpPartialCloseRMultiple{sfx};",
        ]
    elif data.trigger_method == "PERCENT":
        code.add_input(
            node_input(node, "triggerPercent", f"InpPartialCloseTriggerPercent{sfx}", "double", data.trigger_percent, _label("Partial Close Trigger (% profit)", sfx), group)
        )
        trigger = []
    else:
        code.add_input(
            node_input(node, "triggerPips", f"InpPartialCloseTriggerPips{sfx}", "double", data.trigger_pips, _label("Partial Close Trigger (pips)", sfx), group)
        )
        trigger = [f"double triggerPoints = InpPartialCloseTriggerPips{sfx} * _pipFactor;"]

    code.global_variables.append(f"ulong partialClosedTickets{sfx}[]; // tickets already partially closed")
    code.add_helper(f"PartialClosedTable{sfx}", _ticket_table(sfx))
    _prune_every(code, f"_prunePartialCounter{sfx}", f"PrunePartialClosed{sfx}()")

    body = [f"if(IsPartialClosed{sfx}(ticket)) return;", "bool reached = false;"]
    if data.trigger_method == "PERCENT":
        body += [
            "double balance = AccountInfoDouble(ACCOUNT_BALANCE);",
            f"reached = (balance > 0 && PositionGetDouble(POSITION_PROFIT) / balance * 100.0 >= InpPartialCloseTriggerPercent{sfx});",
        ]
    else:
        body += trigger + [
            "if(posType == POSITION_TYPE_BUY)",
            "   reached = (SymbolInfoDouble(_Symbol, SYMBOL_BID) >= openPrice + triggerPoints * _Point);",
            "else",
            "   reached = (SymbolInfoDouble(_Symbol, SYMBOL_ASK) <= openPrice - triggerPoints * _Point);",
        ]
    body += [
        "if(!reached) return;",
        "",
        "double lotStep = SymbolInfoDouble(_Symbol, SYMBOL_VOLUME_STEP);",
        "double minLot = SymbolInfoDouble(_Symbol, SYMBOL_VOLUME_MIN);",
        f"double closeVolume = MathFloor(volume * InpPartialClosePercent{sfx} / 100.0 / lotStep) * lotStep;",
        "// what remains open must still be a valid lot",
        "if(volume - closeVolume < minLot) closeVolume = MathFloor((volume - minLot) / lotStep) * lotStep;",
        "if(closeVolume < minLot) return;",
        "",
        "double keepTP = PositionGetDouble(POSITION_TP);",
        "if(!trade.PositionClosePartial(ticket, closeVolume)) return;",
        f"MarkPartialClosed{sfx}(ticket);",
    ]
    if data.move_sl_to_breakeven:
        body += [
            "if(!PositionSelectByTicket(ticket)) return;",
            "double slNow = PositionGetDouble(POSITION_SL);",
            "double breakeven = NormalizeDouble(openPrice, _Digits);",
            "if(posType == POSITION_TYPE_BUY && slNow < breakeven)",
            "   SafePositionModify(ticket, breakeven, keepTP);",
            "else if(posType == POSITION_TYPE_SELL && (slNow > breakeven || slNow == 0))",
            "   SafePositionModify(ticket, breakeven, keepTP);",
        ]
    fn = f"CheckPartialClose{sfx}"
    code.add_helper(
        fn,
        _function("Partial close for one position", f"void {fn}(ulong ticket, double openPrice, double volume, long posType)", body),
    )
    code.management_calls.append(f"{fn}(ticket, openPrice, volume, posType);")


# ---------------------------------------------------------------------------
# Lock profit
# ---------------------------------------------------------------------------


def _lock_profit(node: Node, data: LockProfitData, code: GeneratedCode) -> None:
    sfx = _suffix(code, "InpLockCheckInterval")
    group = "Lock Profit"

    if data.method == "PERCENTAGE":
        code.add_input(node_input(node, "lockPercent", f"InpLockProfitPercent{sfx}", "double", data.lock_percent, _label("Lock Profit %", sfx), group))
        lock = f"double lockPoints = profitPoints * InpLockProfitPercent{sfx} / 100.0;"
    else:
        code.add_input(node_input(node, "lockPips", f"InpLockProfitPips{sfx}", "double", data.lock_pips, _label("Lock Profit (pips)", sfx), group))
        lock = f"double lockPoints = InpLockProfitPips{sfx} * _pipFactor;"
    code.add_input(
        node_input(node, "checkIntervalPips", f"InpLockCheckInterval{sfx}", "double", data.check_interval_pips, _label("Min Profit Before Locking (pips)", sfx), group)
    )

    body = [
        f"double minPoints = InpLockCheckInterval{sfx} * _pipFactor;",
        "if(posType == POSITION_TYPE_BUY)",
        "{",
        "   double bid = SymbolInfoDouble(_Symbol, SYMBOL_BID);",
        "   double profitPoints = (bid - openPrice) / _Point;",
        "   if(profitPoints <= minPoints) return;",
        f"   {lock}",
        "   double newSL = NormalizeDouble(openPrice + lockPoints * _Point, _Digits);",
        "   if(newSL > currentSL && newSL < bid) SafePositionModify(ticket, newSL, currentTP);",
        "}",
        "else",
        "{",
        "   double ask = SymbolInfoDouble(_Symbol, SYMBOL_ASK);",
        "   double profitPoints = (openPrice - ask) / _Point;",
        "   if(profitPoints <= minPoints) return;",
        f"   {lock}",
        "   double newSL = NormalizeDouble(openPrice - lockPoints * _Point, _Digits);",
        "   if((newSL < currentSL || currentSL == 0) && newSL > ask) SafePositionModify(ticket, newSL, currentTP);",
        "}",
    ]
    fn = f"CheckLockProfit{sfx}"
    code.add_helper(
        fn,
        _function(
            "Lock profit for one position",
            f"void {fn}(ulong ticket, double openPrice, double currentSL, double currentTP, long posType)",
            body,
        ),
    )
    code.management_calls.append(f"{fn}(ticket, openPrice, currentSL, currentTP, posType);")


# ---------------------------------------------------------------------------
# Multi-level take profit (per-ticket level table)
# ---------------------------------------------------------------------------


MLTP_STATE_TABLE = """int GetMLTPLevel(ulong ticket)
{
   for(int i = 0; i < g_mltpCount; i++)
      if(g_mltpStates[i].ticket == ticket) return(g_mltpStates[i].level);
   return(0);
}

void SetMLTPLevel(ulong ticket, int level)
{
   for(int i = 0; i < g_mltpCount; i++)
   {
      if(g_mltpStates[i].ticket == ticket) { g_mltpStates[i].level = level; return; }
   }
   ArrayResize(g_mltpStates, g_mltpCount + 1);
   g_mltpStates[g_mltpCount].ticket = ticket;
   g_mltpStates[g_mltpCount].level = level;
   g_mltpCount++;
}

void PruneMLTPStates()
{
   for(int i = g_mltpCount - 1; i >= 0; i--)
   {
      if(PositionSelectByTicket(g_mltpStates[i].ticket)) continue;
      g_mltpStates[i] = g_mltpStates[g_mltpCount - 1];
      g_mltpCount--;
      ArrayResize(g_mltpStates, g_mltpCount);
   }
}"""


def _multi_level_tp(node: Node, data: MultiLevelTPData, code: GeneratedCode) -> None:
    sfx = _suffix(code, "InpMLTP1Pips")
    group = "Multi-Level TP"
    for level in (1, 2, 3):
        code.add_input(
            node_input(node, f"tp{level}Pips", f"InpMLTP{level}Pips{sfx}", "double", getattr(data, f"tp{level}_pips"), _label(f"TP{level} Distance (pips)", sfx), group)
        )
        code.add_input(
            node_input(node, f"tp{level}Percent", f"InpMLTP{level}Percent{sfx}", "double", getattr(data, f"tp{level}_percent"), _label(f"TP{level} Close %", sfx), group)
        )

    # one table for every multi-level TP rule: level 0 none, 1..3 milestones hit
    if not code.has_global("SMLTPState"):
        code.global_variables.append("struct SMLTPState { ulong ticket; int level; };")
        code.global_variables.append("SMLTPState g_mltpStates[];")
        code.global_variables.append("int g_mltpCount = 0;")
        code.add_helper("MLTPStateTable", MLTP_STATE_TABLE)
        _prune_every(code, "_pruneMLTPCounter", "PruneMLTPStates()")

    body = [
        "int tpLevel = GetMLTPLevel(ticket);",
        "double profitPoints = (posType == POSITION_TYPE_BUY)",
        "   ? (SymbolInfoDouble(_Symbol, SYMBOL_BID) - openPrice) / _Point",
        "   : (openPrice - SymbolInfoDouble(_Symbol, SYMBOL_ASK)) / _Point;",
        "double lotStep = SymbolInfoDouble(_Symbol, SYMBOL_VOLUME_STEP);",
        "double minLot = SymbolInfoDouble(_Symbol, SYMBOL_VOLUME_MIN);",
        "",
    ]
    if data.move_sl_after_tp1 == "TRAIL":
        # after TP1 the stop follows price at the TP1 distance, never below breakeven
        body += [
            "if(tpLevel >= 1)",
            "{",
            f"   double trailDist = InpMLTP1Pips{sfx} * _pipFactor * _Point;",
            "   double trailSL = PositionGetDouble(POSITION_SL);",
            "   if(posType == POSITION_TYPE_BUY)",
            "   {",
            "      double newSL = NormalizeDouble(SymbolInfoDouble(_Symbol, SYMBOL_BID) - trailDist, _Digits);",
            "      if(newSL > openPrice && (trailSL == 0 || newSL > trailSL))",
            "         SafePositionModify(ticket, newSL, PositionGetDouble(POSITION_TP));",
            "   }",
            "   else",
            "   {",
            "      double newSL = NormalizeDouble(SymbolInfoDouble(_Symbol, SYMBOL_ASK) + trailDist, _Digits);",
            "      if(newSL < openPrice && (trailSL == 0 || newSL < trailSL))",
            "         SafePositionModify(ticket, newSL, PositionGetDouble(POSITION_TP));",
            "   }",
            "   if(!PositionSelectByTicket(ticket)) return;",
            "}",
            "",
        ]
    body += [
        f"if(tpLevel < 1 && profitPoints >= InpMLTP1Pips{sfx} * _pipFactor)",
        "{",
        f"   double closeVol = MathFloor(volume * InpMLTP1Percent{sfx} / 100.0 / lotStep) * lotStep;",
        "   if(volume - closeVol < minLot) closeVol = MathFloor((volume - minLot) / lotStep) * lotStep;",
        "   if(closeVol >= minLot && trade.PositionClosePartial(ticket, closeVol))",
        "   {",
        "      SetMLTPLevel(ticket, 1);",
    ]
    if data.move_sl_after_tp1 in ("BREAKEVEN", "TRAIL"):
        body += [
            "      if(PositionSelectByTicket(ticket))",
            "         SafePositionModify(ticket, NormalizeDouble(openPrice, _Digits), PositionGetDouble(POSITION_TP));",
        ]
    body += [
        "   }",
        "   return;",
        "}",
        "",
        f"if(tpLevel == 1 && profitPoints >= InpMLTP2Pips{sfx} * _pipFactor)",
        "{",
        "   // share of what is left after TP1",
        f"   double rest = InpMLTP2Percent{sfx} + InpMLTP3Percent{sfx};",
        f"   double closeVol = (rest > 0) ? MathFloor(volume * InpMLTP2Percent{sfx} / rest / lotStep) * lotStep : 0;",
        "   if(volume - closeVol < minLot) closeVol = MathFloor((volume - minLot) / lotStep) * lotStep;",
        "   if(closeVol >= minLot && trade.PositionClosePartial(ticket, closeVol))",
        "      SetMLTPLevel(ticket, 2);",
        "   return;",
        "}",
        "",
        f"if(tpLevel == 2 && profitPoints >= InpMLTP3Pips{sfx} * _pipFactor)",
        "{",
        "   if(trade.PositionClose(ticket)) SetMLTPLevel(ticket, 3);",
        "}",
    ]
    fn = f"CheckMultiLevelTP{sfx}"
    code.add_helper(
        fn,
        _function("Multi-level take profit for one position", f"void {fn}(ulong ticket, double openPrice, double volume, long posType)", body),
    )
    code.management_calls.append(f"{fn}(ticket, openPrice, volume, posType);")


# ---------------------------------------------------------------------------
# Public generators
# ---------------------------------------------------------------------------


_GENERATORS = {
    BreakevenStopData: _breakeven,
    TrailingStopData: _trailing,
    PartialCloseData: _partial_close,
    LockProfitData: _lock_profit,
    MultiLevelTPData: _multi_level_tp,
}


def generate_trade_management_code(node: Node, code: GeneratedCode) -> None:
    gen = _GENERATORS.get(type(node.data))
    if gen is None:
        raise TypeError(f"Unsupported trade management type: {type(node.data)!r}")
    code.add_helper("SafePositionModify", SAFE_POSITION_MODIFY)
    log.debug("Trade management: %s '%s'", node.kind, node.id)
    gen(node, node.data, code)


def finalize_trade_management(code: GeneratedCode) -> None:
    """
    Fold every registered rule into one `ManageOpenPositions()` pass over
    the open positions, called once per tick.
    """
    if not code.management_calls:
        return

    body: List[str] = list(code.management_pre_loop)
    if body:
        body.append("")
    body += [
        "for(int i = PositionsTotal() - 1; i >= 0; i--)",
        "{",
        "   ulong ticket = PositionGetTicket(i);",
        "   if(!PositionSelectByTicket(ticket)) continue;",
        "   if(PositionGetInteger(POSITION_MAGIC) != InpMagicNumber) continue;",
        "   if(PositionGetString(POSITION_SYMBOL) != _Symbol) continue;",
        "",
        "   double openPrice = PositionGetDouble(POSITION_PRICE_OPEN);",
        "   double currentSL = PositionGetDouble(POSITION_SL);",
        "   double currentTP = PositionGetDouble(POSITION_TP);",
        "   double positionProfit = PositionGetDouble(POSITION_PROFIT);",
        "   double volume = PositionGetDouble(POSITION_VOLUME);",
        "   long posType = PositionGetInteger(POSITION_TYPE);",
        "",
        # refresh stop and volume between rules
        *indent(_reselect_between(code.management_calls)),
        "}",
    ]
    code.add_helper(
        "ManageOpenPositions",
        _function("Apply every trade management rule in one pass", "void ManageOpenPositions()", body),
    )
    code.on_tick.append("")
    code.on_tick.append("//--- Trade Management")
    code.on_tick.append("ManageOpenPositions();")
    log.debug("Trade management: %d rule(s) in one position loop", len(code.management_calls))


def _reselect_between(calls: List[str]) -> List[str]:
    lines: List[str] = []
    for k, call in enumerate(calls):
        if k > 0:
            lines += [
                "if(!PositionSelectByTicket(ticket)) continue;",
                "currentSL = PositionGetDouble(POSITION_SL);",
                "volume = PositionGetDouble(POSITION_VOLUME);",
            ]
        lines.append(call)
    return lines
