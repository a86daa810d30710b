# src/quantdsl_mql5/engine/templates.py

from __future__ import annotations

from typing import Iterable, List

from ..utils.mql import format_value, sanitize_mql_string
from .context import CompileContext, CompileOptions, InputParam


DEFAULT_INPUT_GROUP = "Strategy Parameters"
INDENT = "   "


def rule(title: str = "") -> str:
    """A `//+---+` banner, optionally with a title line."""
    bar = "//+" + "-" * 66 + "+"
    if not title:
        return bar
    return "\n".join([bar, f"//| {title:<65}|", bar])


def indent(lines: Iterable[str], level: int = 1) -> List[str]:
    pad = INDENT * level
    return [f"{pad}{line}" if line else "" for line in lines]


# ---------------------------------------------------------------------------
# Fixed file sections
# ---------------------------------------------------------------------------


def file_header(ctx: CompileContext) -> str:
    name = f"{ctx.project_name}.mq5"
    return "\n".join(
        [
            rule(),
            f"//| {name:<65}|",
            f"//| {'Generated by QuantDSL strategy compiler':<65}|",
            rule(),
            f'#property copyright "{sanitize_mql_string(ctx.options.copyright)}"',
            '#property version   "1.00"',
            f'#property description "{sanitize_mql_string(ctx.settings.comment)}"',
            "",
        ]
    )


def trade_includes() -> str:
    return "\n".join(["#include <Trade\\Trade.mqh>", "", "CTrade trade;", ""])


TIMEFRAME_ENUM = """enum ENUM_AS_TIMEFRAMES
{
   TF_M1 = PERIOD_M1,   // M1
   TF_M5 = PERIOD_M5,   // M5
   TF_M15 = PERIOD_M15, // M15
   TF_M30 = PERIOD_M30, // M30
   TF_H1 = PERIOD_H1,   // H1
   TF_H4 = PERIOD_H4,   // H4
   TF_D1 = PERIOD_D1,   // D1
   TF_W1 = PERIOD_W1,   // W1
   TF_MN1 = PERIOD_MN1  // MN1
};
"""


def _input_value(param: InputParam) -> str:
    if param.type == "string":
        return f'"{sanitize_mql_string(str(param.value))}"'
    return format_value(param.value)


def inputs_section(inputs: List[InputParam]) -> str:
    """
    Inputs in declaration order. A new `input group` line is written each
    time the group changes; non-optimizable parameters become `sinput`.
    """
    lines: List[str] = []
    if any(p.type == "ENUM_AS_TIMEFRAMES" for p in inputs):
        lines.append(TIMEFRAME_ENUM)

    lines.append(rule("Input Parameters"))
    current_group = None
    for param in inputs:
        group = param.group or DEFAULT_INPUT_GROUP
        if group != current_group:
            if current_group is not None:
                lines.append("")
            lines.append(f'input group "{group}"')
            current_group = group
        keyword = "input" if param.optimizable else "sinput"
        lines.append(f"{keyword} {param.type} {param.name} = {_input_value(param)}; // {param.comment}")
    lines.append("")
    return "\n".join(lines)


def global_variables_section(global_variables: List[str]) -> str:
    lines = [rule("Global Variables"), "int _pipFactor = 1; // 10 on 3/5-digit symbols"]
    lines.extend(global_variables)
    lines.append("")
    return "\n".join(lines)


def on_init(init_lines: List[str]) -> str:
    body = [
        "trade.SetExpertMagicNumber(InpMagicNumber);",
        "trade.SetDeviationInPoints(InpMaxSlippage);",
        "_pipFactor = (_Digits == 3 || _Digits == 5) ? 10 : 1;",
    ]
    body.extend(init_lines)
    body.append("")
    body.append("return(INIT_SUCCEEDED);")
    return "\n".join(
        [rule("Expert initialization function"), "int OnInit()", "{", *indent(body), "}", ""]
    )


def on_deinit(deinit_lines: List[str]) -> str:
    return "\n".join(
        [rule("Expert deinitialization function"), "void OnDeinit(const int reason)", "{", *indent(deinit_lines), "}", ""]
    )


def on_tick(tick_lines: List[str], warmup_bars: int) -> str:
    body = [
        "datetime currentBarTime = iTime(_Symbol, PERIOD_CURRENT, 0);",
        "static datetime lastBarTime = 0;",
        "bool isNewBar = (currentBarTime != lastBarTime);",
        "lastBarTime = currentBarTime;",
        "",
        "//--- Not enough history yet",
        f"if(Bars(_Symbol, PERIOD_CURRENT) < {warmup_bars}) return;",
        "",
        "int positionsCount = CountPositions();",
        "",
    ]
    body.extend(tick_lines)
    return "\n".join([rule("Expert tick function"), "void OnTick()", "{", *indent(body), "}", ""])


# ---------------------------------------------------------------------------
# Standard helper functions
# ---------------------------------------------------------------------------


COUNT_POSITIONS = """int CountPositions()
{
   int count = 0;
   for(int i = PositionsTotal() - 1; i >= 0; i--)
   {
      ulong ticket = PositionGetTicket(i);
      if(ticket == 0) continue;
      if(PositionGetInteger(POSITION_MAGIC) != InpMagicNumber) continue;
      if(PositionGetString(POSITION_SYMBOL) != _Symbol) continue;
      count++;
   }
   return(count);
}"""

COUNT_POSITIONS_BY_TYPE = """int CountPositionsByType(ENUM_POSITION_TYPE type)
{
   int count = 0;
   for(int i = PositionsTotal() - 1; i >= 0; i--)
   {
      ulong ticket = PositionGetTicket(i);
      if(ticket == 0) continue;
      if(PositionGetInteger(POSITION_MAGIC) != InpMagicNumber) continue;
      if(PositionGetString(POSITION_SYMBOL) != _Symbol) continue;
      if((ENUM_POSITION_TYPE)PositionGetInteger(POSITION_TYPE) == type) count++;
   }
   return(count);
}"""

DOUBLE_COMPARE = """bool DoubleGT(double a, double b) { return(a - b > 1e-10); }
bool DoubleLT(double a, double b) { return(b - a > 1e-10); }
bool DoubleGE(double a, double b) { return(a - b > -1e-10); }
bool DoubleLE(double a, double b) { return(b - a > -1e-10); }"""

NORMALIZE_LOT = """double NormalizeLot(double lot)
{
   double minLot = SymbolInfoDouble(_Symbol, SYMBOL_VOLUME_MIN);
   double maxLot = SymbolInfoDouble(_Symbol, SYMBOL_VOLUME_MAX);
   double step = SymbolInfoDouble(_Symbol, SYMBOL_VOLUME_STEP);
   int digits = 2;
   if(step > 0)
   {
      lot = MathFloor(lot / step) * step;
      digits = (int)MathMax(0, MathCeil(-MathLog10(step) - 1e-9));
   }
   lot = MathMax(minLot, MathMin(maxLot, lot));
   return(NormalizeDouble(lot, digits));
}"""

CALCULATE_LOT_SIZE = """double CalculateLotSize(double riskPercent, double slPoints)
{
   double minLot = SymbolInfoDouble(_Symbol, SYMBOL_VOLUME_MIN);
   if(slPoints <= 0) return(minLot);

   double riskAmount = AccountInfoDouble(ACCOUNT_BALANCE) * riskPercent / 100.0;
   double tickValue = SymbolInfoDouble(_Symbol, SYMBOL_TRADE_TICK_VALUE);
   double tickSize = SymbolInfoDouble(_Symbol, SYMBOL_TRADE_TICK_SIZE);
   if(tickValue <= 0 || tickSize <= 0) return(minLot);

   double valuePerPoint = tickValue * (_Point / tickSize);
   return(NormalizeLot(riskAmount / (slPoints * valuePerPoint)));
}"""

DELETE_PENDING_ORDERS = """void DeletePendingOrders()
{
   for(int i = OrdersTotal() - 1; i >= 0; i--)
   {
      ulong ticket = OrderGetTicket(i);
      if(ticket == 0) continue;
      if(OrderGetInteger(ORDER_MAGIC) != InpMagicNumber) continue;
      if(OrderGetString(ORDER_SYMBOL) != _Symbol) continue;
      trade.OrderDelete(ticket);
   }
}"""


def close_positions_helper(side: str) -> str:
    """`CloseBuyPositions()` / `CloseSellPositions()`; side is "Buy" or "Sell"."""
    position_type = "POSITION_TYPE_BUY" if side == "Buy" else "POSITION_TYPE_SELL"
    return f"""void Close{side}Positions()
{{
   for(int i = PositionsTotal() - 1; i >= 0; i--)
   {{
      ulong ticket = PositionGetTicket(i);
      if(ticket == 0) continue;
      if(PositionGetInteger(POSITION_MAGIC) != InpMagicNumber) continue;
      if(PositionGetString(POSITION_SYMBOL) != _Symbol) continue;
      if(PositionGetInteger(POSITION_TYPE) != {position_type}) continue;
      if(!trade.PositionClose(ticket))
         Print("Close{side}Positions: failed to close #", ticket, ", retcode ", trade.ResultRetcode());
   }}
}}"""


def open_order_helper(side: str, options: CompileOptions) -> str:
    """
    `OpenBuy()` / `OpenSell()` with a bounded retry on requote and
    price-off rejections. Any other rejection gives up immediately.
    """
    if side == "Buy":
        price, sl_sign, tp_sign, call = "SYMBOL_ASK", "-", "+", "trade.Buy"
    else:
        price, sl_sign, tp_sign, call = "SYMBOL_BID", "+", "-", "trade.Sell"
    return f"""bool Open{side}(double lot, double slPoints, double tpPoints)
{{
   int attempt = 0;
   while(attempt < {options.max_order_retries})
   {{
      attempt++;
      double price = SymbolInfoDouble(_Symbol, {price});
      double sl = (slPoints > 0) ? NormalizeDouble(price {sl_sign} slPoints * _Point, _Digits) : 0;
      double tp = (tpPoints > 0) ? NormalizeDouble(price {tp_sign} tpPoints * _Point, _Digits) : 0;

      if({call}(lot, _Symbol, price, sl, tp, InpTradeComment))
      {{
         uint done = trade.ResultRetcode();
         if(done == TRADE_RETCODE_DONE || done == TRADE_RETCODE_PLACED)
            return(true);
      }}

      uint retcode = trade.ResultRetcode();
      if(retcode != TRADE_RETCODE_REQUOTE && retcode != TRADE_RETCODE_PRICE_OFF)
         break;
      Sleep({options.retry_delay_ms});
   }}
   Print("Open{side} failed after ", attempt, " attempt(s), retcode ", trade.ResultRetcode());
   return(false);
}}"""


PENDING_EXPIRY = """datetime GetPendingExpiry()
{
   if(InpPendingExpiryHours <= 0) return(0);
   return(TimeCurrent() + InpPendingExpiryHours * 3600);
}"""


def pending_order_helper(side: str, order_type: str) -> str:
    """
    `PlaceBuyStop()`, `PlaceSellLimit()`, ... The entry sits `offsetPips`
    away from the current price, never closer than the broker's stops level.
    """
    buy = side == "Buy"
    # stop orders sit beyond the price in the trade direction, limits behind it
    above = buy == (order_type == "STOP")
    price = "SYMBOL_ASK" if buy else "SYMBOL_BID"
    away = "+" if above else "-"
    sl_sign, tp_sign = ("-", "+") if buy else ("+", "-")
    kind = "Stop" if order_type == "STOP" else "Limit"
    name = f"Place{side}{kind}"
    return f"""bool {name}(double lot, double slPoints, double tpPoints, double offsetPips)
{{
   double price = SymbolInfoDouble(_Symbol, {price});
   double offset = offsetPips * _pipFactor * _Point;
   double stopsLevel = SymbolInfoInteger(_Symbol, SYMBOL_TRADE_STOPS_LEVEL) * _Point;
   if(stopsLevel > 0 && offset < stopsLevel) offset = stopsLevel;
   double entry = NormalizeDouble(price {away} offset, _Digits);
   double sl = (slPoints > 0) ? NormalizeDouble(entry {sl_sign} slPoints * _Point, _Digits) : 0;
   double tp = (tpPoints > 0) ? NormalizeDouble(entry {tp_sign} tpPoints * _Point, _Digits) : 0;
   datetime expiry = GetPendingExpiry();
   ENUM_ORDER_TYPE_TIME timeType = (expiry > 0) ? ORDER_TIME_SPECIFIED : ORDER_TIME_GTC;

   if(trade.{side}{kind}(lot, entry, _Symbol, sl, tp, timeType, expiry, InpTradeComment))
      return(true);
   Print("{name} failed, retcode ", trade.ResultRetcode());
   return(false);
}}"""


def helper_functions_section(helpers: List[str]) -> str:
    """Standard helpers first, then the ones the generators registered."""
    blocks = [COUNT_POSITIONS, DOUBLE_COMPARE]
    blocks.extend(helpers)
    return "\n".join([rule("Helper functions"), "\n\n".join(blocks), ""])
