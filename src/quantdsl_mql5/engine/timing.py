# src/quantdsl_mql5/engine/timing.py

from __future__ import annotations

from typing import Dict, List, Tuple

from ..dsl.graph import Node
from ..dsl.nodes import (
    WEEKDAYS,
    AlwaysTiming,
    CustomTimesTiming,
    MaxSpreadFilter,
    TradingSessionTiming,
)
from ..utils.logging import get_logger
from ..utils.mql import format_value, hhmm
from .context import GeneratedCode


log = get_logger(__name__)


# (label, start hour, start minute, end hour, end minute), GMT
SESSION_TIMES: Dict[str, Tuple[str, int, int, int, int]] = {
    "LONDON": ("London Session", 8, 0, 17, 0),
    "NEW_YORK": ("New York Session", 13, 0, 22, 0),
    "TOKYO": ("Tokyo Session", 0, 0, 9, 0),
    "SYDNEY": ("Sydney Session", 22, 0, 7, 0),
    "LONDON_NY_OVERLAP": ("London/New York Overlap", 13, 0, 17, 0),
}

DAY_NUMBERS = {day: i for i, day in enumerate(WEEKDAYS)}
MON_TO_FRI = [1, 2, 3, 4, 5]


def _clock_lines(use_server_time: bool) -> List[str]:
    lines = ["MqlDateTime dt;"]
    if use_server_time:
        lines.append("TimeToStruct(TimeCurrent(), dt); // Using broker server time")
    else:
        lines.append("TimeToStruct(TimeGMT(), dt);")
    lines.append("int currentMinutes = dt.hour * 60 + dt.min;")
    return lines


def _active_days(days: Dict[str, bool]) -> List[int]:
    return sorted(DAY_NUMBERS[d] for d, on in days.items() if on and d in DAY_NUMBERS)


# ---------------------------------------------------------------------------
# Per-kind bodies. Each returns the statements that leave `var` set.
# ---------------------------------------------------------------------------


def _always_body(data: AlwaysTiming, var: str) -> List[str]:
    return ["// Timing: Always (no time restrictions)", f"bool {var} = true;"]


def _session_body(data: TradingSessionTiming, var: str) -> List[str]:
    label, sh, sm, eh, em = SESSION_TIMES[data.session]
    start, end = sh * 60 + sm, eh * 60 + em
    time_label = "Server Time" if data.use_server_time else "GMT"

    lines = [f"// Trading Session: {label} ({hhmm(sh, sm)} - {hhmm(eh, em)} {time_label})"]
    lines.append(f"bool {var} = false;")
    lines.extend(_clock_lines(data.use_server_time))

    if data.trading_days is not None:
        days = _active_days(data.trading_days)
    else:
        days = MON_TO_FRI if data.trade_monday_to_friday else list(range(7))

    guard = None
    if days == MON_TO_FRI:
        lines.append("// Only trade on weekdays (Mon-Fri)")
        guard = "if(dt.day_of_week >= 1 && dt.day_of_week <= 5)"
    elif not days:
        lines.append("// No trading days selected")
        return lines
    elif len(days) < 7:
        guard = "if(" + " || ".join(f"dt.day_of_week == {d}" for d in days) + ")"

    if end > start:
        check = f"   if(currentMinutes >= {start} && currentMinutes < {end}) {var} = true;"
    else:
        # overnight session, e.g. Sydney 22:00-07:00
        check = f"   if(currentMinutes >= {start} || currentMinutes < {end}) {var} = true;"

    if guard:
        lines.extend([guard, "{", check, "}"])
    else:
        lines.append(check)
    return lines


def _custom_times_body(data: CustomTimesTiming, var: str) -> List[str]:
    lines = ["// Custom Trading Times", f"bool {var} = false;"]
    lines.extend(_clock_lines(data.use_server_time))
    lines.append("")

    days = _active_days(data.days)
    if not days:
        lines.append("// No trading days selected")
        return lines

    if len(days) == 7:
        lines.append("// Trading all days")
        lines.append("bool isDayAllowed = true;")
    else:
        conds = " || ".join(f"dt.day_of_week == {d}" for d in days)
        lines.append(f"bool isDayAllowed = ({conds});")

    lines.extend(["", "if(isDayAllowed)", "{"])
    if not data.time_slots:
        lines.append(f"   {var} = true; // No time slots defined, trade all day")
    else:
        conds = []
        lines.append(f"   // Time slots ({'Server Time' if data.use_server_time else 'GMT'})")
        for i, slot in enumerate(data.time_slots):
            lines.append(
                f"   // Slot {i + 1}: {hhmm(slot.start_hour, slot.start_minute)}"
                f" - {hhmm(slot.end_hour, slot.end_minute)}"
            )
            start, end = slot.start_minutes, slot.end_minutes
            if end > start:
                conds.append(f"(currentMinutes >= {start} && currentMinutes < {end})")
            else:
                conds.append(f"(currentMinutes >= {start} || currentMinutes < {end})")
        lines.append(f"   if({' || '.join(conds)}) {var} = true;")
    lines.append("}")
    return lines


def _timing_body(node: Node, var: str) -> List[str]:
    data = node.data
    if isinstance(data, AlwaysTiming):
        return _always_body(data, var)
    if isinstance(data, TradingSessionTiming):
        return _session_body(data, var)
    if isinstance(data, CustomTimesTiming):
        return _custom_times_body(data, var)
    raise TypeError(f"Unsupported timing type: {type(data)!r}")


# ---------------------------------------------------------------------------
# Public generators
# ---------------------------------------------------------------------------


def generate_timing_code(timing_nodes: List[Node], code: GeneratedCode) -> None:
    """
    Emit the `isTradingTime` flag. It only gates new entries; exits and
    trade management keep running outside the trading window. Several
    timing nodes are OR'd: each one computes its own flag inside a private
    scope so their locals (dt, currentMinutes) cannot clash.
    """
    if not timing_nodes:
        return

    if len(timing_nodes) == 1:
        body = _timing_body(timing_nodes[0], "isTradingTime")
        code.on_tick.extend(body)
        code.on_tick.append("")
        return

    names = []
    for k, node in enumerate(timing_nodes):
        var = f"isTradingTime{k}"
        names.append(var)
        body = _timing_body(node, "_t")
        code.on_tick.append(f"bool {var} = false;")
        code.on_tick.append("{")
        code.on_tick.extend(f"   {line}" if line else "" for line in body)
        code.on_tick.append(f"   {var} = _t;")
        code.on_tick.append("}")
    code.on_tick.append(f"bool isTradingTime = {' || '.join(names)};")
    code.on_tick.append("")
    log.debug("Combined %d timing nodes with OR", len(timing_nodes))


def generate_spread_filter(filter_nodes: List[Node], code: GeneratedCode) -> None:
    """Emit `spreadOk`. A wide spread blocks new entries only."""
    spreads = [n.data.max_spread_pips for n in filter_nodes if isinstance(n.data, MaxSpreadFilter)]
    if not spreads:
        return
    # the tightest limit wins when several filters are present
    max_pips = min(spreads)
    code.on_tick.append("//--- Max Spread Filter")
    code.on_tick.append("int currentSpread = (int)SymbolInfoInteger(_Symbol, SYMBOL_SPREAD);")
    code.on_tick.append(f"bool spreadOk = (currentSpread <= {format_value(float(max_pips))} * _pipFactor);")
    code.on_tick.append("")
    code.entry_gates.append("spreadOk")
