# src/quantdsl_mql5/utils/mql.py

from __future__ import annotations

import re
from typing import Optional, Union


# ---------------------------------------------------------------------------
# Enum maps (document value -> MQL5 constant)
# ---------------------------------------------------------------------------

TIMEFRAME_MAP = {
    "M1": "PERIOD_M1",
    "M2": "PERIOD_M2",
    "M3": "PERIOD_M3",
    "M4": "PERIOD_M4",
    "M5": "PERIOD_M5",
    "M6": "PERIOD_M6",
    "M10": "PERIOD_M10",
    "M12": "PERIOD_M12",
    "M15": "PERIOD_M15",
    "M20": "PERIOD_M20",
    "M30": "PERIOD_M30",
    "H1": "PERIOD_H1",
    "H2": "PERIOD_H2",
    "H3": "PERIOD_H3",
    "H4": "PERIOD_H4",
    "H6": "PERIOD_H6",
    "H8": "PERIOD_H8",
    "H12": "PERIOD_H12",
    "D1": "PERIOD_D1",
    "W1": "PERIOD_W1",
    "MN1": "PERIOD_MN1",
}

# Restricted set exposed to the optimizer through the ENUM_AS_TIMEFRAMES input type
TIMEFRAME_ENUM_MAP = {
    "M1": "TF_M1",
    "M5": "TF_M5",
    "M15": "TF_M15",
    "M30": "TF_M30",
    "H1": "TF_H1",
    "H4": "TF_H4",
    "D1": "TF_D1",
    "W1": "TF_W1",
    "MN1": "TF_MN1",
}

MA_METHOD_MAP = {
    "SMA": "MODE_SMA",
    "EMA": "MODE_EMA",
    "SMMA": "MODE_SMMA",
    "LWMA": "MODE_LWMA",
}

APPLIED_PRICE_MAP = {
    "CLOSE": "PRICE_CLOSE",
    "OPEN": "PRICE_OPEN",
    "HIGH": "PRICE_HIGH",
    "LOW": "PRICE_LOW",
    "MEDIAN": "PRICE_MEDIAN",
    "TYPICAL": "PRICE_TYPICAL",
    "WEIGHTED": "PRICE_WEIGHTED",
}

STO_PRICE_MAP = {
    "LOWHIGH": "STO_LOWHIGH",
    "CLOSECLOSE": "STO_CLOSECLOSE",
}


def get_timeframe(tf: Optional[str]) -> str:
    if not tf:
        return "PERIOD_CURRENT"
    return TIMEFRAME_MAP.get(tf, "PERIOD_CURRENT")


def get_timeframe_enum(tf: Optional[str]) -> str:
    if not tf:
        return "TF_H1"
    return TIMEFRAME_ENUM_MAP.get(tf, "TF_H1")


# ---------------------------------------------------------------------------
# Text helpers
# ---------------------------------------------------------------------------

_NAME_RE = re.compile(r"[^A-Za-z0-9_]")


def sanitize_name(name: str) -> str:
    """
    Restrict a project name to identifier characters.

    Every disallowed character becomes an underscore, so
    "My Strategy" -> "My_Strategy".
    """
    return _NAME_RE.sub("_", name)


def sanitize_mql_string(text: str) -> str:
    """Make text safe inside a double-quoted MQL5 string literal."""
    text = text.replace("\\", "\\\\").replace('"', '\\"')
    return text.replace("\r", " ").replace("\n", " ")


ScalarValue = Union[int, float, bool, str]


def format_value(value: ScalarValue) -> str:
    """
    Render a Python scalar as MQL5 source.

    Integral floats drop their fractional part (2.0 -> "2"), booleans become
    true/false and strings are returned as-is (enum constants).
    """
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        if value.is_integer():
            return str(int(value))
        return repr(value)
    return str(value)


def hhmm(hour: int, minute: int) -> str:
    return f"{hour:02d}:{minute:02d}"
