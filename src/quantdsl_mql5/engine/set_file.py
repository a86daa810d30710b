# src/quantdsl_mql5/engine/set_file.py

from __future__ import annotations

from typing import List

import numpy as np
import pandas as pd

from ..utils.logging import get_logger
from ..utils.mql import format_value
from .context import GeneratedCode, InputParam
from .templates import DEFAULT_INPUT_GROUP


log = get_logger(__name__)


SWEEP_LOW = 0.5
SWEEP_HIGH = 1.5
SWEEP_STEPS = 10

_NUMERIC_TYPES = ("int", "double")
_COLUMNS = ["name", "type", "value", "group", "optimizable", "start", "step", "stop"]


def _sweep(param: InputParam) -> tuple[float, float, float]:
    """
    Tester sweep range around the current value: value x 0.5 .. value x 1.5
    in ten steps. Integer inputs are rounded and keep a step of at least 1.
    """
    value = float(param.value)
    if value == 0:
        return 0.0, 0.0, 0.0
    lo, hi = sorted((value * SWEEP_LOW, value * SWEEP_HIGH))
    grid = np.linspace(lo, hi, SWEEP_STEPS + 1)
    step = float(np.diff(grid).mean())
    if param.type == "int":
        grid = np.round(grid)
        step = max(1.0, float(np.round(step)))
    else:
        grid = np.round(grid, 8)
        step = round(step, 8)
    return float(grid[0]), step, float(grid[-1])


def inputs_frame(code: GeneratedCode) -> pd.DataFrame:
    """
    One row per emitted input, in declaration order.

    start/step/stop are NaN for inputs the tester cannot sweep (strings,
    booleans, enums). Non-optimizable numeric inputs still get a range so
    the user can switch them on in the tester.
    """
    rows: List[dict] = []
    for param in code.inputs:
        sweepable = param.type in _NUMERIC_TYPES and not isinstance(param.value, bool)
        start, step, stop = _sweep(param) if sweepable else (np.nan, np.nan, np.nan)
        rows.append(
            {
                "name": param.name,
                "type": param.type,
                "value": param.value,
                "group": param.group or DEFAULT_INPUT_GROUP,
                "optimizable": bool(param.optimizable),
                "start": start,
                "step": step,
                "stop": stop,
            }
        )
    return pd.DataFrame(rows, columns=_COLUMNS)


def _set_value(value, type_: str) -> str:
    if type_ == "string":
        return str(value)
    return format_value(value)


def _set_number(value: float, type_: str) -> str:
    if type_ == "int":
        return str(int(value))
    return format_value(float(value))


def render_set_file(code: GeneratedCode) -> str:
    """
    Render the inputs as an MT5 strategy-tester .set file:
    `name=value||start||step||stop||Y|N`. Non-optimizable inputs carry the
    `N` flag; strings, booleans and enums are written as plain `name=value`.
    """
    frame = inputs_frame(code)
    lines = ["; generated by QuantDSL strategy compiler"]
    current_group = None
    for row in frame.itertuples(index=False):
        if row.group != current_group:
            lines.append(f"; {row.group}")
            current_group = row.group
        value = _set_value(row.value, row.type)
        if pd.isna(row.start):
            lines.append(f"{row.name}={value}")
            continue
        flag = "Y" if row.optimizable else "N"
        lines.append(
            f"{row.name}={value}||{_set_number(row.start, row.type)}||{_set_number(row.step, row.type)}"
            f"||{_set_number(row.stop, row.type)}||{flag}"
        )

    log.debug("Rendered .set file with %d inputs (%d optimizable)", len(frame), int(frame["optimizable"].sum()))
    return "\n".join(lines) + "\n"
