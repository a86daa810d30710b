# src/quantdsl_mql5/engine/indicators.py

from __future__ import annotations

from typing import List

from ..dsl.graph import Node
from ..dsl.nodes import (
    ADXData,
    ATRData,
    BollingerBandsData,
    CCIData,
    MACDData,
    MovingAverageData,
    RSIData,
    StochasticData,
)
from ..utils.logging import get_logger
from ..utils.mql import APPLIED_PRICE_MAP, MA_METHOD_MAP, STO_PRICE_MAP, get_timeframe
from .context import GeneratedCode, node_input


log = get_logger(__name__)


# Every buffer keeps the last three values: [0] forming bar, [1] last closed
# bar, [2] the one before (needed for crossovers on confirmed bars).
BARS_TO_COPY = 3


def _buffers(code: GeneratedCode, prefix: str, names: List[str]) -> None:
    """Declare `{prefix}{name}` buffers, set them as series and refresh each tick."""
    code.global_variables.append(f"int {prefix}Handle;")
    for name in names:
        code.global_variables.append(f"double {prefix}{name}[];")
    for name in names:
        code.on_init.append(f"ArraySetAsSeries({prefix}{name}, true);")
    for buffer_index, name in enumerate(names):
        code.on_tick.append(f"CopyBuffer({prefix}Handle, {buffer_index}, 0, {BARS_TO_COPY}, {prefix}{name});")


def _handle_check(code: GeneratedCode, prefix: str, what: str) -> None:
    code.on_init.append(f"if({prefix}Handle == INVALID_HANDLE)")
    code.on_init.append("{")
    code.on_init.append(f'   Print("Failed to create {what} handle");')
    code.on_init.append("   return(INIT_FAILED);")
    code.on_init.append("}")
    code.on_deinit.append(f"IndicatorRelease({prefix}Handle);")


def _moving_average(node: Node, data: MovingAverageData, i: int, code: GeneratedCode) -> None:
    p = f"ind{i}"
    code.add_input(node_input(node, "period", f"InpMA{i}Period", "int", data.period, f"MA {i + 1} Period"))
    code.add_input(node_input(node, "shift", f"InpMA{i}Shift", "int", data.shift, f"MA {i + 1} Shift"))
    code.on_init.append(
        f"{p}Handle = iMA(_Symbol, {get_timeframe(data.timeframe)}, InpMA{i}Period, InpMA{i}Shift, "
        f"{MA_METHOD_MAP[data.method]}, {APPLIED_PRICE_MAP[data.applied_price]});"
    )
    _handle_check(code, p, f"MA {i + 1}")
    _buffers(code, p, ["Buffer"])
    code.note_period(data.period + data.shift)


def _rsi(node: Node, data: RSIData, i: int, code: GeneratedCode) -> None:
    p = f"ind{i}"
    code.add_input(node_input(node, "period", f"InpRSI{i}Period", "int", data.period, f"RSI {i + 1} Period"))
    code.add_input(
        node_input(node, "overboughtLevel", f"InpRSI{i}Overbought", "double", data.overbought_level, f"RSI {i + 1} Overbought")
    )
    code.add_input(
        node_input(node, "oversoldLevel", f"InpRSI{i}Oversold", "double", data.oversold_level, f"RSI {i + 1} Oversold")
    )
    code.on_init.append(
        f"{p}Handle = iRSI(_Symbol, {get_timeframe(data.timeframe)}, InpRSI{i}Period, "
        f"{APPLIED_PRICE_MAP[data.applied_price]});"
    )
    _handle_check(code, p, f"RSI {i + 1}")
    _buffers(code, p, ["Buffer"])
    code.note_period(data.period)


def _macd(node: Node, data: MACDData, i: int, code: GeneratedCode) -> None:
    p = f"ind{i}"
    code.add_input(node_input(node, "fastPeriod", f"InpMACD{i}Fast", "int", data.fast_period, f"MACD {i + 1} Fast Period"))
    code.add_input(node_input(node, "slowPeriod", f"InpMACD{i}Slow", "int", data.slow_period, f"MACD {i + 1} Slow Period"))
    code.add_input(
        node_input(node, "signalPeriod", f"InpMACD{i}Signal", "int", data.signal_period, f"MACD {i + 1} Signal Period")
    )
    code.on_init.append(
        f"{p}Handle = iMACD(_Symbol, {get_timeframe(data.timeframe)}, InpMACD{i}Fast, InpMACD{i}Slow, "
        f"InpMACD{i}Signal, {APPLIED_PRICE_MAP[data.applied_price]});"
    )
    _handle_check(code, p, f"MACD {i + 1}")
    _buffers(code, p, ["MainBuffer", "SignalBuffer"])
    code.note_period(data.slow_period + data.signal_period)


def _bollinger(node: Node, data: BollingerBandsData, i: int, code: GeneratedCode) -> None:
    p = f"ind{i}"
    code.add_input(node_input(node, "period", f"InpBB{i}Period", "int", data.period, f"BB {i + 1} Period"))
    code.add_input(node_input(node, "deviation", f"InpBB{i}Deviation", "double", data.deviation, f"BB {i + 1} Deviation"))
    code.add_input(node_input(node, "shift", f"InpBB{i}Shift", "int", data.shift, f"BB {i + 1} Shift"))
    code.on_init.append(
        f"{p}Handle = iBands(_Symbol, {get_timeframe(data.timeframe)}, InpBB{i}Period, InpBB{i}Shift, "
        f"InpBB{i}Deviation, {APPLIED_PRICE_MAP[data.applied_price]});"
    )
    _handle_check(code, p, f"Bollinger Bands {i + 1}")
    # iBands buffer order: 0 base line, 1 upper band, 2 lower band
    _buffers(code, p, ["MiddleBuffer", "UpperBuffer", "LowerBuffer"])
    code.note_period(data.period + data.shift)


def _atr(node: Node, data: ATRData, i: int, code: GeneratedCode) -> None:
    p = f"ind{i}"
    code.add_input(node_input(node, "period", f"InpATR{i}Period", "int", data.period, f"ATR {i + 1} Period"))
    code.on_init.append(f"{p}Handle = iATR(_Symbol, {get_timeframe(data.timeframe)}, InpATR{i}Period);")
    _handle_check(code, p, f"ATR {i + 1}")
    _buffers(code, p, ["Buffer"])
    code.note_period(data.period)


def _adx(node: Node, data: ADXData, i: int, code: GeneratedCode) -> None:
    p = f"ind{i}"
    code.add_input(node_input(node, "period", f"InpADX{i}Period", "int", data.period, f"ADX {i + 1} Period"))
    code.add_input(
        node_input(node, "trendLevel", f"InpADX{i}TrendLevel", "double", data.trend_level, f"ADX {i + 1} Trend Level")
    )
    code.on_init.append(f"{p}Handle = iADX(_Symbol, {get_timeframe(data.timeframe)}, InpADX{i}Period);")
    _handle_check(code, p, f"ADX {i + 1}")
    _buffers(code, p, ["MainBuffer", "PlusDIBuffer", "MinusDIBuffer"])
    code.note_period(data.period * 2)


def _stochastic(node: Node, data: StochasticData, i: int, code: GeneratedCode) -> None:
    p = f"ind{i}"
    code.add_input(node_input(node, "kPeriod", f"InpStoch{i}K", "int", data.k_period, f"Stochastic {i + 1} %K Period"))
    code.add_input(node_input(node, "dPeriod", f"InpStoch{i}D", "int", data.d_period, f"Stochastic {i + 1} %D Period"))
    code.add_input(node_input(node, "slowing", f"InpStoch{i}Slowing", "int", data.slowing, f"Stochastic {i + 1} Slowing"))
    code.add_input(
        node_input(
            node, "overboughtLevel", f"InpStoch{i}Overbought", "double", data.overbought_level, f"Stochastic {i + 1} Overbought"
        )
    )
    code.add_input(
        node_input(
            node, "oversoldLevel", f"InpStoch{i}Oversold", "double", data.oversold_level, f"Stochastic {i + 1} Oversold"
        )
    )
    code.on_init.append(
        f"{p}Handle = iStochastic(_Symbol, {get_timeframe(data.timeframe)}, InpStoch{i}K, InpStoch{i}D, "
        f"InpStoch{i}Slowing, {MA_METHOD_MAP[data.ma_method]}, {STO_PRICE_MAP[data.price_field]});"
    )
    _handle_check(code, p, f"Stochastic {i + 1}")
    _buffers(code, p, ["MainBuffer", "SignalBuffer"])
    code.note_period(data.k_period + data.d_period + data.slowing)


def _cci(node: Node, data: CCIData, i: int, code: GeneratedCode) -> None:
    p = f"ind{i}"
    code.add_input(node_input(node, "period", f"InpCCI{i}Period", "int", data.period, f"CCI {i + 1} Period"))
    code.add_input(
        node_input(node, "overboughtLevel", f"InpCCI{i}Overbought", "double", data.overbought_level, f"CCI {i + 1} Overbought")
    )
    code.add_input(
        node_input(node, "oversoldLevel", f"InpCCI{i}Oversold", "double", data.oversold_level, f"CCI {i + 1} Oversold")
    )
    code.on_init.append(
        f"{p}Handle = iCCI(_Symbol, {get_timeframe(data.timeframe)}, InpCCI{i}Period, "
        f"{APPLIED_PRICE_MAP[data.applied_price]});"
    )
    _handle_check(code, p, f"CCI {i + 1}")
    _buffers(code, p, ["Buffer"])
    code.note_period(data.period)


_GENERATORS = {
    MovingAverageData: _moving_average,
    RSIData: _rsi,
    MACDData: _macd,
    BollingerBandsData: _bollinger,
    ATRData: _atr,
    ADXData: _adx,
    StochasticData: _stochastic,
    CCIData: _cci,
}


def generate_indicator_code(node: Node, index: int, code: GeneratedCode) -> None:
    """
    Emit inputs, handle, buffers and per-tick refresh for the index-th live
    indicator. All identifiers are prefixed `ind{index}`.
    """
    gen = _GENERATORS.get(type(node.data))
    if gen is None:
        raise TypeError(f"Unsupported indicator type: {type(node.data)!r}")
    log.debug("Indicator %d: %s '%s'", index, node.kind, node.id)
    gen(node, node.data, index, code)
