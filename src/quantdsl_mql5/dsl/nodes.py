# src/quantdsl_mql5/dsl/nodes.py

from __future__ import annotations

from typing import Any, ClassVar, Dict, List, Literal, Mapping, Optional, Tuple, Type

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator
from pydantic.alias_generators import to_camel

from ..utils.errors import GraphDocumentError


# Node data arrives as camelCase JSON (the builder's wire format) and is
# exposed as snake_case attributes. Unknown keys (UI state, labels from
# newer builders) are kept but ignored by the generators.


MAMethod = Literal["SMA", "EMA", "SMMA", "LWMA"]
AppliedPrice = Literal["CLOSE", "OPEN", "HIGH", "LOW", "MEDIAN", "TYPICAL", "WEIGHTED"]
TradeDirection = Literal["BUY", "SELL", "BOTH"]
SignalMode = Literal["every_tick", "candle_close"]


class NodeData(BaseModel):
    """
    Base for every node payload.

    `optimizable_fields` lists the wire names of the fields the user wants
    exposed to the optimizer. When it is missing every field counts as
    optimizable.
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
    )

    CATEGORY: ClassVar[str] = ""
    KIND: ClassVar[str] = ""

    label: str = ""
    category: Optional[str] = None
    optimizable_fields: Optional[List[str]] = None

    def is_optimizable(self, field: str) -> bool:
        if self.optimizable_fields is None:
            return True
        return field in self.optimizable_fields


# ---------------------------------------------------------------------------
# Timing
# ---------------------------------------------------------------------------


class TimeSlot(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    start_hour: int = Field(0, ge=0, le=23)
    start_minute: int = Field(0, ge=0, le=59)
    end_hour: int = Field(0, ge=0, le=23)
    end_minute: int = Field(0, ge=0, le=59)

    @property
    def start_minutes(self) -> int:
        return self.start_hour * 60 + self.start_minute

    @property
    def end_minutes(self) -> int:
        return self.end_hour * 60 + self.end_minute


WEEKDAYS = ("sunday", "monday", "tuesday", "wednesday", "thursday", "friday", "saturday")


def _default_days() -> Dict[str, bool]:
    return {day: day not in ("saturday", "sunday") for day in WEEKDAYS}


class TimingData(NodeData):
    CATEGORY: ClassVar[str] = "timing"

    use_server_time: bool = False


class AlwaysTiming(TimingData):
    KIND: ClassVar[str] = "always"


class TradingSessionTiming(TimingData):
    """
    One of the named FX sessions. `trading_days`, when present, overrides
    the simple Monday-to-Friday switch.
    """

    KIND: ClassVar[str] = "trading-session"

    session: Literal["LONDON", "NEW_YORK", "TOKYO", "SYDNEY", "LONDON_NY_OVERLAP"] = "LONDON"
    trade_monday_to_friday: bool = True
    trading_days: Optional[Dict[str, bool]] = None


class CustomTimesTiming(TimingData):
    KIND: ClassVar[str] = "custom-times"

    days: Dict[str, bool] = Field(default_factory=_default_days)
    time_slots: List[TimeSlot] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Filters
# ---------------------------------------------------------------------------


class FilterData(NodeData):
    CATEGORY: ClassVar[str] = "filter"


class MaxSpreadFilter(FilterData):
    KIND: ClassVar[str] = "max-spread"

    max_spread_pips: float = Field(30.0, ge=0)


# ---------------------------------------------------------------------------
# Indicators
# ---------------------------------------------------------------------------


class IndicatorData(NodeData):
    """
    Shared indicator fields.

    The `entry_strategy_*`, `role` and `filter_role` markers are only set on
    nodes synthesized from composite entry strategies; they tell the entry
    logic generator to treat the node as part of a group (e.g. the two legs
    of an EMA crossover) or as a filter instead of a standalone signal.
    """

    CATEGORY: ClassVar[str] = "indicator"

    timeframe: Optional[str] = None
    signal_mode: SignalMode = "every_tick"

    entry_strategy_type: Optional[str] = None
    entry_strategy_id: Optional[str] = None
    role: Optional[str] = None
    filter_role: Optional[Literal["htf-trend", "rsi-confirm", "adx-trend-strength"]] = None
    min_ema_separation: float = 0.0
    require_ema_buffer: bool = False
    pullback_max_distance: float = 2.0

    @property
    def bar_shift(self) -> int:
        return 1 if self.signal_mode == "candle_close" else 0


class MovingAverageData(IndicatorData):
    KIND: ClassVar[str] = "moving-average"

    period: int = Field(20, ge=1, le=1000)
    method: MAMethod = "SMA"
    applied_price: AppliedPrice = "CLOSE"
    shift: int = Field(0, ge=0, le=1000)


class _OscillatorLevels(IndicatorData):
    overbought_level: float = 70.0
    oversold_level: float = 30.0

    @model_validator(mode="after")
    def _check_levels(self) -> "_OscillatorLevels":
        if self.overbought_level <= self.oversold_level:
            raise ValueError("overboughtLevel must be greater than oversoldLevel")
        return self


class RSIData(_OscillatorLevels):
    KIND: ClassVar[str] = "rsi"

    period: int = Field(14, ge=1, le=1000)
    applied_price: AppliedPrice = "CLOSE"


class MACDData(IndicatorData):
    KIND: ClassVar[str] = "macd"

    fast_period: int = Field(12, ge=1, le=1000)
    slow_period: int = Field(26, ge=1, le=1000)
    signal_period: int = Field(9, ge=1, le=1000)
    applied_price: AppliedPrice = "CLOSE"

    @model_validator(mode="after")
    def _check_periods(self) -> "MACDData":
        if self.fast_period >= self.slow_period:
            raise ValueError("fastPeriod must be smaller than slowPeriod")
        return self


class BollingerBandsData(IndicatorData):
    KIND: ClassVar[str] = "bollinger-bands"

    period: int = Field(20, ge=1, le=1000)
    deviation: float = Field(2.0, ge=0.1, le=10)
    applied_price: AppliedPrice = "CLOSE"
    shift: int = Field(0, ge=0, le=1000)


class ATRData(IndicatorData):
    KIND: ClassVar[str] = "atr"

    period: int = Field(14, ge=1, le=1000)


class ADXData(IndicatorData):
    KIND: ClassVar[str] = "adx"

    period: int = Field(14, ge=1, le=1000)
    trend_level: float = Field(25.0, ge=0, le=100)


class StochasticData(_OscillatorLevels):
    KIND: ClassVar[str] = "stochastic"

    k_period: int = Field(5, ge=1, le=1000)
    d_period: int = Field(3, ge=1, le=1000)
    slowing: int = Field(3, ge=1, le=1000)
    ma_method: MAMethod = "SMA"
    price_field: Literal["LOWHIGH", "CLOSECLOSE"] = "LOWHIGH"
    overbought_level: float = 80.0
    oversold_level: float = 20.0


class CCIData(_OscillatorLevels):
    KIND: ClassVar[str] = "cci"

    period: int = Field(14, ge=1, le=1000)
    applied_price: AppliedPrice = "TYPICAL"
    overbought_level: float = 100.0
    oversold_level: float = -100.0


# ---------------------------------------------------------------------------
# Price action
# ---------------------------------------------------------------------------


class PriceActionData(NodeData):
    CATEGORY: ClassVar[str] = "priceaction"

    timeframe: Optional[str] = None


class RangeBreakoutData(PriceActionData):
    KIND: ClassVar[str] = "range-breakout"

    range_type: Literal["PREVIOUS_CANDLES", "SESSION", "TIME_WINDOW"] = "PREVIOUS_CANDLES"
    lookback_candles: int = Field(20, ge=1, le=10000)
    range_session: Literal["ASIAN", "LONDON", "NEW_YORK", "CUSTOM"] = "ASIAN"
    session_start_hour: int = Field(0, ge=0, le=23)
    session_start_minute: int = Field(0, ge=0, le=59)
    session_end_hour: int = Field(8, ge=0, le=23)
    session_end_minute: int = Field(0, ge=0, le=59)
    breakout_direction: Literal["BUY_ON_HIGH", "SELL_ON_LOW", "BOTH"] = "BOTH"
    entry_mode: Literal["IMMEDIATE", "ON_CLOSE", "AFTER_RETEST"] = "ON_CLOSE"
    buffer_pips: float = Field(2.0, ge=0, le=1000)
    min_range_pips: float = Field(0.0, ge=0, le=10000)
    max_range_pips: float = Field(0.0, ge=0, le=10000)
    use_server_time: bool = True
    # drop the other pending order once one side is filled
    cancel_opposite: bool = True


CandlePattern = Literal[
    "ENGULFING_BULLISH",
    "ENGULFING_BEARISH",
    "DOJI",
    "HAMMER",
    "SHOOTING_STAR",
    "MORNING_STAR",
    "EVENING_STAR",
    "THREE_WHITE_SOLDIERS",
    "THREE_BLACK_CROWS",
]

THREE_CANDLE_PATTERNS = frozenset(
    {"MORNING_STAR", "EVENING_STAR", "THREE_WHITE_SOLDIERS", "THREE_BLACK_CROWS"}
)


class CandlestickPatternData(PriceActionData):
    KIND: ClassVar[str] = "candlestick-pattern"

    patterns: List[CandlePattern] = Field(
        default_factory=lambda: ["ENGULFING_BULLISH", "ENGULFING_BEARISH"]
    )
    min_body_size: float = Field(1.0, ge=0, le=1000)


class SupportResistanceData(PriceActionData):
    KIND: ClassVar[str] = "support-resistance"

    lookback_period: int = Field(100, ge=3, le=10000)
    touch_count: int = Field(2, ge=1, le=100)
    zone_size: float = Field(10.0, ge=0, le=1000)


# ---------------------------------------------------------------------------
# Trading
# ---------------------------------------------------------------------------


class TradingData(NodeData):
    CATEGORY: ClassVar[str] = "trading"


class _PositionSizing(TradingData):
    method: Literal["FIXED_LOT", "RISK_PERCENT"] = "FIXED_LOT"
    fixed_lot: float = Field(0.1, ge=0.01, le=1000)
    risk_percent: float = Field(1.0, ge=0.01, le=100)
    min_lot: float = Field(0.01, ge=0.01, le=1000)
    max_lot: float = Field(10.0, ge=0.01, le=1000)
    order_type: Literal["MARKET", "STOP", "LIMIT"] = "MARKET"
    pending_offset: float = Field(10.0, ge=0, le=10000)

    @property
    def is_pending(self) -> bool:
        return self.order_type != "MARKET"


class PlaceBuyData(_PositionSizing):
    KIND: ClassVar[str] = "place-buy"


class PlaceSellData(_PositionSizing):
    KIND: ClassVar[str] = "place-sell"


class StopLossData(TradingData):
    KIND: ClassVar[str] = "stop-loss"

    method: Literal["FIXED_PIPS", "ATR_BASED", "PERCENT", "INDICATOR", "RANGE_OPPOSITE"] = "FIXED_PIPS"
    fixed_pips: float = Field(50.0, ge=1, le=10000)
    sl_percent: float = Field(1.0, gt=0, le=100)
    atr_multiplier: float = Field(1.5, ge=0.1, le=100)
    atr_period: int = Field(14, ge=1, le=1000)
    atr_timeframe: Optional[str] = None
    indicator_node_id: Optional[str] = None


class TakeProfitData(TradingData):
    KIND: ClassVar[str] = "take-profit"

    method: Literal["FIXED_PIPS", "RISK_REWARD", "ATR_BASED"] = "FIXED_PIPS"
    fixed_pips: float = Field(100.0, ge=1, le=10000)
    risk_reward_ratio: float = Field(2.0, ge=0.1, le=100)
    atr_multiplier: float = Field(3.0, ge=0.1, le=100)
    atr_period: int = Field(14, ge=1, le=1000)


class CloseConditionData(TradingData):
    KIND: ClassVar[str] = "close-condition"

    close_direction: TradeDirection = "BOTH"


class TimeExitData(TradingData):
    KIND: ClassVar[str] = "time-exit"

    exit_mode: Literal["BARS", "CLOSE_AT_TIME"] = "BARS"
    exit_after_bars: int = Field(10, ge=1, le=100000)
    exit_timeframe: Optional[str] = None
    close_hour: int = Field(21, ge=0, le=23)
    close_minute: int = Field(0, ge=0, le=59)


# ---------------------------------------------------------------------------
# Trade management
# ---------------------------------------------------------------------------


class ManagementData(NodeData):
    CATEGORY: ClassVar[str] = "trademanagement"


class BreakevenStopData(ManagementData):
    KIND: ClassVar[str] = "breakeven-stop"

    trigger: Literal["PIPS", "ATR", "PERCENTAGE"] = "PIPS"
    trigger_pips: float = Field(20.0, ge=0, le=10000)
    trigger_percent: float = Field(1.0, ge=0, le=100)
    trigger_atr_multiplier: float = Field(1.0, ge=0.1, le=100)
    trigger_atr_period: int = Field(14, ge=1, le=1000)
    lock_pips: float = Field(2.0, ge=0, le=10000)


class TrailingStopData(ManagementData):
    KIND: ClassVar[str] = "trailing-stop"

    method: Literal["FIXED_PIPS", "ATR_BASED", "PERCENTAGE"] = "FIXED_PIPS"
    trail_pips: float = Field(20.0, ge=0, le=10000)
    trail_atr_multiplier: float = Field(1.0, ge=0.1, le=100)
    trail_atr_period: int = Field(14, ge=1, le=1000)
    trail_percent: float = Field(50.0, ge=0, le=100)
    start_after_pips: float = Field(20.0, ge=0, le=10000)


class PartialCloseData(ManagementData):
    KIND: ClassVar[str] = "partial-close"

    close_percent: float = Field(50.0, ge=1, le=100)
    trigger_method: Literal["PIPS", "PERCENT", "R_MULTIPLE"] = "PIPS"
    trigger_pips: float = Field(30.0, ge=0, le=10000)
    trigger_percent: float = Field(1.0, ge=0, le=100)
    r_multiple: float = Field(1.0, gt=0, le=100)
    move_sl_to_breakeven: bool = Field(True, alias="moveSLToBreakeven")


class LockProfitData(ManagementData):
    KIND: ClassVar[str] = "lock-profit"

    method: Literal["PERCENTAGE", "FIXED_PIPS"] = "PERCENTAGE"
    lock_percent: float = Field(50.0, ge=0, le=100)
    lock_pips: float = Field(10.0, ge=0, le=10000)
    check_interval_pips: float = Field(10.0, ge=0, le=10000)


class MultiLevelTPData(ManagementData):
    KIND: ClassVar[str] = "multi-level-tp"

    tp1_pips: float = Field(20.0, ge=0, le=10000)
    tp1_percent: float = Field(50.0, ge=0, le=100)
    tp2_pips: float = Field(40.0, ge=0, le=10000)
    tp2_percent: float = Field(30.0, ge=0, le=100)
    tp3_pips: float = Field(60.0, ge=0, le=10000)
    tp3_percent: float = Field(20.0, ge=0, le=100)
    move_sl_after_tp1: Literal["NONE", "BREAKEVEN", "TRAIL"] = Field("BREAKEVEN", alias="moveSLAfterTP1")


# ---------------------------------------------------------------------------
# Composite entry strategies
# ---------------------------------------------------------------------------


class EntryStrategyData(NodeData):
    """
    A composite node that is expanded into primitive nodes before any code
    is generated. All entry strategies size positions by risk percent and
    take profit at an R-multiple of the stop distance.
    """

    CATEGORY: ClassVar[str] = "entrystrategy"

    direction: TradeDirection = "BOTH"
    timeframe: Optional[str] = "H1"
    risk_percent: float = Field(1.0, ge=0.01, le=100)
    sl_method: Literal["ATR", "PIPS", "PERCENT", "RANGE_OPPOSITE"] = "ATR"
    sl_fixed_pips: float = Field(50.0, ge=1, le=10000)
    sl_percent: float = Field(1.0, gt=0, le=100)
    sl_atr_multiplier: float = Field(1.5, ge=0.1, le=100)
    sl_atr_period: int = Field(14, ge=1, le=1000)
    tp_r_multiple: float = Field(2.0, ge=0.1, le=100)


class EmaCrossoverEntry(EntryStrategyData):
    KIND: ClassVar[str] = "ema-crossover"

    fast_ema: int = Field(50, ge=1, le=1000)
    slow_ema: int = Field(200, ge=1, le=1000)
    applied_price: AppliedPrice = "CLOSE"
    min_ema_separation: float = Field(0.0, ge=0)
    htf_trend_filter: bool = False
    htf_timeframe: str = "H4"
    htf_ema: int = Field(200, ge=1, le=1000)
    rsi_confirmation: bool = False
    rsi_period: int = Field(14, ge=1, le=1000)
    rsi_long_max: float = Field(70.0, ge=0, le=100)
    rsi_short_min: float = Field(30.0, ge=0, le=100)

    @model_validator(mode="after")
    def _check_periods(self) -> "EmaCrossoverEntry":
        if self.fast_ema >= self.slow_ema:
            raise ValueError("fastEma must be smaller than slowEma")
        if self.rsi_confirmation and self.rsi_long_max <= self.rsi_short_min:
            raise ValueError("rsiLongMax must be greater than rsiShortMin")
        return self


class TrendPullbackEntry(EntryStrategyData):
    KIND: ClassVar[str] = "trend-pullback"

    trend_ema: int = Field(200, ge=1, le=1000)
    pullback_rsi_period: int = Field(14, ge=1, le=1000)
    rsi_pullback_level: float = Field(40.0, gt=0, lt=50)
    pullback_max_distance: float = Field(2.0, gt=0, le=100)
    require_ema_buffer: bool = True
    use_adx_filter: bool = False
    adx_period: int = Field(14, ge=1, le=1000)
    adx_threshold: float = Field(25.0, ge=0, le=100)


class RsiReversalEntry(EntryStrategyData):
    KIND: ClassVar[str] = "rsi-reversal"

    rsi_period: int = Field(14, ge=1, le=1000)
    oversold_level: float = Field(30.0, ge=0, le=100)
    overbought_level: float = Field(70.0, ge=0, le=100)
    trend_filter: bool = False
    trend_ema: int = Field(200, ge=1, le=1000)

    @model_validator(mode="after")
    def _check_levels(self) -> "RsiReversalEntry":
        if self.overbought_level <= self.oversold_level:
            raise ValueError("overboughtLevel must be greater than oversoldLevel")
        return self


class MacdCrossoverEntry(EntryStrategyData):
    KIND: ClassVar[str] = "macd-crossover"

    macd_fast: int = Field(12, ge=1, le=1000)
    macd_slow: int = Field(26, ge=1, le=1000)
    macd_signal: int = Field(9, ge=1, le=1000)

    @model_validator(mode="after")
    def _check_periods(self) -> "MacdCrossoverEntry":
        if self.macd_fast >= self.macd_slow:
            raise ValueError("macdFast must be smaller than macdSlow")
        return self


class RangeBreakoutEntry(EntryStrategyData):
    KIND: ClassVar[str] = "range-breakout"

    range_period: int = Field(20, ge=1, le=10000)
    range_method: Literal[
        "CANDLES", "ASIAN_SESSION", "LONDON_SESSION", "NEW_YORK_SESSION", "CUSTOM_TIME"
    ] = "CANDLES"
    range_timeframe: str = "H1"
    custom_start_hour: int = Field(0, ge=0, le=23)
    custom_start_minute: int = Field(0, ge=0, le=59)
    custom_end_hour: int = Field(8, ge=0, le=23)
    custom_end_minute: int = Field(0, ge=0, le=59)
    entry_mode: Literal["IMMEDIATE", "ON_CLOSE", "AFTER_RETEST"] = "ON_CLOSE"
    buffer_pips: float = Field(2.0, ge=0, le=1000)
    min_range_pips: float = Field(0.0, ge=0, le=10000)
    max_range_pips: float = Field(0.0, ge=0, le=10000)
    htf_trend_filter: bool = False
    htf_timeframe: str = "H4"
    htf_ema: int = Field(200, ge=1, le=1000)
    cancel_opposite: bool = True


# ---------------------------------------------------------------------------
# Kind registry / parsing
# ---------------------------------------------------------------------------


_CATEGORIES: Dict[str, Tuple[Tuple[str, ...], Tuple[Type[NodeData], ...]]] = {
    "timing": (("timingType",), (AlwaysTiming, TradingSessionTiming, CustomTimesTiming)),
    "filter": (("filterType",), (MaxSpreadFilter,)),
    "indicator": (
        ("indicatorType",),
        (
            MovingAverageData,
            RSIData,
            MACDData,
            BollingerBandsData,
            ATRData,
            ADXData,
            StochasticData,
            CCIData,
        ),
    ),
    "priceaction": (
        ("priceActionType",),
        (RangeBreakoutData, CandlestickPatternData, SupportResistanceData),
    ),
    "trading": (
        ("tradingType",),
        (
            PlaceBuyData,
            PlaceSellData,
            StopLossData,
            TakeProfitData,
            CloseConditionData,
            TimeExitData,
        ),
    ),
    "trademanagement": (
        ("managementType", "tradeManagementType"),
        (BreakevenStopData, TrailingStopData, PartialCloseData, LockProfitData, MultiLevelTPData),
    ),
    "entrystrategy": (
        ("entryType",),
        (EmaCrossoverEntry, TrendPullbackEntry, RsiReversalEntry, MacdCrossoverEntry, RangeBreakoutEntry),
    ),
}

# Checked in this order: a max-spread node often claims category "timing"
# but carries filterType, and entry strategies reuse price-action kind names.
_KEY_PRIORITY = (
    ("filterType", "filter"),
    ("entryType", "entrystrategy"),
    ("timingType", "timing"),
    ("indicatorType", "indicator"),
    ("priceActionType", "priceaction"),
    ("tradingType", "trading"),
    ("managementType", "trademanagement"),
    ("tradeManagementType", "trademanagement"),
)


def _build_type_index() -> Dict[str, Type[NodeData]]:
    index: Dict[str, Type[NodeData]] = {}
    for category, (_, models) in _CATEGORIES.items():
        for model in models:
            if category == "entrystrategy":
                index[f"{model.KIND}-entry"] = model
            else:
                index[model.KIND] = model
    return index


_TYPE_INDEX = _build_type_index()


def _model_for(category: str, kind: Optional[str]) -> Optional[Type[NodeData]]:
    _, models = _CATEGORIES[category]
    for model in models:
        if model.KIND == kind:
            return model
    return None


def resolve_model(node_type: Optional[str], data: Mapping[str, Any]) -> Type[NodeData]:
    """
    Pick the data model for a raw node.

    The data's own kind key wins; then the category plus the node type;
    then the node type alone.
    """
    for key, category in _KEY_PRIORITY:
        if key in data:
            model = _model_for(category, data[key])
            if model is None:
                raise GraphDocumentError(f"unknown {category} kind {data[key]!r}")
            return model

    category = data.get("category")
    if category in _CATEGORIES:
        model = _model_for(category, node_type)
        if model is None and category == "entrystrategy" and node_type:
            model = _model_for(category, node_type.removesuffix("-entry"))
        if model is not None:
            return model

    model = _TYPE_INDEX.get(node_type or "")
    if model is None:
        raise GraphDocumentError(f"unknown node kind (type={node_type!r}, category={category!r})")
    return model


def parse_node_data(node_id: str, node_type: Optional[str], data: Mapping[str, Any]) -> NodeData:
    try:
        model = resolve_model(node_type, data)
    except GraphDocumentError as exc:
        raise GraphDocumentError(str(exc), node_id=node_id) from None

    try:
        return model.model_validate(dict(data))
    except ValidationError as exc:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or model.KIND}: {err['msg']}" for err in exc.errors()
        )
        raise GraphDocumentError(f"invalid {model.KIND} data ({problems})", node_id=node_id) from exc
