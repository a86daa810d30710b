import pytest

from quantdsl_mql5.dsl.nodes import (
    CustomTimesTiming,
    EmaCrossoverEntry,
    MACDData,
    MaxSpreadFilter,
    MovingAverageData,
    PartialCloseData,
    RSIData,
    StopLossData,
    parse_node_data,
    resolve_model,
)
from quantdsl_mql5.utils.errors import GenerationError, GraphDocumentError


def test_kind_key_selects_model_and_fills_defaults():
    data = parse_node_data("n1", "rsi", {"category": "indicator", "indicatorType": "rsi", "period": 21})

    assert isinstance(data, RSIData)
    assert data.period == 21
    assert data.overbought_level == 70.0
    assert data.oversold_level == 30.0
    assert data.signal_mode == "every_tick"
    assert data.bar_shift == 0


def test_camel_case_wire_names_map_to_snake_case():
    data = parse_node_data(
        "ma",
        "moving-average",
        {"indicatorType": "moving-average", "period": 50, "method": "EMA", "appliedPrice": "TYPICAL", "signalMode": "candle_close"},
    )

    assert isinstance(data, MovingAverageData)
    assert data.method == "EMA"
    assert data.applied_price == "TYPICAL"
    assert data.bar_shift == 1


def test_explicit_aliases_are_honoured():
    data = parse_node_data("pc", "partial-close", {"managementType": "partial-close", "moveSLToBreakeven": False})
    assert isinstance(data, PartialCloseData)
    assert data.move_sl_to_breakeven is False


def test_filter_type_wins_over_timing_category():
    # max-spread nodes are often stored with category "timing"
    data = parse_node_data("f1", "max-spread", {"category": "timing", "filterType": "max-spread", "maxSpreadPips": 15})
    assert isinstance(data, MaxSpreadFilter)
    assert data.max_spread_pips == 15


def test_model_resolved_from_category_and_node_type():
    assert resolve_model("stop-loss", {"category": "trading"}) is StopLossData
    assert resolve_model("ema-crossover-entry", {"category": "entrystrategy"}) is EmaCrossoverEntry
    assert resolve_model("custom-times", {}) is CustomTimesTiming


def test_unknown_kind_is_a_document_error_with_node_id():
    with pytest.raises(GraphDocumentError) as exc:
        parse_node_data("n7", "ichimoku", {"indicatorType": "ichimoku"})

    assert exc.value.node_id == "n7"
    assert "ichimoku" in str(exc.value)
    assert isinstance(exc.value, GenerationError)


def test_unknown_type_without_kind_key():
    with pytest.raises(GraphDocumentError):
        parse_node_data("n1", "does-not-exist", {"label": "?"})


def test_invalid_field_value_wraps_validation_error():
    with pytest.raises(GraphDocumentError) as exc:
        parse_node_data("rsi1", "rsi", {"indicatorType": "rsi", "period": 0})
    assert exc.value.node_id == "rsi1"
    assert "invalid rsi data" in str(exc.value)


def test_cross_field_rules():
    with pytest.raises(GraphDocumentError):
        parse_node_data("m", "macd", {"indicatorType": "macd", "fastPeriod": 30, "slowPeriod": 20})

    with pytest.raises(GraphDocumentError):
        parse_node_data("r", "rsi", {"indicatorType": "rsi", "overboughtLevel": 30, "oversoldLevel": 70})

    with pytest.raises(GraphDocumentError):
        parse_node_data("e", "ema-crossover-entry", {"entryType": "ema-crossover", "fastEma": 200, "slowEma": 50})

    ok = parse_node_data("m", "macd", {"indicatorType": "macd", "fastPeriod": 8, "slowPeriod": 21})
    assert isinstance(ok, MACDData)


def test_optimizable_fields_default_and_explicit():
    every = RSIData()
    assert every.is_optimizable("period")
    assert every.is_optimizable("overboughtLevel")

    some = parse_node_data("r", "rsi", {"indicatorType": "rsi", "optimizableFields": ["period"]})
    assert some.is_optimizable("period")
    assert not some.is_optimizable("overboughtLevel")

    none = parse_node_data("r", "rsi", {"indicatorType": "rsi", "optimizableFields": []})
    assert not none.is_optimizable("period")


def test_unknown_keys_are_kept_but_ignored():
    data = parse_node_data("r", "rsi", {"indicatorType": "rsi", "uiCollapsed": True})
    assert isinstance(data, RSIData)
    assert data.period == 14
