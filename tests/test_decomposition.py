import pytest

from quantdsl_mql5.dsl.graph import load_graph
from quantdsl_mql5.dsl.nodes import (
    ADXData,
    MACDData,
    MovingAverageData,
    PlaceBuyData,
    PlaceSellData,
    RangeBreakoutData,
    RSIData,
    StopLossData,
    TakeProfitData,
)
from quantdsl_mql5.engine.decomposition import decompose_entry_strategies


def _entry_graph(entry_type: str, **params):
    data = {"category": "entrystrategy", "entryType": entry_type, **params}
    doc = {
        "nodes": [
            {"id": "t1", "type": "always", "data": {"category": "timing", "timingType": "always"}},
            {"id": "es", "type": f"{entry_type}-entry", "data": data},
        ],
        "edges": [{"id": "e1", "source": "t1", "target": "es"}],
    }
    graph = load_graph(doc)
    return decompose_entry_strategies(graph.nodes, graph.edges)


def _pairs(edges):
    return {(e.source, e.target) for e in edges}


def test_ema_crossover_both_directions_exact_primitive_set():
    nodes, edges = _entry_graph("ema-crossover", fastEma=20, slowEma=50)

    ids = [n.id for n in nodes]
    assert ids == ["t1", "es__ma-fast", "es__ma-slow", "es__buy", "es__sell", "es__sl", "es__tp"]

    by_id = {n.id: n for n in nodes}
    fast, slow = by_id["es__ma-fast"].data, by_id["es__ma-slow"].data
    assert isinstance(fast, MovingAverageData) and isinstance(slow, MovingAverageData)
    assert (fast.period, fast.method, fast.role) == (20, "EMA", "fast")
    assert (slow.period, slow.method, slow.role) == (50, "EMA", "slow")
    assert fast.entry_strategy_id == "es"
    assert fast.signal_mode == "candle_close"
    assert isinstance(by_id["es__buy"].data, PlaceBuyData)
    assert isinstance(by_id["es__sell"].data, PlaceSellData)
    assert isinstance(by_id["es__sl"].data, StopLossData)
    assert isinstance(by_id["es__tp"].data, TakeProfitData)

    expected_internal = {
        ("es__ma-fast", "es__buy"),
        ("es__ma-fast", "es__sell"),
        ("es__ma-slow", "es__buy"),
        ("es__ma-slow", "es__sell"),
        ("es__buy", "es__sl"),
        ("es__buy", "es__tp"),
        ("es__sell", "es__sl"),
        ("es__sell", "es__tp"),
    }
    assert expected_internal <= _pairs(edges)
    # inbound timing edge fans out to every signal node
    assert ("t1", "es__ma-fast") in _pairs(edges)
    assert ("t1", "es__ma-slow") in _pairs(edges)
    assert not any("es" in (e.source, e.target) for e in edges)


def test_risk_nodes_follow_entry_defaults():
    nodes, _ = _entry_graph("macd-crossover", riskPercent=2, slMethod="PIPS", slFixedPips=40, tpRMultiple=3)
    by_id = {n.id: n for n in nodes}

    buy = by_id["es__buy"].data
    assert buy.method == "RISK_PERCENT"
    assert buy.risk_percent == 2
    assert buy.min_lot == 0.01
    assert buy.max_lot == 100

    sl = by_id["es__sl"].data
    assert sl.method == "FIXED_PIPS"
    assert sl.fixed_pips == 40

    tp = by_id["es__tp"].data
    assert tp.method == "RISK_REWARD"
    assert tp.risk_reward_ratio == 3

    macd = by_id["es__macd"].data
    assert isinstance(macd, MACDData)
    assert (macd.fast_period, macd.slow_period, macd.signal_period) == (12, 26, 9)


@pytest.mark.parametrize("direction, present, absent", [("BUY", "es__buy", "es__sell"), ("SELL", "es__sell", "es__buy")])
def test_single_direction_drops_other_position_node(direction, present, absent):
    nodes, edges = _entry_graph("rsi-reversal", direction=direction)
    ids = {n.id for n in nodes}
    assert present in ids
    assert absent not in ids
    assert (present, "es__sl") in _pairs(edges)
    assert not any(absent in (e.source, e.target) for e in edges)


def test_optional_filter_nodes():
    nodes, _ = _entry_graph("ema-crossover", htfTrendFilter=True, rsiConfirmation=True)
    by_id = {n.id: n for n in nodes}
    assert by_id["es__htf-ema"].data.filter_role == "htf-trend"
    assert by_id["es__htf-ema"].data.timeframe == "H4"
    assert by_id["es__rsi-confirm"].data.filter_role == "rsi-confirm"

    nodes, _ = _entry_graph("trend-pullback", useAdxFilter=True, adxThreshold=30)
    by_id = {n.id: n for n in nodes}
    adx = by_id["es__adx"].data
    assert isinstance(adx, ADXData)
    assert adx.filter_role == "adx-trend-strength"
    assert adx.trend_level == 30
    rsi = by_id["es__rsi"].data
    assert isinstance(rsi, RSIData)
    assert (rsi.oversold_level, rsi.overbought_level) == (40.0, 60.0)
    assert by_id["es__trend-ema"].data.require_ema_buffer is True


def test_range_breakout_maps_method_and_stop():
    nodes, _ = _entry_graph("range-breakout", rangeMethod="LONDON_SESSION", slMethod="RANGE_OPPOSITE")
    by_id = {n.id: n for n in nodes}
    rng = by_id["es__range"].data
    assert isinstance(rng, RangeBreakoutData)
    assert rng.range_type == "SESSION"
    assert rng.range_session == "LONDON"
    assert by_id["es__sl"].data.method == "RANGE_OPPOSITE"
    assert rng.cancel_opposite is True
    assert "es__htf-ema" not in by_id


def test_range_breakout_trend_filter_and_cancel_opposite():
    nodes, edges = _entry_graph(
        "range-breakout", htfTrendFilter=True, htfEma=100, htfTimeframe="D1", cancelOpposite=False
    )
    by_id = {n.id: n for n in nodes}
    htf = by_id["es__htf-ema"].data
    assert isinstance(htf, MovingAverageData)
    assert htf.filter_role == "htf-trend"
    assert (htf.period, htf.timeframe) == (100, "D1")
    assert by_id["es__range"].data.cancel_opposite is False
    assert ("es__htf-ema", "es__buy") in _pairs(edges)


def test_optimizable_flags_are_translated_per_field():
    nodes, _ = _entry_graph("ema-crossover", optimizableFields=["fastEma", "riskPercent"])
    by_id = {n.id: n for n in nodes}
    assert by_id["es__ma-fast"].data.is_optimizable("period")
    assert not by_id["es__ma-slow"].data.is_optimizable("period")
    assert by_id["es__buy"].data.is_optimizable("riskPercent")
    assert not by_id["es__sl"].data.is_optimizable("atrMultiplier")


def test_missing_optimizable_flags_keep_everything_optimizable():
    nodes, _ = _entry_graph("ema-crossover")
    for node in nodes[1:]:
        assert node.data.optimizable_fields is None


def test_outbound_edges_fan_out_from_signal_nodes():
    doc = {
        "nodes": [
            {"id": "es", "type": "macd-crossover-entry", "data": {"entryType": "macd-crossover", "direction": "BUY"}},
            {"id": "be", "type": "breakeven-stop", "data": {"managementType": "breakeven-stop"}},
        ],
        "edges": [{"id": "x", "source": "es", "target": "be"}],
    }
    graph = load_graph(doc)
    _, edges = decompose_entry_strategies(graph.nodes, graph.edges)
    assert ("es__macd", "be") in _pairs(edges)
    assert any(e.id == "x__0" for e in edges)


def test_graph_without_composites_is_unchanged():
    graph = load_graph(
        {
            "nodes": [{"id": "t1", "type": "always", "data": {"timingType": "always"}}],
            "edges": [],
        }
    )
    nodes, edges = decompose_entry_strategies(graph.nodes, graph.edges)
    assert [n.id for n in nodes] == ["t1"]
    assert edges == []
