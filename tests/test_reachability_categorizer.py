import pytest

from quantdsl_mql5.dsl.graph import load_graph
from quantdsl_mql5.engine.categorizer import categorize
from quantdsl_mql5.engine.decomposition import decompose_entry_strategies
from quantdsl_mql5.engine.reachability import filter_reachable, reachable_ids


def _node(node_id, node_type, **data):
    return {"id": node_id, "type": node_type, "data": data}


def _graph(nodes, edges):
    return load_graph(
        {
            "nodes": nodes,
            "edges": [{"id": f"e{i}", "source": s, "target": t} for i, (s, t) in enumerate(edges)],
        }
    )


def test_only_nodes_reachable_from_timing_survive():
    graph = _graph(
        [
            _node("t1", "always", timingType="always"),
            _node("rsi", "rsi", indicatorType="rsi"),
            _node("buy", "place-buy", tradingType="place-buy"),
            _node("orphan", "macd", indicatorType="macd"),
            _node("spread", "max-spread", filterType="max-spread"),
        ],
        [("t1", "rsi"), ("rsi", "buy"), ("orphan", "buy")],
    )

    assert reachable_ids(graph.nodes, graph.edges) == {"t1", "rsi", "buy"}
    live = filter_reachable(graph.nodes, graph.edges)
    # filters and timing nodes are kept without any edge
    assert [n.id for n in live] == ["t1", "rsi", "buy", "spread"]


def test_traversal_is_directed():
    graph = _graph(
        [
            _node("t1", "always", timingType="always"),
            _node("buy", "place-buy", tradingType="place-buy"),
            _node("sl", "stop-loss", tradingType="stop-loss"),
        ],
        [("t1", "buy"), ("sl", "buy")],
    )
    assert reachable_ids(graph.nodes, graph.edges) == {"t1", "buy"}


def test_without_timing_everything_is_reachable():
    graph = _graph(
        [
            _node("rsi", "rsi", indicatorType="rsi"),
            _node("lonely", "atr", indicatorType="atr"),
        ],
        [],
    )
    assert [n.id for n in filter_reachable(graph.nodes, graph.edges)] == ["rsi", "lonely"]


def test_several_roots_and_dangling_edges():
    graph = _graph(
        [
            _node("t1", "always", timingType="always"),
            _node("t2", "trading-session", timingType="trading-session"),
            _node("a", "rsi", indicatorType="rsi"),
            _node("b", "atr", indicatorType="atr"),
        ],
        [("t1", "a"), ("t2", "b"), ("b", "ghost")],
    )
    assert reachable_ids(graph.nodes, graph.edges) == {"t1", "t2", "a", "b", "ghost"}
    assert [n.id for n in filter_reachable(graph.nodes, graph.edges)] == ["t1", "t2", "a", "b"]


def test_categorize_preserves_document_order_per_bucket():
    graph = _graph(
        [
            _node("ma", "moving-average", indicatorType="moving-average"),
            _node("t1", "always", timingType="always"),
            _node("cp", "candlestick-pattern", priceActionType="candlestick-pattern"),
            _node("rsi", "rsi", indicatorType="rsi"),
            _node("buy", "place-buy", tradingType="place-buy"),
            _node("sell", "place-sell", tradingType="place-sell"),
            _node("sl", "stop-loss", tradingType="stop-loss"),
            _node("tp", "take-profit", tradingType="take-profit"),
            _node("cc", "close-condition", tradingType="close-condition"),
            _node("tx", "time-exit", tradingType="time-exit"),
            _node("be", "breakeven-stop", managementType="breakeven-stop"),
            _node("spread", "max-spread", filterType="max-spread"),
        ],
        [],
    )
    b = categorize(graph.nodes)

    assert [n.id for n in b.indicators] == ["ma", "rsi"]
    assert [n.id for n in b.timing] == ["t1"]
    assert [n.id for n in b.price_action] == ["cp"]
    assert [n.id for n in b.place_buy] == ["buy"]
    assert [n.id for n in b.place_sell] == ["sell"]
    assert [n.id for n in b.stop_loss] == ["sl"]
    assert [n.id for n in b.take_profit] == ["tp"]
    assert [n.id for n in b.close_condition] == ["cc"]
    assert [n.id for n in b.time_exit] == ["tx"]
    assert [n.id for n in b.management] == ["be"]
    assert [n.id for n in b.max_spread] == ["spread"]
    assert b.has_entry


def test_categorize_refuses_undecomposed_entry_strategies():
    graph = _graph([_node("es", "rsi-reversal-entry", entryType="rsi-reversal")], [])
    with pytest.raises(TypeError):
        categorize(graph.nodes)

    nodes, _ = decompose_entry_strategies(graph.nodes, graph.edges)
    assert categorize(nodes).has_entry
