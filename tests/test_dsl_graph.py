import pytest

from quantdsl_mql5.dsl.graph import StrategyGraph, StrategySettings, load_graph
from quantdsl_mql5.dsl.nodes import AlwaysTiming, PlaceBuyData
from quantdsl_mql5.utils.errors import GraphDocumentError


def _doc(settings=None):
    return {
        "version": "1.3",
        "nodes": [
            {"id": "t1", "type": "always", "position": {"x": 0, "y": 0}, "data": {"category": "timing", "timingType": "always"}},
            {"id": "buy1", "type": "place-buy", "data": {"category": "trading", "tradingType": "place-buy", "fixedLot": 0.2}},
        ],
        "edges": [{"id": "e1", "source": "t1", "target": "buy1"}],
        "settings": settings,
    }


def test_load_graph_parses_nodes_edges_and_default_settings():
    graph = load_graph(_doc())

    assert [n.id for n in graph.nodes] == ["t1", "buy1"]
    assert isinstance(graph.nodes[0].data, AlwaysTiming)
    assert isinstance(graph.nodes[1].data, PlaceBuyData)
    assert graph.nodes[1].data.fixed_lot == 0.2
    assert graph.nodes[0].position == {"x": 0, "y": 0}
    assert graph.nodes[0].category == "timing"
    assert graph.nodes[1].kind == "place-buy"

    assert len(graph.edges) == 1
    assert (graph.edges[0].source, graph.edges[0].target) == ("t1", "buy1")

    s = graph.settings
    assert s.magic_number == 123456
    assert s.comment == "QuantDSL EA"
    assert s.max_open_trades == 1
    assert s.allow_hedging is False
    assert s.condition_mode == "AND"
    assert s.max_trades_per_day == 0
    assert s.max_daily_profit_percent == 0.0
    assert s.max_daily_loss_percent == 0.0


def test_direction_limits_fall_back_to_max_open_trades():
    graph = load_graph(_doc({"maxOpenTrades": 3, "maxSellPositions": 1}))
    assert graph.settings.max_open_trades == 3
    assert graph.settings.max_buy_positions == 3
    assert graph.settings.max_sell_positions == 1


def test_settings_overrides():
    graph = load_graph(
        _doc(
            {
                "magicNumber": 777,
                "comment": "My EA",
                "allowHedging": True,
                "conditionMode": "OR",
                "maxTradesPerDay": 2,
                "maxDailyLossPercent": 3,
            }
        )
    )
    s = graph.settings
    assert s.magic_number == 777
    assert s.comment == "My EA"
    assert s.allow_hedging is True
    assert s.condition_mode == "OR"
    assert s.max_trades_per_day == 2
    assert s.max_daily_loss_percent == 3.0


@pytest.mark.parametrize(
    "settings",
    [
        {"conditionMode": "XOR"},
        {"maxOpenTrades": 0},
        {"magicNumber": "abc"},
        {"allowHedging": "yes"},
    ],
)
def test_invalid_settings_raise(settings):
    with pytest.raises(GraphDocumentError):
        load_graph(_doc(settings))


def test_duplicate_node_ids_raise():
    doc = _doc()
    doc["nodes"].append(dict(doc["nodes"][0]))
    with pytest.raises(GraphDocumentError) as exc:
        load_graph(doc)
    assert exc.value.node_id == "t1"


def test_missing_node_id_or_edge_endpoint_raise():
    doc = _doc()
    doc["nodes"][0] = {"type": "always", "data": {"timingType": "always"}}
    with pytest.raises(GraphDocumentError):
        load_graph(doc)

    doc = _doc()
    doc["edges"] = [{"id": "e1", "source": "t1"}]
    with pytest.raises(GraphDocumentError):
        load_graph(doc)


def test_dangling_edges_are_kept():
    doc = _doc()
    doc["edges"].append({"id": "e2", "source": "buy1", "target": "ghost"})
    graph = load_graph(doc)
    assert [e.id for e in graph.edges] == ["e1", "e2"]


def test_non_mapping_document_raises_and_graph_passes_through():
    with pytest.raises(GraphDocumentError):
        load_graph(["not", "a", "document"])

    graph = StrategyGraph(settings=StrategySettings(magic_number=5))
    assert load_graph(graph) is graph
