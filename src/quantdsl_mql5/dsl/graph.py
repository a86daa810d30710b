# src/quantdsl_mql5/dsl/graph.py

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Mapping, Optional, Union

from ..utils.errors import GraphDocumentError
from .nodes import NodeData, parse_node_data


@dataclass(slots=True)
class Node:
    """
    One unit of the strategy graph. `position` is the builder's canvas
    coordinate and is carried along untouched.
    """

    id: str
    type: str
    data: NodeData
    position: Optional[Dict[str, float]] = None

    @property
    def category(self) -> str:
        return self.data.CATEGORY

    @property
    def kind(self) -> str:
        return self.data.KIND


@dataclass(slots=True)
class Edge:
    id: str
    source: str
    target: str


@dataclass(slots=True)
class StrategySettings:
    """
    Document-level settings, read-only for the duration of a compile.

    Position ceilings per direction fall back to `max_open_trades`.
    Zero for any of the daily limits means "no limit".
    """

    magic_number: int = 123456
    comment: str = "QuantDSL EA"
    max_open_trades: int = 1
    allow_hedging: bool = False
    max_buy_positions: Optional[int] = None
    max_sell_positions: Optional[int] = None
    condition_mode: Literal["AND", "OR"] = "AND"
    max_trades_per_day: int = 0
    max_daily_profit_percent: float = 0.0
    max_daily_loss_percent: float = 0.0

    def __post_init__(self) -> None:
        if self.condition_mode not in ("AND", "OR"):
            raise GraphDocumentError(f"conditionMode must be 'AND' or 'OR', got {self.condition_mode!r}")
        if self.max_open_trades < 1:
            raise GraphDocumentError("maxOpenTrades must be at least 1")
        if self.max_buy_positions is None:
            self.max_buy_positions = self.max_open_trades
        if self.max_sell_positions is None:
            self.max_sell_positions = self.max_open_trades

    @classmethod
    def from_dict(cls, raw: Optional[Mapping[str, Any]]) -> "StrategySettings":
        raw = raw or {}
        kwargs: Dict[str, Any] = {}
        for wire, (name, cast) in _SETTINGS_FIELDS.items():
            value = raw.get(wire)
            if value is None:
                continue
            try:
                kwargs[name] = cast(value)
            except (TypeError, ValueError) as exc:
                raise GraphDocumentError(f"settings.{wire}: invalid value {value!r}") from exc
        return cls(**kwargs)


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    raise ValueError(f"expected a boolean, got {value!r}")


_SETTINGS_FIELDS = {
    "magicNumber": ("magic_number", int),
    "comment": ("comment", str),
    "maxOpenTrades": ("max_open_trades", int),
    "allowHedging": ("allow_hedging", _as_bool),
    "maxBuyPositions": ("max_buy_positions", int),
    "maxSellPositions": ("max_sell_positions", int),
    "conditionMode": ("condition_mode", str),
    "maxTradesPerDay": ("max_trades_per_day", int),
    "maxDailyProfitPercent": ("max_daily_profit_percent", float),
    "maxDailyLossPercent": ("max_daily_loss_percent", float),
}


@dataclass(slots=True)
class StrategyGraph:
    nodes: List[Node] = field(default_factory=list)
    edges: List[Edge] = field(default_factory=list)
    settings: StrategySettings = field(default_factory=StrategySettings)
    version: Union[int, str] = 1

    def node_map(self) -> Dict[str, Node]:
        return {n.id: n for n in self.nodes}


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


def _parse_node(raw: Mapping[str, Any], index: int) -> Node:
    node_id = raw.get("id")
    if not node_id:
        raise GraphDocumentError(f"nodes[{index}] has no id")
    data = raw.get("data") or {}
    if not isinstance(data, Mapping):
        raise GraphDocumentError("data must be an object", node_id=str(node_id))
    node_type = raw.get("type")
    return Node(
        id=str(node_id),
        type=str(node_type or ""),
        data=parse_node_data(str(node_id), node_type, data),
        position=raw.get("position"),
    )


def _parse_edge(raw: Mapping[str, Any], index: int) -> Edge:
    source = raw.get("source")
    target = raw.get("target")
    if not source or not target:
        raise GraphDocumentError(f"edges[{index}] needs both source and target")
    return Edge(id=str(raw.get("id") or f"e{index}"), source=str(source), target=str(target))


def load_graph(document: Union[Mapping[str, Any], StrategyGraph]) -> StrategyGraph:
    """
    Parse a raw graph document (as produced by the visual builder) into a
    StrategyGraph.

    Node ids must be unique. Edges whose endpoints name no node are kept;
    the reachability pass simply never reaches them.
    """
    if isinstance(document, StrategyGraph):
        return document
    if not isinstance(document, Mapping):
        raise GraphDocumentError(f"document must be a mapping, got {type(document).__name__}")

    nodes = [_parse_node(raw, i) for i, raw in enumerate(document.get("nodes") or [])]
    seen = set()
    for node in nodes:
        if node.id in seen:
            raise GraphDocumentError("duplicate node id", node_id=node.id)
        seen.add(node.id)

    edges = [_parse_edge(raw, i) for i, raw in enumerate(document.get("edges") or [])]

    return StrategyGraph(
        nodes=nodes,
        edges=edges,
        settings=StrategySettings.from_dict(document.get("settings")),
        version=document.get("version", 1),
    )
