# src/quantdsl_mql5/engine/categorizer.py

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List

from ..dsl.graph import Node
from ..dsl.nodes import (
    CloseConditionData,
    EntryStrategyData,
    FilterData,
    IndicatorData,
    ManagementData,
    PlaceBuyData,
    PlaceSellData,
    PriceActionData,
    StopLossData,
    TakeProfitData,
    TimeExitData,
    TimingData,
)


@dataclass(slots=True)
class NodeBuckets:
    """
    Live nodes grouped for the generators. Order inside each bucket is the
    document order, which fixes the positional `ind{N}` / `pa{N}` names.
    """

    timing: List[Node] = field(default_factory=list)
    max_spread: List[Node] = field(default_factory=list)
    indicators: List[Node] = field(default_factory=list)
    price_action: List[Node] = field(default_factory=list)
    place_buy: List[Node] = field(default_factory=list)
    place_sell: List[Node] = field(default_factory=list)
    stop_loss: List[Node] = field(default_factory=list)
    take_profit: List[Node] = field(default_factory=list)
    close_condition: List[Node] = field(default_factory=list)
    time_exit: List[Node] = field(default_factory=list)
    management: List[Node] = field(default_factory=list)

    @property
    def has_entry(self) -> bool:
        return bool(self.place_buy or self.place_sell)


_BUCKET_BY_TYPE = (
    (TimingData, "timing"),
    (FilterData, "max_spread"),
    (IndicatorData, "indicators"),
    (PriceActionData, "price_action"),
    (PlaceBuyData, "place_buy"),
    (PlaceSellData, "place_sell"),
    (StopLossData, "stop_loss"),
    (TakeProfitData, "take_profit"),
    (CloseConditionData, "close_condition"),
    (TimeExitData, "time_exit"),
    (ManagementData, "management"),
)


def categorize(nodes: List[Node]) -> NodeBuckets:
    buckets = NodeBuckets()
    for node in nodes:
        if isinstance(node.data, EntryStrategyData):
            raise TypeError(f"Entry strategy node '{node.id}' must be decomposed before categorizing")
        for model, bucket in _BUCKET_BY_TYPE:
            if isinstance(node.data, model):
                getattr(buckets, bucket).append(node)
                break
        else:
            raise TypeError(f"Unsupported node data type: {type(node.data)!r}")
    return buckets
