# src/quantdsl_mql5/dsl/presets.py

from __future__ import annotations

import copy
from dataclasses import dataclass
from typing import Any, Dict, List, Optional


@dataclass(slots=True)
class StrategyPreset:
    """
    A ready-made strategy graph. `document` is in the builder's wire format
    and can be passed straight to generate_mql5_code().
    """

    id: str
    name: str
    description: str
    document: Dict[str, Any]

    def build(self) -> Dict[str, Any]:
        """A deep copy of the document, safe to edit."""
        return copy.deepcopy(self.document)


# Shared London session timing node
def _timing_node() -> Dict[str, Any]:
    return {
        "id": "timing1",
        "type": "trading-session",
        "position": {"x": 300, "y": 0},
        "data": {
            "label": "Trading Sessions",
            "category": "timing",
            "timingType": "trading-session",
            "session": "LONDON",
            "tradingDays": {
                "monday": True,
                "tuesday": True,
                "wednesday": True,
                "thursday": True,
                "friday": True,
                "saturday": False,
                "sunday": False,
            },
        },
    }


def _entry_document(
    entry_type: str,
    label: str,
    magic_number: int,
    params: Dict[str, Any],
    comment: Optional[str] = None,
) -> Dict[str, Any]:
    entry_data = {
        "label": label,
        "category": "entrystrategy",
        "entryType": entry_type,
        "direction": "BOTH",
        "timeframe": "H1",
        "riskPercent": 1,
        "slMethod": "ATR",
        "slAtrMultiplier": 1.5,
        "slAtrPeriod": 14,
        "tpRMultiple": 2,
        **params,
    }
    return {
        "version": "1.3",
        "nodes": [
            _timing_node(),
            {
                "id": "entry1",
                "type": f"{entry_type}-entry",
                "position": {"x": 300, "y": 180},
                "data": entry_data,
            },
        ],
        "edges": [{"id": "e1", "source": "timing1", "target": "entry1"}],
        "settings": {
            "magicNumber": magic_number,
            "comment": comment or label,
            "maxOpenTrades": 1,
            "allowHedging": False,
        },
    }


STRATEGY_PRESETS: List[StrategyPreset] = [
    StrategyPreset(
        id="range-breakout",
        name="Range Breakout",
        description=(
            "Asian session range breakout traded during the London session. "
            "ATR x1.5 stop, 2:1 reward-to-risk."
        ),
        document=_entry_document(
            "range-breakout",
            "Range Breakout",
            300001,
            {
                "rangeMethod": "ASIAN_SESSION",
                "rangeTimeframe": "H1",
                "entryMode": "ON_CLOSE",
                "bufferPips": 2,
            },
        ),
    ),
    StrategyPreset(
        id="ema-crossover",
        name="EMA Crossover",
        description="Classic trend following. EMA(50)/EMA(200) crossover with 1% risk, ATR x1.5 stop, 2R take profit.",
        document=_entry_document(
            "ema-crossover",
            "EMA Crossover",
            300002,
            {"fastEma": 50, "slowEma": 200, "appliedPrice": "CLOSE"},
        ),
    ),
    StrategyPreset(
        id="trend-pullback",
        name="Trend Pullback",
        description=(
            "EMA(200) trend with an RSI pullback entry: buys when RSI dips below 40 in an "
            "uptrend, sells above 60 in a downtrend. 1% risk, ATR x1.5 stop."
        ),
        document=_entry_document(
            "trend-pullback",
            "Trend Pullback",
            300003,
            {"trendEma": 200, "pullbackRsiPeriod": 14, "rsiPullbackLevel": 40, "pullbackMaxDistance": 2.0},
        ),
    ),
    StrategyPreset(
        id="rsi-reversal",
        name="RSI Reversal",
        description=(
            "Mean reversion at RSI extremes. Buys when RSI crosses up from 30, sells when "
            "RSI crosses down from 70. 1% risk, ATR stop, 2:1 R:R."
        ),
        document=_entry_document(
            "rsi-reversal",
            "RSI Reversal",
            300004,
            {"rsiPeriod": 14, "oversoldLevel": 30, "overboughtLevel": 70},
        ),
    ),
    StrategyPreset(
        id="macd-crossover",
        name="MACD Crossover",
        description="MACD(12,26,9) signal line crossover. Momentum / trend shift strategy. 1% risk, ATR stop, 2:1 R:R.",
        document=_entry_document(
            "macd-crossover",
            "MACD Crossover",
            300005,
            {"macdFast": 12, "macdSlow": 26, "macdSignal": 9},
        ),
    ),
]


def get_preset(preset_id: str) -> StrategyPreset:
    for preset in STRATEGY_PRESETS:
        if preset.id == preset_id:
            return preset
    known = ", ".join(p.id for p in STRATEGY_PRESETS)
    raise KeyError(f"Unknown preset {preset_id!r} (known: {known})")
