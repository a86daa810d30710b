import pytest

from quantdsl_mql5.dsl.presets import STRATEGY_PRESETS, get_preset
from quantdsl_mql5.engine import compile_strategy


PRESET_IDS = [p.id for p in STRATEGY_PRESETS]


def test_preset_catalogue():
    assert PRESET_IDS == ["range-breakout", "ema-crossover", "trend-pullback", "rsi-reversal", "macd-crossover"]
    magics = [p.document["settings"]["magicNumber"] for p in STRATEGY_PRESETS]
    assert magics == [300001, 300002, 300003, 300004, 300005]


@pytest.mark.parametrize("preset_id", PRESET_IDS)
def test_every_preset_compiles(preset_id):
    preset = get_preset(preset_id)
    result = compile_strategy(preset.build(), preset.name)
    source = result.source
    magic = preset.document["settings"]["magicNumber"]

    assert f"sinput int InpMagicNumber = {magic}; // Magic Number" in source
    # London session, weekdays only
    assert "if(dt.day_of_week >= 1 && dt.day_of_week <= 5)" in source
    assert "if(currentMinutes >= 480 && currentMinutes < 1020) isTradingTime = true;" in source
    assert "if(OpenBuy(buyLotSize, slPips, tpPips))" in source
    assert "OpenSell(sellLotSize, " in source
    assert "CalculateLotSize(InpBuyRiskPercent, slPips)" in source
    assert "double tpPips = slPips * InpRiskReward;" in source
    assert source.count("iATR(") == 1


def test_range_breakout_preset_uses_asian_session():
    source = compile_strategy(get_preset("range-breakout").build(), "Range").source
    assert "GetSessionRange(PERIOD_H1, 0, 0, 8, 0, pa0High, pa0Low, false);" in source
    assert "bool buyCondition = (pa0BreakoutUp);" in source
    assert "bool sellCondition = (pa0BreakoutDown);" in source


def test_build_returns_an_independent_copy():
    preset = get_preset("rsi-reversal")
    doc = preset.build()
    doc["settings"]["magicNumber"] = 1
    doc["nodes"][1]["data"]["rsiPeriod"] = 7

    assert preset.document["settings"]["magicNumber"] == 300004
    assert preset.document["nodes"][1]["data"]["rsiPeriod"] == 14


def test_unknown_preset_raises():
    with pytest.raises(KeyError):
        get_preset("martingale")
