import pytest

from quantdsl_mql5.engine import CompileOptions, compile_strategy, generate_mql5_code
from quantdsl_mql5.utils.errors import GraphDocumentError


def _node(node_id, node_type, key, **data):
    return {"id": node_id, "type": node_type, "data": {key: node_type, **data}}


def _timing():
    return _node("t1", "always", "timingType")


def _doc(nodes, edges, settings=None):
    doc = {
        "nodes": nodes,
        "edges": [{"id": f"e{i}", "source": s, "target": t} for i, (s, t) in enumerate(edges)],
    }
    if settings is not None:
        doc["settings"] = settings
    return doc


def _rsi_doc(settings=None, sl=None, tp=None):
    nodes = [
        _timing(),
        _node("rsi", "rsi", "indicatorType", period=14),
        _node("buy", "place-buy", "tradingType"),
        _node("sell", "place-sell", "tradingType"),
        _node("sl", "stop-loss", "tradingType", **(sl or {"method": "FIXED_PIPS", "fixedPips": 30})),
        _node("tp", "take-profit", "tradingType", **(tp or {"method": "FIXED_PIPS", "fixedPips": 60})),
    ]
    edges = [("t1", "rsi"), ("rsi", "buy"), ("rsi", "sell"), ("buy", "sl"), ("buy", "tp"), ("sell", "sl"), ("sell", "tp")]
    return _doc(nodes, edges, settings)


def _line(source, fragment):
    return next(line.strip() for line in source.splitlines() if fragment in line)


def test_rsi_strategy_end_to_end():
    source = generate_mql5_code(_rsi_doc(), "RSI Test")

    assert "ind0Handle = iRSI(_Symbol, PERIOD_CURRENT, InpRSI0Period, PRICE_CLOSE);" in source
    assert "input int InpRSI0Period = 14; // RSI 1 Period" in source
    assert "sinput int InpMagicNumber = 123456; // Magic Number" in source
    assert (
        "bool buyCondition = (DoubleLE(ind0Buffer[1], InpRSI0Oversold) && DoubleGT(ind0Buffer[0], InpRSI0Oversold));"
        in source
    )
    assert (
        "bool sellCondition = (DoubleGE(ind0Buffer[1], InpRSI0Overbought) && DoubleLT(ind0Buffer[0], InpRSI0Overbought));"
        in source
    )
    assert "double slPips = InpStopLoss * _pipFactor; // Convert to points" in source
    assert "double tpPips = InpTakeProfit * _pipFactor; // Convert to points" in source
    assert "if(OpenBuy(buyLotSize, slPips, tpPips))" in source
    assert "if(OpenSell(sellLotSize, slPips, tpPips))" in source
    assert "if(isTradingTime && positionsCount < 1 && newBar)" in source


def test_output_is_deterministic():
    assert generate_mql5_code(_rsi_doc(), "Same") == generate_mql5_code(_rsi_doc(), "Same")


def test_sections_are_emitted_in_fixed_order():
    source = generate_mql5_code(_rsi_doc(), "Order")
    markers = [
        "#property copyright",
        "#include <Trade\\Trade.mqh>",
        "Input Parameters",
        "Global Variables",
        "int OnInit()",
        "void OnDeinit(const int reason)",
        "void OnTick()",
        "Helper functions",
    ]
    positions = [source.index(m) for m in markers]
    assert positions == sorted(positions)


def test_unreachable_nodes_leave_no_trace():
    doc = _rsi_doc()
    doc["nodes"].append(_node("macd", "macd", "indicatorType"))
    doc["edges"].append({"id": "x", "source": "macd", "target": "buy"})
    source = generate_mql5_code(doc, "Dead")

    assert "iMACD" not in source
    assert "InpMACD" not in source
    assert "ind1" not in source


def test_shared_atr_handle_for_stop_and_target():
    doc = _rsi_doc(sl={"method": "ATR_BASED", "atrMultiplier": 2}, tp={"method": "ATR_BASED"})
    source = generate_mql5_code(doc, "ATR")
    assert source.count("iATR(") == 1
    assert "tpAtrHandle" not in source
    assert "(atrBuffer[0] / _Point) * InpTPATRMultiplier" in source


def test_buy_only_fixed_lot_has_no_sell_side():
    nodes = [
        _timing(),
        _node("ma", "moving-average", "indicatorType", period=50),
        _node("buy", "place-buy", "tradingType", method="FIXED_LOT", fixedLot=0.5),
    ]
    source = generate_mql5_code(_doc(nodes, [("t1", "ma"), ("ma", "buy")]), "BuyOnly")

    assert "double buyLotSize = InpBuyLotSize;" in source
    assert "sinput" not in _line(source, "InpBuyLotSize =")
    assert "sellCondition" not in source
    assert "sellLotSize" not in source
    assert "OpenSell" not in source
    assert "CalculateLotSize" not in source
    assert "double slPips = 0; // No Stop Loss connected" in source
    assert "double tpPips = 0; // No Take Profit connected" in source


def test_condition_mode_joins_signals():
    nodes = [
        _timing(),
        _node("rsi", "rsi", "indicatorType"),
        _node("ma", "moving-average", "indicatorType"),
        _node("buy", "place-buy", "tradingType"),
    ]
    edges = [("t1", "rsi"), ("t1", "ma"), ("rsi", "buy"), ("ma", "buy")]

    and_line = _line(generate_mql5_code(_doc(nodes, edges), "And"), "bool buyCondition")
    or_line = _line(generate_mql5_code(_doc(nodes, edges, {"conditionMode": "OR"}), "Or"), "bool buyCondition")

    assert ") && (" in and_line
    assert ") || (" not in and_line
    assert ") || (" in or_line


def test_candlestick_third_bar_only_for_three_candle_patterns():
    def compile_patterns(patterns):
        nodes = [
            _timing(),
            _node("cp", "candlestick-pattern", "priceActionType", patterns=patterns),
            _node("buy", "place-buy", "tradingType"),
        ]
        return generate_mql5_code(_doc(nodes, [("t1", "cp"), ("cp", "buy")]), "Candles")

    assert "iOpen(_Symbol, PERIOD_CURRENT, 3)" not in compile_patterns(["ENGULFING_BULLISH", "DOJI"])
    assert "iOpen(_Symbol, PERIOD_CURRENT, 3)" in compile_patterns(["THREE_WHITE_SOLDIERS"])


def test_composite_entry_strategy_compiles_to_crossover():
    nodes = [
        _timing(),
        {
            "id": "es",
            "type": "ema-crossover-entry",
            "data": {"category": "entrystrategy", "entryType": "ema-crossover", "fastEma": 20, "slowEma": 50},
        },
    ]
    result = compile_strategy(_doc(nodes, [("t1", "es")]), "Cross")
    source = result.source

    assert "bool buyCondition = (DoubleLE(ind0Buffer[2], ind1Buffer[2]) && DoubleGT(ind0Buffer[1], ind1Buffer[1]));" in source
    assert "atrHandle = iATR(_Symbol, (ENUM_TIMEFRAMES)InpATRSLTimeframe, InpATRPeriod);" in source
    assert "enum ENUM_AS_TIMEFRAMES" in source
    assert "double tpPips = slPips * InpRiskReward;" in source
    assert "double buyLotSize = CalculateLotSize(InpBuyRiskPercent, slPips);" in source
    assert "double sellLotSize = CalculateLotSize(InpSellRiskPercent, slPips);" in source
    assert "es__" not in source


def test_project_name_and_header_are_sanitized():
    options = CompileOptions(copyright='Acme "Quant"')
    result = compile_strategy(_rsi_doc({"comment": "line1\nline2"}), "My Strategy!", options)

    assert result.context.project_name == "My_Strategy_"
    assert "//| My_Strategy_.mq5" in result.source
    assert '#property copyright "Acme \\"Quant\\""' in result.source
    assert '#property description "line1 line2"' in result.source


def test_warmup_covers_longest_indicator():
    nodes = [
        _timing(),
        _node("ma", "moving-average", "indicatorType", period=200),
        _node("buy", "place-buy", "tradingType"),
    ]
    doc = _doc(nodes, [("t1", "ma"), ("ma", "buy")])

    assert "if(Bars(_Symbol, PERIOD_CURRENT) < 200) return;" in generate_mql5_code(doc, "W")
    assert "if(Bars(_Symbol, PERIOD_CURRENT) < 500) return;" in generate_mql5_code(doc, "W", CompileOptions(warmup_bars=500))


def test_daily_limits_and_hedging_gates():
    settings = {"maxTradesPerDay": 2, "maxDailyLossPercent": 3, "allowHedging": True, "maxOpenTrades": 4}
    source = generate_mql5_code(_rsi_doc(settings), "Limits")

    assert "if(isTradingTime && positionsCount < 4 && newBar && tradesToday < 2 && !dailyLimitHit)" in source
    assert "tradesToday++;" in source
    assert "if(dayPLPercent <= -InpMaxDailyLossPct) dailyLimitHit = true;" in source
    assert "InpMaxDailyProfitPct" not in source
    assert "CountPositionsByType(POSITION_TYPE_BUY) == 0" not in source

    no_hedge = generate_mql5_code(_rsi_doc(), "NoHedge")
    assert "buyCondition && CountPositionsByType(POSITION_TYPE_BUY) < 1 && CountPositionsByType(POSITION_TYPE_SELL) == 0" in no_hedge


def test_graph_without_positions_emits_no_entry_logic():
    nodes = [_timing(), _node("rsi", "rsi", "indicatorType")]
    source = generate_mql5_code(_doc(nodes, [("t1", "rsi")]), "Signals")
    assert "buyCondition" not in source
    assert "slPips" not in source
    assert "ind0Handle = iRSI(" in source


def test_management_runs_outside_entry_gate():
    doc = _rsi_doc()
    doc["nodes"].append(_node("ts", "trailing-stop", "managementType"))
    doc["edges"].append({"id": "m", "source": "buy", "target": "ts"})
    source = generate_mql5_code(doc, "Managed")

    tick = source[source.index("void OnTick()"):source.index("Helper functions")]
    assert tick.index("//--- Execute Entry") < tick.index("ManageOpenPositions();")
    assert "void CheckTrailingStop(ulong ticket" in source


def _on_tick(source):
    return source[source.index("void OnTick()"):source.index("Helper functions")]


def test_wide_spread_blocks_entries_but_not_management():
    doc = _rsi_doc()
    doc["nodes"].append(_node("spread", "max-spread", "filterType", maxSpreadPips=3))
    doc["nodes"].append(_node("ts", "trailing-stop", "managementType"))
    doc["edges"].append({"id": "m", "source": "buy", "target": "ts"})
    tick = _on_tick(generate_mql5_code(doc, "Spread"))

    assert "bool spreadOk = (currentSpread <= 3 * _pipFactor);" in tick
    assert "if(isTradingTime && positionsCount < 1 && newBar && spreadOk)" in tick
    assert "ManageOpenPositions();" in tick
    # the only early return is the warm-up guard
    assert tick.count("return;") == 1


def test_atr_copy_failure_blocks_entries_but_not_management():
    doc = _rsi_doc(sl={"method": "ATR_BASED"})
    doc["nodes"].append(_node("ts", "trailing-stop", "managementType"))
    doc["edges"].append({"id": "m", "source": "buy", "target": "ts"})
    tick = _on_tick(generate_mql5_code(doc, "AtrGate"))

    assert "if(isTradingTime && positionsCount < 1 && newBar && atrOk)" in tick
    assert tick.index("bool atrOk") < tick.index("ManageOpenPositions();")
    assert tick.count("return;") == 1


def test_close_at_time_stops_new_entries_for_the_day():
    doc = _rsi_doc()
    doc["nodes"].append(_node("tx", "time-exit", "tradingType", exitMode="CLOSE_AT_TIME", closeHour=20))
    doc["edges"].append({"id": "x", "source": "buy", "target": "tx"})
    tick = _on_tick(generate_mql5_code(doc, "EndOfDay"))

    assert "if(isTradingTime && positionsCount < 1 && newBar && !pastCloseTime)" in tick
    assert tick.index("bool pastCloseTime = false;") < tick.index("//--- Entry Logic")
    assert tick.index("//--- Entry Logic") < tick.index("if(pastCloseTime)")
    assert tick.count("bool pastCloseTime = false;") == 1


def test_stop_and_limit_orders_use_pending_helpers():
    doc = _rsi_doc()
    doc["nodes"][2]["data"].update(orderType="STOP", pendingOffset=10)
    doc["nodes"][3]["data"].update(orderType="LIMIT")
    source = generate_mql5_code(doc, "Pending")

    assert "if(PlaceBuyStop(buyLotSize, slPips, tpPips, InpBuyPendingOffset))" in source
    assert "if(PlaceSellLimit(sellLotSize, slPips, tpPips, InpSellPendingOffset))" in source
    assert "bool PlaceBuyStop(double lot" in source
    assert "trade.BuyStop(" in source
    assert "trade.SellLimit(" in source
    assert "OpenBuy(" not in source
    assert "OpenSell(" not in source
    assert "InpPendingExpiryHours" in source
    assert "DeletePendingOrders(); // replace stale pending orders" in source
    # no range node asks for one-cancels-other
    assert "if(positionsCount > 0) DeletePendingOrders();" not in source


def test_range_breakout_pending_orders_cancel_each_other():
    nodes = [
        _timing(),
        _node("rb", "range-breakout", "priceActionType"),
        _node("buy", "place-buy", "tradingType", orderType="STOP"),
        _node("sell", "place-sell", "tradingType", orderType="STOP"),
    ]
    edges = [("t1", "rb"), ("rb", "buy"), ("rb", "sell")]
    source = generate_mql5_code(_doc(nodes, edges), "Oco")
    assert "if(positionsCount > 0) DeletePendingOrders();" in source

    nodes[1]["data"]["cancelOpposite"] = False
    assert "if(positionsCount > 0) DeletePendingOrders();" not in generate_mql5_code(_doc(nodes, edges), "NoOco")


def test_invalid_document_raises_before_output():
    doc = _doc([_node("rsi", "rsi", "indicatorType", period=-1)], [])
    with pytest.raises(GraphDocumentError) as exc:
        compile_strategy(doc, "Bad")
    assert exc.value.node_id == "rsi"


def test_strict_stop_loss_propagates():
    doc = _rsi_doc(sl={"method": "INDICATOR"})
    # the stop is linked to the position nodes only, never to the RSI
    lenient = generate_mql5_code(doc, "Lenient")
    assert "double slPips = 0; // WARNING" in lenient

    with pytest.raises(GraphDocumentError):
        compile_strategy(doc, "Strict", CompileOptions(strict_stop_loss=True))
