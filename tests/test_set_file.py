import math

from quantdsl_mql5.engine import GeneratedCode, InputParam, inputs_frame, render_set_file


def _code():
    code = GeneratedCode()
    code.add_input(InputParam("InpMagicNumber", "int", 123456, "Magic Number", False, "General Settings"))
    code.add_input(InputParam("InpTradeComment", "string", "My EA", "Trade Comment", False, "General Settings"))
    code.add_input(InputParam("InpRSI0Period", "int", 14, "RSI 1 Period"))
    code.add_input(InputParam("InpRSI0Overbought", "double", 70.0, "RSI 1 Overbought"))
    code.add_input(InputParam("InpCCI1Oversold", "double", -100.0, "CCI 2 Oversold"))
    code.add_input(InputParam("InpATRMultiplier", "double", 1.5, "ATR Multiplier for SL", True, "Stop Loss"))
    code.add_input(InputParam("InpATRSLTimeframe", "ENUM_AS_TIMEFRAMES", "TF_H1", "ATR Timeframe for SL", True, "Stop Loss"))
    code.add_input(InputParam("InpBBSLBuffer", "double", 0, "Additional buffer pips", False, "Stop Loss"))
    return code


def test_inputs_frame_columns_and_ranges():
    frame = inputs_frame(_code())

    assert list(frame.columns) == ["name", "type", "value", "group", "optimizable", "start", "step", "stop"]
    assert len(frame) == 8

    rows = frame.set_index("name")
    assert rows.loc["InpRSI0Period", "group"] == "Strategy Parameters"
    assert (rows.loc["InpRSI0Period", "start"], rows.loc["InpRSI0Period", "step"], rows.loc["InpRSI0Period", "stop"]) == (
        7.0,
        1.0,
        21.0,
    )
    assert rows.loc["InpRSI0Overbought", "start"] == 35.0
    assert rows.loc["InpRSI0Overbought", "stop"] == 105.0
    # negative values keep start below stop
    assert rows.loc["InpCCI1Oversold", "start"] == -150.0
    assert rows.loc["InpCCI1Oversold", "stop"] == -50.0
    assert math.isnan(rows.loc["InpTradeComment", "start"])
    assert math.isnan(rows.loc["InpATRSLTimeframe", "step"])
    assert not rows.loc["InpMagicNumber", "optimizable"]
    assert rows.loc["InpMagicNumber", "step"] == 12346.0


def test_render_set_file():
    text = render_set_file(_code())
    lines = text.splitlines()

    assert text.endswith("\n")
    assert lines[0] == "; generated by QuantDSL strategy compiler"
    assert lines[1] == "; General Settings"
    assert "InpMagicNumber=123456||61728||12346||185184||N" in lines
    assert "InpTradeComment=My EA" in lines
    assert "; Strategy Parameters" in lines
    assert "InpRSI0Period=14||7||1||21||Y" in lines
    assert "InpRSI0Overbought=70||35||7||105||Y" in lines
    assert "InpCCI1Oversold=-100||-150||10||-50||Y" in lines
    assert "InpATRMultiplier=1.5||0.75||0.15||2.25||Y" in lines
    assert "InpATRSLTimeframe=TF_H1" in lines
    assert "InpBBSLBuffer=0||0||0||0||N" in lines
    assert lines.count("; Stop Loss") == 1
