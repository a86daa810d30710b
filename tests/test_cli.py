import importlib.util
import json
import logging
import sys
from pathlib import Path

import pytest

from quantdsl_mql5.dsl.presets import STRATEGY_PRESETS
from quantdsl_mql5.utils.logging import get_logger


SCRIPT = Path(__file__).resolve().parents[1] / "scripts" / "compile_strategy.py"


def _load_cli():
    spec = importlib.util.spec_from_file_location("compile_strategy_cli", SCRIPT)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


def test_preset_to_files(tmp_path):
    cli = _load_cli()
    out = tmp_path / "build" / "Ema.mq5"
    set_path = tmp_path / "Ema.set"

    rc = cli.main(["--preset", "ema-crossover", "--out", str(out), "--set", str(set_path)])

    assert rc == 0
    source = out.read_text(encoding="utf-8")
    assert "//| EMA_Crossover.mq5" in source
    assert "sinput int InpMagicNumber = 300002; // Magic Number" in source
    set_text = set_path.read_text(encoding="utf-8")
    assert set_text.startswith("; generated by QuantDSL strategy compiler\n")
    assert "InpMagicNumber=300002||" in set_text


def test_document_to_stdout_uses_file_name(tmp_path, capsys):
    cli = _load_cli()
    doc_path = tmp_path / "my_strategy.json"
    doc_path.write_text(json.dumps(STRATEGY_PRESETS[3].build()), encoding="utf-8")

    rc = cli.main([str(doc_path), "--warmup-bars", "250"])

    assert rc == 0
    out = capsys.readouterr().out
    assert "//| my_strategy.mq5" in out
    assert "if(Bars(_Symbol, PERIOD_CURRENT) < 250) return;" in out


def test_list_presets(capsys):
    cli = _load_cli()
    assert cli.main(["--list-presets"]) == 0
    out = capsys.readouterr().out
    for preset in STRATEGY_PRESETS:
        assert preset.id in out


def test_invalid_document_returns_error_code(tmp_path):
    cli = _load_cli()
    doc_path = tmp_path / "bad.json"
    doc_path.write_text(
        json.dumps({"nodes": [{"id": "x", "type": "ichimoku", "data": {"indicatorType": "ichimoku"}}], "edges": []}),
        encoding="utf-8",
    )
    out = tmp_path / "bad.mq5"

    assert cli.main([str(doc_path), "--out", str(out)]) == 1
    assert not out.exists()


def test_usage_errors_exit():
    cli = _load_cli()
    with pytest.raises(SystemExit):
        cli.main([])
    with pytest.raises(SystemExit):
        cli.main(["--preset", "martingale"])


def test_log_records_stay_off_stdout(monkeypatch):
    # stdout carries the generated source when --out is absent
    root = logging.getLogger()
    monkeypatch.setattr(root, "handlers", [])
    monkeypatch.setattr(root, "level", root.level)

    get_logger("quantdsl_mql5.engine.compiler")

    assert len(root.handlers) == 1
    assert root.handlers[0].stream is sys.stderr
