"""
Compile a strategy graph document (JSON, as exported by the visual builder)
into an MQL5 Expert Advisor source file.

Optionally writes an MT5 strategy-tester .set file with the optimizer
ranges of every input.

Usage examples:
  uv run python scripts/compile_strategy.py my_strategy.json --out MyStrategy.mq5
  uv run python scripts/compile_strategy.py my_strategy.json --name "My Strategy" --set MyStrategy.set
  # Compile one of the built-in presets:
  uv run python scripts/compile_strategy.py --preset ema-crossover --out EmaCrossover.mq5
  uv run python scripts/compile_strategy.py --list-presets
"""

from __future__ import annotations

import argparse
import json
import os
import sys
from typing import List, Optional

from quantdsl_mql5.dsl.presets import STRATEGY_PRESETS, get_preset
from quantdsl_mql5.engine import CompileOptions, compile_strategy, render_set_file
from quantdsl_mql5.utils.errors import GenerationError
from quantdsl_mql5.utils.logging import get_logger, set_verbosity


log = get_logger("quantdsl_mql5.cli")


def _write(path: str, text: str) -> None:
    folder = os.path.dirname(path)
    if folder:
        os.makedirs(folder, exist_ok=True)
    with open(path, "w", encoding="utf-8", newline="\n") as f:
        f.write(text)
    log.info("Wrote %s (%d bytes)", path, len(text.encode("utf-8")))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Compile a strategy graph document into MQL5 source")
    parser.add_argument("document", nargs="?", help="Path to the graph document (JSON)")
    parser.add_argument("--preset", type=str, default=None, help="Compile a built-in preset instead of a file")
    parser.add_argument("--list-presets", action="store_true", help="List the built-in presets and exit")
    parser.add_argument(
        "--name",
        type=str,
        default=None,
        help="Project name for the file header (default: document file name or preset name)",
    )
    parser.add_argument("--out", type=str, default=None, help="Output .mq5 path (default: stdout)")
    parser.add_argument("--set", dest="set_path", type=str, default=None, help="Also write a tester .set file")
    parser.add_argument(
        "--strict-stop-loss",
        action="store_true",
        help="Fail when an indicator-based stop loss has no connected indicator",
    )
    parser.add_argument("--warmup-bars", type=int, default=100, help="Minimum bars before any entry (default: 100)")
    parser.add_argument("--max-retries", type=int, default=3, help="Order retries on requote/price-off (default: 3)")
    parser.add_argument("--retry-delay-ms", type=int, default=500, help="Delay between order retries (default: 500)")
    parser.add_argument("--copyright", type=str, default="QuantDSL", help="#property copyright text")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    set_verbosity(args.verbose)

    if args.list_presets:
        for preset in STRATEGY_PRESETS:
            print(f"{preset.id:<16} {preset.name}: {preset.description}")
        return 0

    if args.preset:
        try:
            preset = get_preset(args.preset)
        except KeyError as exc:
            parser.error(str(exc))
        document = preset.build()
        name = args.name or preset.name
    elif args.document:
        with open(args.document, "r", encoding="utf-8") as f:
            document = json.load(f)
        name = args.name or os.path.splitext(os.path.basename(args.document))[0]
    else:
        parser.error("either a document path or --preset is required")

    options = CompileOptions(
        strict_stop_loss=args.strict_stop_loss,
        warmup_bars=args.warmup_bars,
        max_order_retries=args.max_retries,
        retry_delay_ms=args.retry_delay_ms,
        copyright=args.copyright,
    )

    try:
        result = compile_strategy(document, name, options)
    except GenerationError as exc:
        log.error("Compile failed: %s", exc)
        return 1

    if args.out:
        _write(args.out, result.source)
    else:
        sys.stdout.write(result.source)

    if args.set_path:
        _write(args.set_path, render_set_file(result.code))

    return 0


if __name__ == "__main__":
    sys.exit(main())
