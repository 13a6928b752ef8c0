"""
src/main.py

このファイルは「リポジトリ直下（src/）での実行エントリポイント」です。

設計意図:
- CLI/バッチ前提の“入口”を 1 箇所（src/main.py）に固定する
- 入口の I/O 境界（引数→EngineContext / CSV 読み書き）はここに閉じ、計算は pipeline / domain に委譲する
- 例外→終了コードの変換もここで一括して行う

Usage:
  python src/main.py convert data/AAPL_1d.csv --out out/AAPL_enriched.csv
  python src/main.py episodes data/AAPL_1d.csv data/MSFT_1d.csv --out-dir out/ --interval 1d
  python src/main.py episodes data/AAPL_1d.csv --out-dir out/ --mode inference --scaler out/scaler.json
"""

from __future__ import annotations

import argparse
import logging
import sys
from collections import defaultdict
from pathlib import Path
from typing import Sequence

from rich.console import Console
from rich.logging import RichHandler

from market_episode_engine.config.loader import load_config
from market_episode_engine.config.resolver import indicator_settings, resolve_config
from market_episode_engine.contract.errors import (
    ConfigurationError,
    ContractError,
    EpisodeEngineError,
)
from market_episode_engine.contract.schemas.reports import RunMode
from market_episode_engine.domain.rules.chart_view import format_bars_table
from market_episode_engine.domain.rules.enrichment import enrich_sources
from market_episode_engine.domain.rules.features import composite_label
from market_episode_engine.pipeline.batch import PipelineServices, run_batch
from market_episode_engine.pipeline.context import EngineContext, build_engine_context
from market_episode_engine.reports.csv_export import (
    read_raw_bars_csv,
    ticker_from_filename,
    write_enriched_csv,
    write_episodes_csv,
    write_feature_csv,
)
from market_episode_engine.reports.json_report import load_scaler, save_scaler, write_batch_report

logger = logging.getLogger("main")

EXIT_OK = 0
EXIT_DATA_ERROR = 1
EXIT_USAGE_ERROR = 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="market-episode-engine", description="Bars → indicators → episodes → features")
    parser.add_argument("--config", type=Path, help="JSON / YAML config file")
    parser.add_argument("--log-level", default="INFO", choices=["DEBUG", "INFO", "WARNING", "ERROR"])

    sub = parser.add_subparsers(dest="command", required=True)

    conv = sub.add_parser("convert", help="Raw bar CSV(s) → enriched CSV")
    conv.add_argument("inputs", nargs="+", type=Path, help="Raw bar CSV files (merged, deduplicated)")
    conv.add_argument("--out", type=Path, required=True, help="Enriched CSV path")
    conv.add_argument("--ticker", help="Ticker for rows without one (default: from file name)")
    conv.add_argument("--show", type=int, default=0, help="Print the last N enriched bars")

    epi = sub.add_parser("episodes", help="Raw bar CSV(s) → episodes / features / scaler")
    epi.add_argument("inputs", nargs="+", type=Path, help="Raw bar CSV files (grouped by ticker)")
    epi.add_argument("--out-dir", type=Path, required=True, help="Output directory")
    epi.add_argument("--interval", help="Bar interval used to pick the reversal threshold")
    epi.add_argument("--threshold", type=float, help="Reversal threshold (ratio); overrides --interval")
    epi.add_argument("--mode", choices=[m.value for m in RunMode], default=RunMode.TRAINING.value)
    epi.add_argument("--scaler", type=Path, help="Saved scaler JSON (required in inference mode)")
    return parser


def configure_logging(level: str) -> None:
    """root logger に RichHandler を1つだけ付ける（二重登録しない）。"""
    root = logging.getLogger()
    if not any(isinstance(h, RichHandler) for h in root.handlers):
        root.addHandler(RichHandler(console=Console(stderr=True), show_path=True))
    root.setLevel(level.upper())


def _group_by_ticker(paths: Sequence[Path], ticker: str | None = None) -> dict[str, list[Path]]:
    """入力ファイルをティッカーごとにまとめる（--ticker 指定時は全ファイルを1本扱い）."""
    grouped: dict[str, list[Path]] = defaultdict(list)
    for path in paths:
        grouped[ticker or ticker_from_filename(path)].append(path)
    return grouped


def _cmd_convert(args: argparse.Namespace, config: dict) -> int:
    settings = indicator_settings(config)
    enriched: list = []
    for ticker, paths in _group_by_ticker(args.inputs, args.ticker).items():
        # ティッカーごとに別系列として enrichment する
        series = enrich_sources([read_raw_bars_csv(p, ticker=ticker) for p in paths], settings=settings)
        enriched.extend(series)
        if args.show > 0:
            print(format_bars_table(bars=series, last_n=args.show, tablefmt=config["report"]["tablefmt"]))
    write_enriched_csv(enriched, args.out)
    return EXIT_OK


def _cmd_episodes(args: argparse.Namespace, config: dict) -> int:
    files_by_ticker = _group_by_ticker(args.inputs)

    def load_bars(ctx: EngineContext, ticker: str) -> list:
        merged = []
        for path in files_by_ticker[ticker]:
            merged.extend(read_raw_bars_csv(path, ticker=ticker))
        return merged

    ctx = build_engine_context(
        mode=args.mode,
        interval=args.interval,
        config=config,
        threshold_pct=args.threshold,
    )
    scaler = load_scaler(args.scaler) if args.scaler is not None else None

    result = run_batch(ctx, list(files_by_ticker), PipelineServices(load_bars=load_bars), scaler=scaler)

    out_dir: Path = args.out_dir
    write_episodes_csv(result.episodes, out_dir / "episodes.csv")
    write_feature_csv(
        result.features,
        out_dir / "features.csv",
        labels=[composite_label(e) for e in result.episodes],
    )
    if ctx.mode is RunMode.TRAINING and result.scaler is not None:
        save_scaler(result.scaler, out_dir / "scaler.json")
    if result.report is not None:
        write_batch_report(result.report, out_dir / "report.json")
    return EXIT_OK


def run(argv: Sequence[str] | None = None) -> int:
    """
    共通実行関数（CLI/バッチから利用可能な薄い入口）。

    Args:
        argv: コマンドライン引数（sys.argv[1:] 相当）。None の場合は sys.argv[1:] を使用。

    Returns:
        終了コード。
        - 0: 正常終了
        - 1: データ起因の失敗（読めない CSV、全ティッカースキップなど）
        - 2: 引数・設定・契約の誤り（実行不能）
    """
    if argv is None:
        argv = sys.argv[1:]

    parser = build_parser()
    try:
        args = parser.parse_args(list(argv))
    except SystemExit as e:
        return int(e.code or 0)

    configure_logging(args.log_level)

    try:
        user_config = load_config(args.config) if args.config is not None else None
        config = resolve_config(user_config)
        if args.command == "convert":
            return _cmd_convert(args, config)
        return _cmd_episodes(args, config)
    except (ConfigurationError, ContractError) as e:
        logger.error("%s: %s", e.code, e)
        return EXIT_USAGE_ERROR
    except EpisodeEngineError as e:
        logger.error("%s: %s", e.code, e)
        return EXIT_DATA_ERROR


def main() -> None:
    """スクリプト実行用 main。"""
    exit_code = run()
    raise SystemExit(exit_code)


if __name__ == "__main__":
    main()
