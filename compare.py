"""
STT Session Compare
===================

Plays every WAV asset into one shared recording, transcribes it with all
configured backends side by side, and writes an HTML comparison per asset
plus a TSV summary.

Architecture
------------
1. **Backend registry**: one BackendSpec per backend with credentials set
   in the environment (see sttcompare/stt_backend_registry.py). With
   ``--offline`` a single echo backend replays each asset's phrase instead,
   which exercises the whole pipeline without network access.

2. **Per-asset comparison**: assets are processed sequentially (streaming is
   real-time so we can't rush it), but within an asset all backends run in
   parallel on the same audio. One backend failing does not affect the others.

3. **Result collation**: every (backend, asset) pair becomes one TSV row with
   the live accuracy score, response time and the DiffReport metrics
   (when the asset has a phrase).

Usage
-----
    source .venv/bin/activate
    python compare.py [--offline] [--realtime-factor 0.0]
"""
from __future__ import annotations

import argparse
import asyncio
import sys
from dataclasses import dataclass
from datetime import datetime
from logging import INFO, getLogger
from pathlib import Path
from typing import Optional

from config import ASSETS_DIR, OUT_PATH, RECORDING_REALTIME_FACTOR
from helpers.diff import DiffReport, write_comparison_html
from helpers.load_assets import AssetPair, iter_assets
from helpers.transcribe import compare_wav
from sttcompare.stt_backend_registry import BackendSpec, build_backend_specs, echo_backend_spec
from sttcompare.stt_compare import SessionReport
from sttcompare.stt_errors import CaptureError
from sttcompare.utils import setup_logging

logger = getLogger(__name__)


# ---------------------------------------------------------------------------
# Result container
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class CompareRow:
    backend: str
    file_name: str
    report: Optional[SessionReport]  # None when the asset could not be played
    diff: Optional[DiffReport]  # None without a phrase or on error
    html_path: Optional[Path]
    error: Optional[str]


# ---------------------------------------------------------------------------
# Per-asset runner
# ---------------------------------------------------------------------------

async def run_asset(specs: list[BackendSpec], pair: AssetPair, ts: str, realtime_factor: float) -> list[CompareRow]:
    """Compare all backends on one asset. Returns one row per backend."""
    phrase = pair.phrase
    logger.info("[COMPARE] Processing %s ...", pair.wav.name)
    try:
        outcome = await compare_wav(specs, pair.wav, phrase, realtime_factor=realtime_factor)
    except CaptureError as exc:
        logger.error("[COMPARE] %s: cannot play: %s", pair.wav.name, exc)
        return [CompareRow(s.name, pair.wav.name, None, None, None, str(exc)) for s in specs]

    html_path = write_comparison_html(OUT_PATH / f"{ts}_{pair.wav.stem}.compare.html",
                                      title=pair.wav.name, outcome=outcome)
    rows = []
    for r in outcome.reports:
        diff = DiffReport(phrase, r.text) if phrase is not None and r.error is None else None
        rows.append(CompareRow(r.name, pair.wav.name, r, diff, html_path, r.error))
    return rows


# ---------------------------------------------------------------------------
# TSV report writer
# ---------------------------------------------------------------------------

def _fmt(value: Optional[float]) -> str:
    return "" if value is None else f"{value:.2f}"


def write_tsv(rows: list[CompareRow], ts: str) -> Path:
    """Write comparison rows to TSV. Metric columns are derived from DiffReport.to_metrics_dict()."""
    rows_sorted = sorted(rows, key=lambda r: (r.backend, r.file_name))

    # Discover metric columns from the first row with a diff
    sample = next((r.diff for r in rows_sorted if r.diff), None)
    metric_cols = list(sample.to_metrics_dict()) if sample else []

    header = ["backend", "file", "finish_reason", "response_time_s", "accuracy"] + metric_cols + ["report", "error"]
    lines = ["\t".join(header)]
    for r in rows_sorted:
        rep = r.report
        finish = rep.finish_reason.value if rep and rep.finish_reason else ""
        metrics = r.diff.to_metrics_dict() if r.diff else {}
        line = [r.backend, r.file_name, finish, _fmt(rep.response_time_s if rep else None),
                _fmt(rep.accuracy if rep else None)]
        line += [metrics.get(c, "") for c in metric_cols]
        line += [r.html_path.name if r.html_path else "", r.error or ""]
        lines.append("\t".join(line))

    tsv_path = OUT_PATH / f"{ts}_compare.tsv"
    tsv_path.write_text("\n".join(lines) + "\n", encoding="utf-8")
    return tsv_path


def print_summary(rows: list[CompareRow], ts: str, tsv_path: Path) -> None:
    width = 78
    print(f"\n{'=' * width}")
    print(f"COMPARISON RESULTS - {ts}")
    print(f"{'=' * width}")
    print(f"{'Backend':<12} {'File':<16} {'Finished':<17} {'Resp s':>6} {'Acc%':>6} {'WER%':>6} {'CER%':>6}")
    print(f"{'-' * width}")
    for r in sorted(rows, key=lambda x: (x.backend, x.file_name)):
        rep = r.report
        if r.error or rep is None:
            print(f"{r.backend:<12} {r.file_name:<16} {'FAILED':<17} {r.error or ''}")
            continue
        finish = rep.finish_reason.value if rep.finish_reason else "no response"
        resp = f"{rep.response_time_s:>6.2f}" if rep.response_time_s is not None else f"{'-':>6}"
        acc = f"{rep.accuracy:>5.1f}%" if rep.accuracy is not None else f"{'-':>6}"
        wer = f"{r.diff.word_error_rate:>5.1f}%" if r.diff else f"{'-':>6}"
        cer = f"{r.diff.character_error_rate:>5.1f}%" if r.diff else f"{'-':>6}"
        print(f"{r.backend:<12} {r.file_name:<16} {finish:<17} {resp} {acc} {wer} {cer}")
    print(f"{'=' * width}")
    print(f"TSV: {tsv_path}")


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------

def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Compare realtime STT backends on WAV assets.")
    parser.add_argument("--assets", type=Path, default=ASSETS_DIR, help="Directory with *.wav (+ *.txt) assets.")
    parser.add_argument("--offline", action="store_true",
                        help="Use an echo backend replaying each asset's phrase instead of real backends.")
    parser.add_argument("--realtime-factor", type=float, default=RECORDING_REALTIME_FACTOR,
                        help="Playback speed, 1.0 = real-time, 0.0 = as fast as possible.")
    return parser.parse_args(argv)


async def main(argv: Optional[list[str]] = None) -> None:
    args = parse_args(argv)
    ts = datetime.now().strftime("%Y%m%d_%H%M%S")

    specs = [] if args.offline else build_backend_specs()
    if not args.offline and not specs:
        logger.error("No backends configured. Set API keys in .env and retry (or use --offline).")
        sys.exit(1)

    pairs = list(iter_assets(args.assets))
    if not pairs:
        logger.error("No WAV assets found in %s.", args.assets)
        sys.exit(1)

    logger.info("Comparison starting: %s, %d file(s).",
                "offline echo" if args.offline else f"{len(specs)} backend(s)", len(pairs))

    all_rows: list[CompareRow] = []
    for pair in pairs:
        asset_specs = [echo_backend_spec(pair.phrase or "")] if args.offline else specs
        all_rows += await run_asset(asset_specs, pair, ts, args.realtime_factor)

    tsv_path = write_tsv(all_rows, ts)
    logger.info("Comparison complete. TSV report: %s", tsv_path)
    print_summary(all_rows, ts, tsv_path)


if __name__ == "__main__":
    setup_logging(INFO)
    asyncio.run(main())
