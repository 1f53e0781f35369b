#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Dependencies:
    pip install openai tqdm pymupdf pillow httpx

Environment:
    OPENAI_API_KEY=<your key>

Example:
    python review_graphics.py designs.csv \
        --output ./reviews/graphics-review-results.csv \
        --image-column image_url --brief-column brief \
        --limit 25 --save-raw
"""
from __future__ import annotations

import argparse
import json
import logging
import os
import signal
import sys
import time
from functools import partial
from pathlib import Path
from typing import Dict, List, Sequence

from tqdm import tqdm

from review_csv import read_csv, write_csv
from review_normalize import DEFAULT_SCALE, normalize_reference
from review_pipeline import (
    DEFAULT_BRIEF_COLUMN,
    DEFAULT_IMAGE_COLUMN,
    LIMIT_ALL,
    LIMIT_COUNT,
    ReviewPipeline,
    RowResult,
    RunConfiguration,
    RunResult,
    RunState,
    ValidationError,
)
from review_rubric import AVERAGE_COLUMN, CATEGORIES
from review_scoring import (
    DEFAULT_MODEL,
    DEFAULT_TIMEOUT,
    OPENAI_BASE_URL,
    CancellationToken,
    ScoringClient,
)

DEFAULT_OUTPUT = Path("graphics-review-results.csv")

EXIT_OK = 0
EXIT_INVALID = 2
EXIT_CANCELLED = 130


###############################################################################
# Raw capture                                                                 #
###############################################################################

def raw_path_for(out_file: Path) -> Path:
    return out_file.with_name(f"{out_file.stem}_raw.jsonl")


def raw_record(result: RowResult, image_column: str) -> Dict[str, object]:
    return {
        "row": result.index + 1,
        "image": result.row.get(image_column, ""),
        "raw": result.rubric.raw if result.rubric is not None else "",
        "warnings": result.rubric.warnings if result.rubric is not None else [],
        "error": result.error,
        "ts": time.time(),
    }


def summarize(run: RunResult) -> Dict[str, object]:
    failed = sum(1 for row in run.rows if row.get("error"))
    averages: List[float] = []
    for row in run.rows:
        value = row.get(AVERAGE_COLUMN)
        if value not in (None, ""):
            averages.append(float(value))
    return {
        "processed": len(run.rows),
        "succeeded": len(run.rows) - failed,
        "failed": failed,
        "mean_average": round(sum(averages) / len(averages), 2) if averages else None,
    }


###############################################################################
# CLI                                                                         #
###############################################################################

def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    ap = argparse.ArgumentParser(
        description="Score graphics linked from a CSV against a design rubric",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    ap.add_argument("csv", type=Path, nargs="?",
                    help="Input CSV with a header row and an image link column")
    ap.add_argument("--output", type=Path, default=DEFAULT_OUTPUT,
                    help="Where to write the reviewed CSV")
    ap.add_argument("--image-column", default=DEFAULT_IMAGE_COLUMN,
                    help="Column holding the image URL, PDF URL or local path")
    ap.add_argument("--brief-column", default=DEFAULT_BRIEF_COLUMN,
                    help="Optional column with the design brief ('' to disable)")
    ap.add_argument("--limit", type=int, default=None,
                    help="Only review the first N rows (default: all rows)")
    ap.add_argument("--api-key", help="API key (or env OPENAI_API_KEY)")
    ap.add_argument("--model", default=DEFAULT_MODEL,
                    help="Vision-capable chat model")
    ap.add_argument("--base-url", default=OPENAI_BASE_URL,
                    help="OpenAI-compatible API base URL")
    ap.add_argument("--timeout", type=float, default=DEFAULT_TIMEOUT,
                    help="Per-request timeout (seconds)")
    ap.add_argument("--pdf-scale", type=float, default=DEFAULT_SCALE,
                    help="Zoom used when rendering the first page of a PDF")
    ap.add_argument("--save-raw", action="store_true",
                    help="Save raw model responses as JSONL next to the CSV")
    ap.add_argument("--log", default="INFO",
                    help="Logging level (e.g., DEBUG, INFO, WARNING)")
    ap.add_argument("--list-categories", action="store_true",
                    help="Print the rubric categories and exit")
    return ap.parse_args(argv)


def build_config(args: argparse.Namespace) -> RunConfiguration:
    return RunConfiguration(
        api_key=(args.api_key or os.getenv("OPENAI_API_KEY") or "").strip(),
        image_column=args.image_column,
        brief_column=args.brief_column or None,
        limit_mode=LIMIT_COUNT if args.limit is not None else LIMIT_ALL,
        limit_count=args.limit,
    )


def main(argv: Sequence[str] | None = None) -> int:
    args = parse_args(argv)

    if args.list_categories:
        print("Rubric categories:")
        for c in CATEGORIES:
            print(f"  {c.label:22s} don'ts: {c.donts}")
        return EXIT_OK

    logging.basicConfig(
        level=getattr(logging, args.log.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(message)s",
    )

    if args.csv is None:
        logging.critical("No input CSV given")
        return EXIT_INVALID

    try:
        table = read_csv(args.csv)
    except OSError as exc:
        logging.critical("Could not read %s: %s", args.csv, exc)
        return EXIT_INVALID

    config = build_config(args)
    scorer = ScoringClient(
        config.api_key,
        model=args.model,
        base_url=args.base_url,
        timeout=float(args.timeout),
    )
    pipeline = ReviewPipeline(scorer, normalizer=partial(normalize_reference, scale=args.pdf_scale))
    token = CancellationToken()

    try:
        steps = pipeline.start(table, config, token)
    except ValidationError as exc:
        logging.critical("%s", exc)
        return EXIT_INVALID

    def _on_sigint(signum, frame) -> None:  # noqa: ARG001
        logging.warning("Cancelling – finishing the current row (Ctrl-C again to abort)")
        token.cancel()
        signal.signal(signal.SIGINT, signal.default_int_handler)

    previous_handler = signal.signal(signal.SIGINT, _on_sigint)
    raw_fp = None
    if args.save_raw:
        args.output.parent.mkdir(parents=True, exist_ok=True)
        raw_fp = raw_path_for(args.output).open("w", encoding="utf-8")
    try:
        with tqdm(total=pipeline.progress.total, desc="review", unit="row") as bar:
            for result, progress in steps:
                bar.update(progress.done - bar.n)
                if raw_fp is not None:
                    raw_fp.write(json.dumps(raw_record(result, config.image_column),
                                            ensure_ascii=False) + "\n")
    finally:
        signal.signal(signal.SIGINT, previous_handler)
        if raw_fp is not None:
            raw_fp.close()
        scorer.close()

    run = pipeline.last_result
    if run is None:
        raise RuntimeError("run finished without recording a result")
    if write_csv(run.rows, args.output):
        logging.info("Wrote %d rows → %s", len(run.rows), args.output.resolve())

    stats = summarize(run)
    logging.info(
        "%s: %d processed, %d ok, %d failed, mean average %s",
        run.state.value, stats["processed"], stats["succeeded"], stats["failed"],
        stats["mean_average"] if stats["mean_average"] is not None else "n/a",
    )
    return EXIT_CANCELLED if run.state is RunState.CANCELLED else EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
