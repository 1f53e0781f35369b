#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Batch review pipeline.

Rows are processed strictly one after another: normalize the image
reference, score it, flatten the rubric into columns. A failing row is
recorded with an `error` cell and the run moves on; only the cancellation
token stops a run early.
"""
from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

from review_csv import CsvTable
from review_normalize import NormalizationError, normalize_reference
from review_rubric import REVIEW_COLUMN, RubricResult, flatten_scores
from review_scoring import CancellationToken, ScoringError

DEFAULT_IMAGE_COLUMN = "image_url"
DEFAULT_BRIEF_COLUMN = "brief"
MISSING_IMAGE_ERROR = "Missing image URL"

LIMIT_ALL = "all"
LIMIT_COUNT = "count"

Normalizer = Callable[[str], str]


class ValidationError(Exception):
    """A run cannot start; the message is meant for the user."""


class RunState(enum.Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class ProgressState:
    done: int = 0
    total: int = 0

    @property
    def percent(self) -> int:
        return round(self.done / self.total * 100) if self.total else 0


@dataclass
class RunConfiguration:
    api_key: str
    image_column: str = DEFAULT_IMAGE_COLUMN
    brief_column: Optional[str] = DEFAULT_BRIEF_COLUMN
    limit_mode: str = LIMIT_ALL
    limit_count: Any = None


@dataclass
class RowResult:
    index: int
    row: Dict[str, Any]
    error: Optional[str] = None
    rubric: Optional[RubricResult] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class RunResult:
    state: RunState
    rows: List[Dict[str, Any]] = field(default_factory=list)
    progress: ProgressState = field(default_factory=ProgressState)


###############################################################################
# Validation                                                                  #
###############################################################################

def resolve_limit(config: RunConfiguration, row_count: int) -> int:
    if config.limit_mode != LIMIT_COUNT:
        return row_count
    try:
        requested = int(config.limit_count)
    except (TypeError, ValueError):
        return 0
    if isinstance(config.limit_count, float) and not config.limit_count.is_integer():
        return 0
    return min(requested, row_count)


def validate_run(table: CsvTable, config: RunConfiguration) -> int:
    """
    Check everything a run needs before any network call. Returns the number
    of rows to process; raises ValidationError with the first problem found.
    """
    if not config.api_key:
        raise ValidationError("Please enter your OpenAI API key.")
    if not table.rows:
        raise ValidationError("Please upload a CSV first.")
    image_col = config.image_column
    if not image_col or image_col not in table.fields:
        raise ValidationError(
            f"Select a valid image column (current: {image_col or 'none'})"
        )
    limit = resolve_limit(config, len(table.rows))
    if limit <= 0:
        raise ValidationError("Please set a valid review count.")
    return limit


###############################################################################
# Per-row work                                                                #
###############################################################################

def _cell(row: Dict[str, Any], column: Optional[str]) -> str:
    if not column:
        return ""
    return str(row.get(column) or "").strip()


class ReviewPipeline:
    """
    Single-flight batch runner. The caller must not start a second run while
    one is being consumed.
    """

    def __init__(self, scorer: Any, normalizer: Normalizer = normalize_reference) -> None:
        self.scorer = scorer
        self.normalizer = normalizer
        self.state = RunState.IDLE
        self.progress = ProgressState()
        self.last_result: Optional[RunResult] = None
        self._results: List[Dict[str, Any]] = []

    @property
    def results(self) -> List[Dict[str, Any]]:
        return list(self._results)

    def clear(self) -> None:
        self._results = []
        self.last_result = None
        self.progress = ProgressState()

    def _review_row(
        self,
        index: int,
        row: Dict[str, Any],
        config: RunConfiguration,
        cancel_token: CancellationToken,
    ) -> RowResult:
        image_ref = _cell(row, config.image_column)
        brief = _cell(row, config.brief_column)

        if not image_ref:
            return RowResult(index, {**row, "error": MISSING_IMAGE_ERROR}, MISSING_IMAGE_ERROR)

        try:
            image_url = self.normalizer(image_ref)
            rubric = self.scorer.score(image_url, brief, cancel_token)
        except (NormalizationError, ScoringError) as exc:
            message = str(exc) or exc.__class__.__name__
            logging.warning("Row %d (%s) failed – %s", index + 1, image_ref, message)
            return RowResult(index, {**row, REVIEW_COLUMN: "", "error": message}, message)

        flat, review = flatten_scores(rubric)
        return RowResult(index, {**row, REVIEW_COLUMN: review, **flat}, rubric=rubric)

    def _iterate(
        self,
        table: CsvTable,
        config: RunConfiguration,
        limit: int,
        cancel_token: CancellationToken,
    ) -> Iterator[Tuple[RowResult, ProgressState]]:
        # Anything but running off the end of the loop counts as a stop.
        state = RunState.CANCELLED
        try:
            for i in range(limit):
                result = self._review_row(i, table.rows[i], config, cancel_token)
                self._results.append(result.row)
                self.progress = ProgressState(done=i + 1, total=limit)
                yield result, self.progress
                if cancel_token.cancelled:
                    logging.info("Run cancelled after %d/%d rows", i + 1, limit)
                    break
            else:
                state = RunState.COMPLETED
        finally:
            self.last_result = RunResult(state=state, rows=list(self._results), progress=self.progress)
            self.state = RunState.IDLE

    def start(
        self,
        table: CsvTable,
        config: RunConfiguration,
        cancel_token: CancellationToken | None = None,
    ) -> Iterator[Tuple[RowResult, ProgressState]]:
        """
        Validate and begin a run. Raises ValidationError without touching any
        state when the run cannot start; otherwise returns an iterator that
        yields one (RowResult, ProgressState) pair per processed row.
        """
        limit = validate_run(table, config)
        self._results = []
        self.last_result = None
        self.progress = ProgressState(done=0, total=limit)
        self.state = RunState.RUNNING
        logging.info("Reviewing %d of %d rows", limit, len(table.rows))
        return self._iterate(table, config, limit, cancel_token or CancellationToken())

    def run(
        self,
        table: CsvTable,
        config: RunConfiguration,
        cancel_token: CancellationToken | None = None,
        on_progress: Callable[[RowResult, ProgressState], None] | None = None,
    ) -> RunResult:
        for result, progress in self.start(table, config, cancel_token):
            if on_progress is not None:
                on_progress(result, progress)
        if self.last_result is None:
            raise RuntimeError("run finished without recording a result")
        return self.last_result
