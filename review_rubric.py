#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Design-critique rubric: categories, prompt text, typed results and the
flattening of a result into CSV columns.
"""
from __future__ import annotations

import json
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, List, Optional, Tuple


###############################################################################
# Rubric grid                                                                 #
###############################################################################

@dataclass(frozen=True)
class Category:
    key: str
    label: str
    donts: str  # failure patterns the reviewer should penalize


CATEGORIES: List[Category] = [
    Category("compositionLayout", "Composition & Layout",
             "Crowding, imbalance, no focal point, awkward empty space"),
    Category("colourUsage", "Colour Usage",
             "Clashing hues, insufficient contrast, colour overload, off-brand palette"),
    Category("typography", "Typography",
             "Too many fonts, illegible sizes, poor kerning/leading, decorative abuse"),
    Category("visualHierarchy", "Visual Hierarchy",
             "Competing elements, unclear reading order, equal emphasis on everything"),
    Category("creativity", "Creativity",
             "Clichéd stock imagery, copy-paste icons, lack of original concept"),
    Category("technicalExecution", "Technical Execution",
             "Pixelation, jagged edges, inconsistent shadows, low-res exports"),
    Category("briefAlignment", "Brief Alignment",
             "Ignoring the objective, wrong dimensions, missing mandatory logos/text"),
    Category("accessibility", "Accessibility",
             "Tiny text, colour-blind traps, low readability, flashing elements"),
    Category("overallClarity", "Overall Clarity",
             "Message muddled, too much text, visual noise distracting from intent"),
]

N_CATEGORIES: int = len(CATEGORIES)

SCORE_MIN = 0
SCORE_MAX = 10

REVIEW_COLUMN = "Review"
TOTAL_COLUMN = "Total Score"
AVERAGE_COLUMN = "Average Score"


def score_column(category: Category) -> str:
    return f"{category.label} Score"


def notes_column(category: Category) -> str:
    return f"{category.label} Notes"


###############################################################################
# Prompt builder                                                              #
###############################################################################

def _response_shape() -> str:
    shape = {c.key: {"score": 0, "notes": ""} for c in CATEGORIES}
    return json.dumps(shape, indent=2)


def build_prompt(brief: str = "") -> str:
    """
    Text part of the scoring request.

    The model is asked for a single JSON object keyed by category, with an
    integer score and short notes for each; the brief, when given, is
    appended as context.
    """
    lines: List[str] = [
        "You are a senior graphic design reviewer.",
        f"Score the provided graphic with an integer from {SCORE_MIN} to "
        f"{SCORE_MAX} in each category below.",
        "Penalize the listed “Don'ts” wherever you see them.",
        "Return a score for every category, even one that seems not applicable.",
        "Return strictly JSON with this shape:",
        _response_shape(),
        "",
        "Categories and Don'ts:",
    ]
    for c in CATEGORIES:
        lines.append(f"- {c.label}: {c.donts}")
    if brief:
        lines.append("")
        lines.append(f"Design brief/context: {brief}")
    return "\n".join(lines)


###############################################################################
# Typed result                                                                #
###############################################################################

@dataclass(frozen=True)
class CategoryScore:
    score: Optional[int] = None
    notes: Optional[str] = None


@dataclass
class RubricResult:
    scores: Dict[str, CategoryScore]
    raw: str = ""
    warnings: List[str] = field(default_factory=list)

    def get(self, key: str) -> CategoryScore:
        return self.scores.get(key) or CategoryScore()


def _coerce_score(value: Any) -> Tuple[Optional[int], bool]:
    """Return (score, valid). Booleans are rejected even though they are ints."""
    if isinstance(value, bool):
        return None, False
    if isinstance(value, float):
        if not value.is_integer():
            return None, False
        value = int(value)
    if not isinstance(value, int):
        return None, False
    if not SCORE_MIN <= value <= SCORE_MAX:
        return None, False
    return value, True


def parse_rubric(payload: Dict[str, Any], raw: str = "") -> RubricResult:
    """
    Build a RubricResult from the decoded model JSON.

    Absent categories and fields become None. Present values of the wrong
    type or out of range are dropped too, with a warning naming the field.
    """
    scores: Dict[str, CategoryScore] = {}
    warnings: List[str] = []

    for c in CATEGORIES:
        entry = payload.get(c.key)
        if entry is None:
            scores[c.key] = CategoryScore()
            continue
        if not isinstance(entry, dict):
            warnings.append(f"{c.key}: expected an object, got {type(entry).__name__}")
            scores[c.key] = CategoryScore()
            continue

        score: Optional[int] = None
        if entry.get("score") is not None:
            score, ok = _coerce_score(entry["score"])
            if not ok:
                warnings.append(f"{c.key}.score: invalid value {entry['score']!r}")

        notes: Optional[str] = None
        raw_notes = entry.get("notes")
        if raw_notes is not None:
            if isinstance(raw_notes, str):
                notes = raw_notes.strip()
            else:
                warnings.append(f"{c.key}.notes: expected a string, got {type(raw_notes).__name__}")

        scores[c.key] = CategoryScore(score=score, notes=notes)

    return RubricResult(scores=scores, raw=raw, warnings=warnings)


###############################################################################
# Flattening                                                                  #
###############################################################################

def format_average(total: int, count: int) -> str:
    avg = Decimal(total) / Decimal(count)
    return str(avg.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def flatten_scores(result: RubricResult) -> Tuple[Dict[str, Any], str]:
    """
    Turn a rubric result into (columns, review).

    Columns hold a score and a notes cell per category in canonical order,
    then Total/Average Score when at least one score is present. The review
    joins "<Label>: <notes>" for every category that has notes.
    """
    flat: Dict[str, Any] = {}
    total = 0
    count = 0
    snippets: List[str] = []

    for c in CATEGORIES:
        entry = result.get(c.key)
        flat[score_column(c)] = entry.score if entry.score is not None else ""
        flat[notes_column(c)] = entry.notes or ""
        if entry.notes:
            snippets.append(f"{c.label}: {entry.notes}")
        if entry.score is not None:
            total += entry.score
            count += 1

    if count:
        flat[TOTAL_COLUMN] = total
        flat[AVERAGE_COLUMN] = format_average(total, count)

    return flat, " | ".join(snippets)
