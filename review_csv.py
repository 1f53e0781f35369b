#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""CSV input and output for review runs."""
from __future__ import annotations

import csv
from dataclasses import dataclass, field
from io import StringIO
from pathlib import Path
from typing import Any, Dict, List, Mapping, Sequence


@dataclass
class CsvTable:
    rows: List[Dict[str, str]] = field(default_factory=list)
    fields: List[str] = field(default_factory=list)


###############################################################################
# Reading                                                                     #
###############################################################################

def parse_csv_text(text: str) -> CsvTable:
    """
    Header-driven parse: the first line names the columns, blank lines are
    skipped and every value stays a string. Short rows are padded with "",
    cells beyond the header are dropped.
    """
    reader = csv.DictReader(StringIO(text))
    fields = list(reader.fieldnames or [])
    rows: List[Dict[str, str]] = []
    for raw in reader:
        rows.append({name: (raw.get(name) or "") for name in fields})
    return CsvTable(rows=rows, fields=fields)


def read_csv(path: Path) -> CsvTable:
    data = Path(path).read_bytes()
    try:
        text = data.decode("utf-8-sig")
    except UnicodeDecodeError:
        text = data.decode("utf-8", errors="replace")
    return parse_csv_text(text)


###############################################################################
# Writing                                                                     #
###############################################################################

def collect_headers(rows: Sequence[Mapping[str, Any]]) -> List[str]:
    """Keys of the first row in order, then keys first seen in later rows."""
    if not rows:
        return []
    headers = list(rows[0].keys())
    seen = set(headers)
    for row in rows[1:]:
        for key in row.keys():
            if key not in seen:
                headers.append(key)
                seen.add(key)
    return headers


def _write_rows(rows: Sequence[Mapping[str, Any]], handle) -> None:
    writer = csv.DictWriter(
        handle,
        fieldnames=collect_headers(rows),
        restval="",
        quoting=csv.QUOTE_MINIMAL,
        lineterminator="\n",
    )
    writer.writeheader()
    writer.writerows(rows)


def to_csv_text(rows: Sequence[Mapping[str, Any]]) -> str:
    if not rows:
        return ""
    buf = StringIO()
    _write_rows(rows, buf)
    return buf.getvalue()


def write_csv(rows: Sequence[Mapping[str, Any]], out_file: Path) -> bool:
    """Write rows to `out_file`. Returns False (and writes nothing) when rows is empty."""
    if not rows:
        return False
    out_file = Path(out_file)
    out_file.parent.mkdir(parents=True, exist_ok=True)
    with out_file.open("w", newline="", encoding="utf-8") as f:
        _write_rows(rows, f)
    return True
