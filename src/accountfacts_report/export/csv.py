from __future__ import annotations

import csv
from typing import Any, Dict, List, Sequence, TextIO


def header_fields(rows: Sequence[Dict[str, Any]]) -> List[str]:
    """Union of row keys, in the order they are first seen."""
    seen: Dict[str, None] = {}
    for row in rows:
        for key in row:
            seen.setdefault(key, None)
    return list(seen)


def write_csv(rows: Sequence[Dict[str, Any]], out: TextIO) -> int:
    """
    Write flat rows with every field quoted. Rows are written in the order given;
    missing keys and None values become empty strings.
    """
    header = header_fields(rows)
    writer = csv.writer(out, quoting=csv.QUOTE_ALL, lineterminator="\n")
    writer.writerow(header)
    for row in rows:
        out_row: List[str] = []
        for field in header:
            val = row.get(field)
            out_row.append("" if val is None else str(val))
        writer.writerow(out_row)
    return len(rows)
