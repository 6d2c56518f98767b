from __future__ import annotations

from html import escape
from typing import Any, Dict, List, Optional, Sequence, TextIO

from ..normalize.schema import NormalizedRecord
from ..util.serialization import to_jsonable, utc_now_iso
from .json_report import invoking_user

_STYLE = """
body { font-family: sans-serif; margin: 1.5em; }
table { border-collapse: collapse; }
th, td { border: 1px solid #bbb; padding: 0.25em 0.5em; vertical-align: top; text-align: left; }
th { background: #eee; }
table table th { background: #f6f6f6; }
ul { margin: 0; padding-left: 1.2em; }
#filter { margin-bottom: 1em; width: 24em; }
""".strip()

# Hides top-level rows whose text does not contain the filter (case-insensitive).
_FILTER_SCRIPT = """
function filterRows() {
  var needle = document.getElementById("filter").value.toLowerCase();
  var rows = document.querySelectorAll("#report > tbody > tr");
  for (var i = 0; i < rows.length; i++) {
    var text = rows[i].textContent.toLowerCase();
    rows[i].style.display = text.indexOf(needle) === -1 ? "none" : "";
  }
}
""".strip()


def _is_table_list(value: Any) -> bool:
    return isinstance(value, list) and bool(value) and all(isinstance(v, dict) for v in value)


def _columns(items: Sequence[Dict[str, Any]]) -> List[str]:
    seen: Dict[str, None] = {}
    for item in items:
        for key in item:
            seen.setdefault(key, None)
    return list(seen)


def render_value(value: Any) -> str:
    """Render a JSON-like value; lists become <ul>, objects and lists of objects nested tables."""
    if value is None:
        return ""
    if isinstance(value, dict):
        return _render_table([value], columns=list(value))
    if _is_table_list(value):
        return _render_table(value, columns=_columns(value))
    if isinstance(value, list):
        if not value:
            return ""
        items = "".join(f"<li>{render_value(v)}</li>" for v in value)
        return f"<ul>{items}</ul>"
    return escape(str(value))


def _render_table(items: Sequence[Dict[str, Any]], *, columns: List[str], table_id: Optional[str] = None) -> str:
    attr = f' id="{escape(table_id)}"' if table_id else ""
    head = "".join(f"<th>{escape(c)}</th>" for c in columns)
    body: List[str] = []
    for item in items:
        cells = "".join(f"<td>{render_value(item.get(c))}</td>" for c in columns)
        body.append(f"<tr>{cells}</tr>")
    return f"<table{attr}><thead><tr>{head}</tr></thead><tbody>{''.join(body)}</tbody></table>"


def render_html(
    records: Sequence[NormalizedRecord],
    *,
    report: str,
    sort_key: str,
    generated_at: Optional[str] = None,
    generated_by: Optional[str] = None,
) -> str:
    items = [to_jsonable(r) for r in records]
    title = escape(report)
    meta = escape(
        f"Generated {generated_at or utc_now_iso()} by {generated_by or invoking_user()}; "
        f"{len(items)} records sorted by {sort_key}"
    )
    lines = [
        "<!DOCTYPE html>",
        '<html lang="en">',
        "<head>",
        '<meta charset="utf-8">',
        f"<title>{title}</title>",
        f"<style>\n{_STYLE}\n</style>",
        f"<script>\n{_FILTER_SCRIPT}\n</script>",
        "</head>",
        "<body>",
        f"<h1>{title}</h1>",
        f'<p class="meta">{meta}</p>',
        '<input id="filter" type="text" placeholder="Filter rows" oninput="filterRows()">',
        _render_table(items, columns=_columns(items), table_id="report"),
        "</body>",
        "</html>",
    ]
    return "\n".join(lines) + "\n"


def write_html(
    records: Sequence[NormalizedRecord],
    out: TextIO,
    *,
    report: str,
    sort_key: str,
    generated_at: Optional[str] = None,
    generated_by: Optional[str] = None,
) -> int:
    out.write(
        render_html(
            records,
            report=report,
            sort_key=sort_key,
            generated_at=generated_at,
            generated_by=generated_by,
        )
    )
    return len(records)
