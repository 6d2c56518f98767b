from __future__ import annotations

import getpass
from typing import Any, Dict, Optional, Sequence, TextIO

from ..normalize.schema import NormalizedRecord
from ..util.serialization import stable_json_dumps, to_jsonable, utc_now_iso


def invoking_user() -> str:
    try:
        return getpass.getuser()
    except (KeyError, OSError):
        return "unknown"


def report_document(
    records: Sequence[NormalizedRecord],
    *,
    report: str,
    sort_key: str,
    generated_at: Optional[str] = None,
    generated_by: Optional[str] = None,
) -> Dict[str, Any]:
    """Wrap normalized records with run metadata."""
    return {
        "report": report,
        "generated_at": generated_at or utc_now_iso(),
        "generated_by": generated_by or invoking_user(),
        "sort": sort_key,
        "count": len(records),
        "records": [to_jsonable(r) for r in records],
    }


def write_json(
    records: Sequence[NormalizedRecord],
    out: TextIO,
    *,
    report: str,
    sort_key: str,
    generated_at: Optional[str] = None,
    generated_by: Optional[str] = None,
) -> int:
    doc = report_document(
        records,
        report=report,
        sort_key=sort_key,
        generated_at=generated_at,
        generated_by=generated_by,
    )
    out.write(stable_json_dumps(doc, indent=2))
    out.write("\n")
    return len(records)
