from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, List, Sequence, Tuple

from .facts.fragments import FactFragment, fragment_from_api
from .util.errors import CacheError, EmptyResponseError
from .util.serialization import stable_json_dumps, utc_now_iso


def cache_path(cache_dir: Path, report: str) -> Path:
    return Path(cache_dir) / f"{report}.jsonl"


def write_cache(path: Path, fragments: Sequence[FactFragment], *, url: str, query: str) -> Path:
    """
    Write fetched fragments as JSONL. The first line is a metadata object
    ({url, query, fetched_at, count}); every following line is one fragment.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    meta = {"url": url, "query": query, "fetched_at": utc_now_iso(), "count": len(fragments)}
    tmp = path.with_suffix(path.suffix + ".tmp")
    with tmp.open("w", encoding="utf-8") as f:
        f.write(stable_json_dumps({"meta": meta}))
        f.write("\n")
        for fragment in fragments:
            f.write(stable_json_dumps(fragment.to_dict()))
            f.write("\n")
    tmp.replace(path)
    return path


def read_cache(path: Path) -> Tuple[Dict[str, Any], List[FactFragment]]:
    if not path.exists():
        raise CacheError(f"No cached fetch at {path}; run once without --use-cache first")
    meta: Dict[str, Any] = {}
    fragments: List[FactFragment] = []
    with path.open("r", encoding="utf-8") as f:
        for lineno, line in enumerate(f, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                obj = json.loads(line)
            except ValueError as e:
                raise CacheError(f"Cached fetch {path} is corrupt at line {lineno}: {e}") from e
            if lineno == 1 and isinstance(obj, dict) and "meta" in obj:
                meta = dict(obj["meta"] or {})
                continue
            fragments.append(fragment_from_api(obj))
    if not fragments:
        raise EmptyResponseError(f"Cached fetch {path} holds no facts")
    return meta, fragments
