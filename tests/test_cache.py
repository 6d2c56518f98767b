from __future__ import annotations

from pathlib import Path

import pytest

from accountfacts_report.cache import cache_path, read_cache, write_cache
from accountfacts_report.facts.fragments import GROUP_FACT, FactFragment
from accountfacts_report.util.errors import CacheError, ConfigError, EmptyResponseError


def test_cache_keeps_fragments_and_metadata(tmp_path: Path) -> None:
    fragments = [
        FactFragment("host-a", (GROUP_FACT, 0, "gid"), 10),
        FactFragment("host-a", (GROUP_FACT, 0, "members", 0), "alice"),
    ]
    path = cache_path(tmp_path / "cache", "group-reports")
    assert path.name == "group-reports.jsonl"

    write_cache(path, fragments, url="http://p:8080/pdb/query/v4/fact-contents", query='["=","name","x"]')
    meta, loaded = read_cache(path)

    assert loaded == fragments
    assert meta["url"] == "http://p:8080/pdb/query/v4/fact-contents"
    assert meta["count"] == 2
    assert "fetched_at" in meta


def test_missing_cache_is_a_config_error(tmp_path: Path) -> None:
    with pytest.raises(CacheError) as excinfo:
        read_cache(tmp_path / "nope.jsonl")
    assert isinstance(excinfo.value, ConfigError)


def test_cache_without_fragments_is_empty(tmp_path: Path) -> None:
    path = tmp_path / "user-reports.jsonl"
    write_cache(path, [], url="u", query="q")
    with pytest.raises(EmptyResponseError):
        read_cache(path)


def test_corrupt_cache_line_is_reported(tmp_path: Path) -> None:
    path = tmp_path / "user-reports.jsonl"
    path.write_text('{"meta": {}}\n{not json\n', encoding="utf-8")
    with pytest.raises(CacheError, match="line 2"):
        read_cache(path)
