from __future__ import annotations

import csv
import io
import json
import logging
import os
from pathlib import Path
from typing import Any, List

import pytest

import accountfacts_report.cli as cli
from accountfacts_report.cache import cache_path, write_cache
from accountfacts_report.config import load_run_config
from accountfacts_report.facts.fragments import GROUP_FACT, USER_FACT, FactFragment
from accountfacts_report.util.errors import EmptyResponseError, ExitCode, TransportError


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch) -> None:
    for name in list(os.environ):
        if name.startswith("ACCOUNTFACTS_"):
            monkeypatch.delenv(name, raising=False)


def _user(host: str, slot: int, uid: int, name: str, gid: int, description: str) -> List[FactFragment]:
    fields = {
        "uid": uid,
        "primary gid": gid,
        "name": name,
        "shell": "/bin/bash",
        "homedir": f"/home/{name}",
        "description": description,
    }
    return [FactFragment(host, (USER_FACT, slot, leaf), value) for leaf, value in fields.items()]


def _group(host: str, slot: int, gid: int, name: str, members: List[str]) -> List[FactFragment]:
    frags = [
        FactFragment(host, (GROUP_FACT, slot, "gid"), gid),
        FactFragment(host, (GROUP_FACT, slot, "name"), name),
    ]
    frags.extend(FactFragment(host, (GROUP_FACT, slot, "members", i), m) for i, m in enumerate(members))
    return frags


FRAGMENTS = (
    _user("host-a", 0, 1000, "alice", 1000, "Alice")
    + _user("host-b", 0, 1000, "alice", 1000, "Alice B.")
    + _user("host-b", 1, 0, "root", 0, "root")
    + _group("host-a", 0, 1000, "alice", [])
    + _group("host-a", 1, 10, "wheel", ["alice"])
    + _group("host-b", 0, 10, "wheel", ["alice", "root"])
)


class _FakeClient:
    query_url = "http://puppetdb:8080/pdb/query/v4/fact-contents"

    def __init__(self, fragments: List[FactFragment]) -> None:
        self.fragments = fragments
        self.queries: List[Any] = []

    def fetch_fragments(self, query: Any) -> List[FactFragment]:
        self.queries.append(query)
        return [f for f in self.fragments if any(f.family == clause[2] for clause in _names(query))]

    def __enter__(self) -> _FakeClient:
        return self

    def __exit__(self, *exc: Any) -> None:
        return None


def _names(query: Any) -> List[Any]:
    """Collect ["=", "name", fact] clauses from an AST query."""
    if isinstance(query, list) and len(query) == 3 and query[:2] == ["=", "name"]:
        return [query]
    found: List[Any] = []
    if isinstance(query, list):
        for part in query:
            found.extend(_names(part))
    return found


def _run(tmp_path: Path, argv: List[str], client: _FakeClient) -> str:
    out = tmp_path / "report.out"
    _, cfg = load_run_config(argv=argv + ["--cache-dir", str(tmp_path / "cache"), "--output", str(out)])
    assert cli.cmd_report(cfg, client_factory=lambda _cfg: client) == 0  # type: ignore[arg-type,return-value]
    return out.read_text(encoding="utf-8")


def test_user_report_json_end_to_end(tmp_path: Path) -> None:
    client = _FakeClient(FRAGMENTS)
    text = _run(tmp_path, ["users", "--url", "http://puppetdb:8080", "--format", "json", "--sort", "id"], client)

    doc = json.loads(text)
    assert doc["report"] == "user-reports"
    assert [r["uname"] for r in doc["records"]] == ["root", "alice"]
    alice = doc["records"][1]
    assert alice["nodes"] == ["host-a", "host-b"]
    assert alice["descriptions"] == ["Alice", "Alice B."]
    assert client.queries == [["=", "name", USER_FACT]]


def test_group_report_reconciles_primary_members(tmp_path: Path) -> None:
    client = _FakeClient(FRAGMENTS)
    text = _run(tmp_path, ["groups", "--url", "http://puppetdb:8080", "--format", "json"], client)

    records = {r["name"]: r for r in json.loads(text)["records"]}
    assert records["alice"]["membership"] == [{"members": ["*alice"], "nodes": ["host-a"]}]
    assert records["wheel"]["membership"] == [
        {"members": ["alice"], "nodes": ["host-a"]},
        {"members": ["alice", "root"], "nodes": ["host-b"]},
    ]


def test_group_report_csv_has_member_columns(tmp_path: Path) -> None:
    client = _FakeClient(FRAGMENTS)
    text = _run(tmp_path, ["group-reports", "--url", "http://puppetdb:8080", "--format", "csv", "--sort", "id"], client)

    rows = list(csv.reader(io.StringIO(text)))
    assert rows[0] == ["gid", "name", "source_node", "member_1", "member_2"]
    assert rows[1:] == [
        ["10", "wheel", "host-a", "alice", ""],
        ["10", "wheel", "host-b", "alice", "root"],
        ["1000", "alice", "host-a", "*alice", ""],
    ]


def test_html_report_and_summary(tmp_path: Path, capsys) -> None:
    client = _FakeClient(FRAGMENTS)
    text = _run(tmp_path, ["users", "--url", "http://puppetdb:8080", "--format", "html", "--summary"], client)
    assert "<title>user-reports</title>" in text
    assert "Alice B." in text
    assert "Records reconstructed" in capsys.readouterr().err


def test_fetch_refreshes_cache_and_cached_run_skips_network(tmp_path: Path) -> None:
    client = _FakeClient(FRAGMENTS)
    first = _run(tmp_path, ["users", "--url", "http://puppetdb:8080", "--format", "csv"], client)
    assert cache_path(tmp_path / "cache", "user-reports").exists()

    def _no_network(_cfg):
        raise AssertionError("cached run must not query PuppetDB")

    out = tmp_path / "cached.csv"
    _, cfg = load_run_config(
        argv=["users", "--use-cache", "--format", "csv", "--cache-dir", str(tmp_path / "cache"), "--output", str(out)]
    )
    assert cli.cmd_report(cfg, client_factory=_no_network) == 0
    assert out.read_text(encoding="utf-8") == first


def test_transport_errors_propagate(tmp_path: Path) -> None:
    class _Failing(_FakeClient):
        def fetch_fragments(self, query: Any) -> List[FactFragment]:
            raise TransportError("PuppetDB query failed", url=self.query_url)

    _, cfg = load_run_config(argv=["users", "--url", "http://puppetdb:8080", "--cache-dir", str(tmp_path)])
    with pytest.raises(TransportError):
        cli.cmd_report(cfg, client_factory=lambda _cfg: _Failing([]))  # type: ignore[arg-type,return-value]


def test_main_exit_code_for_config_error() -> None:
    with pytest.raises(SystemExit) as excinfo:
        cli.main(["users"])
    assert excinfo.value.code == int(ExitCode.CONFIG_ERROR)


def test_main_exit_code_for_missing_field(tmp_path: Path) -> None:
    broken = [f for f in _user("host-a", 0, 1000, "alice", 1000, "Alice") if f.leaf != "homedir"]
    write_cache(cache_path(tmp_path, "user-reports"), broken, url="u", query="q")
    with pytest.raises(SystemExit) as excinfo:
        cli.main(["users", "--use-cache", "--cache-dir", str(tmp_path), "--output", str(tmp_path / "r.json")])
    assert excinfo.value.code == int(ExitCode.DATA_ERROR)


def test_main_writes_report_to_stdout(tmp_path: Path, capsys) -> None:
    write_cache(cache_path(tmp_path, "user-reports"), FRAGMENTS, url="u", query="q")
    with pytest.raises(SystemExit) as excinfo:
        cli.main(["users", "--use-cache", "--cache-dir", str(tmp_path), "--format", "json"])
    assert excinfo.value.code == 0
    doc = json.loads(capsys.readouterr().out)
    assert doc["count"] == 2


def test_group_report_without_group_facts_is_a_data_error(tmp_path: Path) -> None:
    users_only = [f for f in FRAGMENTS if f.family == USER_FACT]
    write_cache(cache_path(tmp_path, "group-reports"), users_only, url="u", query="q")
    with pytest.raises(SystemExit) as excinfo:
        cli.main(["groups", "--use-cache", "--cache-dir", str(tmp_path), "--output", str(tmp_path / "r.json")])
    assert excinfo.value.code == int(ExitCode.DATA_ERROR)


def test_build_records_requires_facts_of_the_report_family() -> None:
    groups_only = [f for f in FRAGMENTS if f.family == GROUP_FACT]
    with pytest.raises(EmptyResponseError, match=USER_FACT):
        cli.build_records(groups_only, "user-reports")
    with pytest.raises(EmptyResponseError, match=GROUP_FACT):
        cli.build_records([f for f in FRAGMENTS if f.family == USER_FACT], "group-reports")


def test_cached_run_warns_when_query_differs(tmp_path: Path, caplog) -> None:
    client = _FakeClient(FRAGMENTS)
    _run(tmp_path, ["users", "--url", "http://puppetdb:8080", "--format", "csv"], client)

    argv = ["users", "--use-cache", "--cache-dir", str(tmp_path / "cache"), "--output", str(tmp_path / "c.csv")]
    _, same = load_run_config(argv=argv)
    with caplog.at_level(logging.WARNING, logger="accountfacts_report"):
        assert cli.cmd_report(same) == 0
    assert not [r for r in caplog.records if r.levelno == logging.WARNING]

    _, filtered = load_run_config(argv=argv + ["--filter", '["=", "certname", "host-a"]'])
    with caplog.at_level(logging.WARNING, logger="accountfacts_report"):
        assert cli.cmd_report(filtered) == 0
    assert "Cached facts were fetched with a different query" in caplog.text
