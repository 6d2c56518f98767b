from __future__ import annotations

import os
from pathlib import Path

import pytest

from accountfacts_report.config import RunConfig, load_run_config
from accountfacts_report.util.errors import ConfigError

PEM = "-----BEGIN CERTIFICATE-----\nMIIB\n-----END CERTIFICATE-----\n"


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch) -> None:
    for name in list(os.environ):
        if name.startswith("ACCOUNTFACTS_"):
            monkeypatch.delenv(name, raising=False)


def _pem_files(tmp_path: Path) -> list[str]:
    paths = []
    for name in ("cert.pem", "key.pem", "ca.pem"):
        p = tmp_path / name
        p.write_text(PEM, encoding="utf-8")
        paths.append(str(p))
    return paths


def test_defaults_with_url() -> None:
    report, cfg = load_run_config(argv=["user-reports", "--url", "http://puppetdb:8080"])
    assert report == "user-reports"
    assert isinstance(cfg, RunConfig)
    assert cfg.report == "user-reports"
    assert cfg.format == "json"
    assert cfg.sort == "name"
    assert cfg.log_level == "INFO"
    assert cfg.tls is None
    assert cfg.use_cache is False
    assert cfg.output is None


@pytest.mark.parametrize(
    "command, expected",
    [("users", "user-reports"), ("user", "user-reports"), ("groups", "group-reports"), ("group-reports", "group-reports")],
)
def test_report_aliases(command: str, expected: str) -> None:
    report, cfg = load_run_config(argv=[command, "--url", "http://p:8080"])
    assert report == expected
    assert cfg.report == expected


def test_missing_url_is_a_config_error() -> None:
    with pytest.raises(ConfigError, match="URL"):
        load_run_config(argv=["users"])


def test_cached_run_does_not_need_url(tmp_path: Path) -> None:
    _, cfg = load_run_config(argv=["users", "--use-cache", "--cache-dir", str(tmp_path)])
    assert cfg.use_cache is True
    assert cfg.url is None
    assert cfg.cache_dir == tmp_path


def test_env_overrides_config_file_and_cli_overrides_env(monkeypatch, tmp_path: Path) -> None:
    cfg_path = tmp_path / "config.yaml"
    cfg_path.write_text("url: http://from-config:8080\nformat: html\nsort: id\nsummary: true\n", encoding="utf-8")
    monkeypatch.setenv("ACCOUNTFACTS_FORMAT", "csv")
    monkeypatch.setenv("ACCOUNTFACTS_URL", "http://from-env:8080")

    _, cfg = load_run_config(argv=["groups", "--config", str(cfg_path), "--url", "http://from-cli:8080"])
    assert cfg.url == "http://from-cli:8080"
    assert cfg.format == "csv"
    assert cfg.sort == "id"
    assert cfg.summary is True


def test_config_file_filter_may_be_inline_ast(tmp_path: Path) -> None:
    cfg_path = tmp_path / "config.yaml"
    cfg_path.write_text('url: http://p:8080\nfilter: ["=", "certname", "web01"]\n', encoding="utf-8")
    _, cfg = load_run_config(argv=["users", "--config", str(cfg_path)])
    assert cfg.node_filter == '["=", "certname", "web01"]'


def test_unknown_config_keys_warn(tmp_path: Path) -> None:
    cfg_path = tmp_path / "config.yaml"
    cfg_path.write_text("url: http://p:8080\nbogus: 1\n", encoding="utf-8")
    with pytest.warns(UserWarning, match="bogus"):
        load_run_config(argv=["users", "--config", str(cfg_path)])


def test_invalid_enum_values_from_env_are_rejected(monkeypatch) -> None:
    monkeypatch.setenv("ACCOUNTFACTS_SORT", "shell")
    with pytest.raises(ConfigError, match="sort"):
        load_run_config(argv=["users", "--url", "http://p:8080"])
    monkeypatch.setenv("ACCOUNTFACTS_SORT", "id")
    monkeypatch.setenv("ACCOUNTFACTS_LOG_LEVEL", "chatty")
    with pytest.raises(ConfigError, match="log level"):
        load_run_config(argv=["users", "--url", "http://p:8080"])


def test_invalid_filter_is_rejected_before_any_query() -> None:
    with pytest.raises(ConfigError):
        load_run_config(argv=["users", "--url", "http://p:8080", "--filter", "certname=web"])


def test_tls_material_all_or_nothing(tmp_path: Path) -> None:
    cert, key, ca = _pem_files(tmp_path)
    with pytest.raises(ConfigError, match="all-or-nothing"):
        load_run_config(argv=["users", "--url", "https://p:8081", "--cert", cert, "--key", key])

    _, cfg = load_run_config(argv=["users", "--url", "https://p:8081", "--cert", cert, "--key", key, "--cacert", ca])
    assert cfg.tls is not None
    assert str(cfg.tls.cacert) == ca


def test_tls_files_must_exist_and_be_pem(tmp_path: Path) -> None:
    cert, key, ca = _pem_files(tmp_path)
    not_pem = tmp_path / "ca.der"
    not_pem.write_bytes(b"\x30\x82\x01")
    with pytest.raises(ConfigError, match="not PEM"):
        load_run_config(argv=["users", "--url", "https://p:8081", "--cert", cert, "--key", key, "--cacert", str(not_pem)])
    with pytest.raises(ConfigError, match="not found"):
        load_run_config(
            argv=["users", "--url", "https://p:8081", "--cert", cert, "--key", key, "--cacert", str(tmp_path / "x.pem")]
        )
