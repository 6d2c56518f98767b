from __future__ import annotations

import argparse
import json
import os
import warnings
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml

from .logging import LOG_LEVELS
from .normalize.schema import GROUP_REPORT, REPORT_ALIASES, SORT_KEYS, USER_REPORT
from .puppetdb.client import DEFAULT_TIMEOUT, TLSMaterial
from .puppetdb.query import parse_node_filter
from .util.errors import ConfigError
from .util.serialization import utc_now_iso

# --------
# Defaults
# --------
FORMATS = ("html", "json", "csv")
DEFAULT_FORMAT = "json"
DEFAULT_SORT = "name"
DEFAULT_CACHE_DIR = Path.home() / ".cache" / "accountfacts"
ALLOWED_CONFIG_KEYS = {
    "url",
    "cert",
    "key",
    "cacert",
    "filter",
    "format",
    "sort",
    "log_level",
    "json_logs",
    "use_cache",
    "cache_dir",
    "output",
    "summary",
    "timeout",
}
BOOL_CONFIG_KEYS = {"json_logs", "use_cache", "summary"}
FLOAT_CONFIG_KEYS = {"timeout"}
PATH_CONFIG_KEYS = {"cert", "key", "cacert", "cache_dir", "output"}
STR_CONFIG_KEYS = {"url", "filter", "format", "sort", "log_level"}
PEM_MARKER = "-----BEGIN "


@dataclass(frozen=True)
class RunConfig:
    # Source
    url: Optional[str] = None
    tls: Optional[TLSMaterial] = None
    node_filter: Optional[str] = None
    timeout: float = DEFAULT_TIMEOUT

    # Report
    report: str = USER_REPORT
    format: str = DEFAULT_FORMAT
    sort: str = DEFAULT_SORT
    output: Optional[Path] = None  # stdout when unset
    summary: bool = False

    # Cache
    use_cache: bool = False
    cache_dir: Path = DEFAULT_CACHE_DIR

    # Logging
    log_level: str = "INFO"
    json_logs: bool = False

    # Internal/derived
    started_at: str = field(default_factory=utc_now_iso)


def _parse_config_file(path: Path) -> Dict[str, Any]:
    if not path.exists():
        raise ConfigError(f"Config file not found: {path}")
    text = path.read_text(encoding="utf-8")
    try:
        if path.suffix.lower() == ".json":
            data = json.loads(text)
        else:
            data = yaml.safe_load(text) or {}
    except (ValueError, yaml.YAMLError) as e:
        raise ConfigError(f"Failed to parse config file {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError("Top-level config must be an object")
    return data


def _env_str(name: str) -> Optional[str]:
    raw = os.getenv(name)
    if raw is None:
        return None
    raw = raw.strip()
    if not raw:
        return None
    return raw


def _env_bool(name: str) -> Optional[bool]:
    raw = os.getenv(name)
    if raw is None:
        return None
    raw = raw.strip().lower()
    if not raw:
        return None
    return raw in {"1", "true", "yes", "on"}


def _coerce_bool(key: str, value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        raw = value.strip().lower()
        if raw in {"1", "true", "yes", "on"}:
            return True
        if raw in {"0", "false", "no", "off"}:
            return False
    raise ConfigError(f"Config field '{key}' must be a boolean")


def _coerce_float(key: str, value: Any) -> float:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    if isinstance(value, str) and value.strip():
        try:
            return float(value)
        except ValueError:
            pass
    raise ConfigError(f"Config field '{key}' must be a number")


def _normalize_config_file(data: Dict[str, Any]) -> Dict[str, Any]:
    unknown = sorted(set(data.keys()) - ALLOWED_CONFIG_KEYS)
    if unknown:
        warnings.warn(f"Unknown config keys ignored: {', '.join(unknown)}")
    normalized: Dict[str, Any] = {}
    for key, value in data.items():
        if key not in ALLOWED_CONFIG_KEYS or value is None:
            continue
        if key in BOOL_CONFIG_KEYS:
            normalized[key] = _coerce_bool(key, value)
        elif key in FLOAT_CONFIG_KEYS:
            normalized[key] = _coerce_float(key, value)
        elif key in PATH_CONFIG_KEYS:
            if not isinstance(value, (str, Path)):
                raise ConfigError(f"Config field '{key}' must be a string path")
            normalized[key] = value
        elif key == "filter" and isinstance(value, list):
            # YAML users may write the AST inline
            normalized[key] = json.dumps(value)
        elif key in STR_CONFIG_KEYS:
            if not isinstance(value, str):
                raise ConfigError(f"Config field '{key}' must be a string")
            normalized[key] = value
    return normalized


def _compact_dict(data: Dict[str, Any]) -> Dict[str, Any]:
    """
    Drop keys with None values so they don't override lower-precedence config.
    """
    return {k: v for k, v in data.items() if v is not None}


def _check_choice(name: str, value: str, choices: Tuple[str, ...]) -> str:
    if value not in choices:
        raise ConfigError(f"Invalid {name} '{value}'; expected one of: {', '.join(choices)}")
    return value


def _check_pem(label: str, path: Path) -> Path:
    if not path.is_file():
        raise ConfigError(f"{label} file not found: {path}")
    try:
        head = path.read_text(encoding="utf-8", errors="replace")
    except OSError as e:
        raise ConfigError(f"{label} file {path} cannot be read: {e}") from e
    if PEM_MARKER not in head:
        raise ConfigError(f"{label} file {path} is not PEM encoded")
    return path


def resolve_tls(cert: Any, key: Any, cacert: Any) -> Optional[TLSMaterial]:
    """
    Client cert, key and CA cert are all-or-nothing; each must be a readable PEM file.
    """
    given = {"cert": cert, "key": key, "cacert": cacert}
    present = [name for name, value in given.items() if value]
    if not present:
        return None
    if len(present) != len(given):
        missing = sorted(set(given) - set(present))
        raise ConfigError(f"TLS settings are all-or-nothing; missing: {', '.join(missing)}")
    return TLSMaterial(
        cert=_check_pem("Client certificate", Path(cert)),
        key=_check_pem("Client key", Path(key)),
        cacert=_check_pem("CA certificate", Path(cacert)),
    )


def _canonical_report(command: str) -> str:
    for report, aliases in REPORT_ALIASES.items():
        if command == report or command in aliases:
            return report
    raise ConfigError(f"Unknown report: {command}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="accountfacts-report",
        description="Report OS users and groups collected as Puppet accountfacts in PuppetDB",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    def add_common(p: argparse.ArgumentParser) -> None:
        p.add_argument("--config", type=Path, help="Optional YAML/JSON config file")
        p.add_argument("--url", default=None, help="PuppetDB base URL, e.g. https://puppetdb:8081")
        p.add_argument("--cert", type=Path, default=None, help="Client certificate (PEM)")
        p.add_argument("--key", type=Path, default=None, help="Client private key (PEM)")
        p.add_argument("--cacert", type=Path, default=None, help="CA certificate (PEM)")
        p.add_argument(
            "--filter",
            dest="filter",
            default=None,
            help='PuppetDB AST node filter as JSON, e.g. \'["~", "certname", "^web"]\'',
        )
        p.add_argument("--format", default=None, choices=list(FORMATS), help=f"Output format (default {DEFAULT_FORMAT})")
        p.add_argument("--sort", default=None, choices=list(SORT_KEYS), help=f"Sort key (default {DEFAULT_SORT})")
        p.add_argument("--output", type=Path, default=None, help="Write the report here instead of stdout")
        p.add_argument("--timeout", type=float, default=None, help=f"HTTP timeout in seconds (default {DEFAULT_TIMEOUT:g})")
        p.add_argument("--log-level", default=None, help="Log level (INFO, DEBUG, ...)")
        p.add_argument(
            "--json-logs",
            action=argparse.BooleanOptionalAction,
            default=None,
            help="Enable JSON logs",
        )
        p.add_argument(
            "--use-cache",
            action=argparse.BooleanOptionalAction,
            default=None,
            help="Reuse the previous run's fetched facts instead of querying PuppetDB",
        )
        p.add_argument("--cache-dir", type=Path, default=None, help=f"Fetch cache directory (default {DEFAULT_CACHE_DIR})")
        p.add_argument(
            "--summary",
            action=argparse.BooleanOptionalAction,
            default=None,
            help="Print a run summary table to stderr",
        )

    for report, aliases in REPORT_ALIASES.items():
        kind = "users" if report == USER_REPORT else "groups"
        p = subparsers.add_parser(report, aliases=list(aliases), help=f"Report {kind} across nodes")
        add_common(p)
    return parser


def load_run_config(
    args: Optional[argparse.Namespace] = None,
    argv: Optional[List[str]] = None,
) -> Tuple[str, RunConfig]:
    """
    Build RunConfig by merging defaults, optional config file, env vars, and CLI args.
    Precedence (low -> high): defaults < config file < env < CLI.

    Returns:
      (report, RunConfig) where report is the canonical report name: user-reports|group-reports
    """
    ns = args if args is not None else build_parser().parse_args(argv)
    report = _canonical_report(ns.command)

    base: Dict[str, Any] = {
        "url": None,
        "cert": None,
        "key": None,
        "cacert": None,
        "filter": None,
        "format": DEFAULT_FORMAT,
        "sort": DEFAULT_SORT,
        "log_level": "INFO",
        "json_logs": False,
        "use_cache": False,
        "cache_dir": DEFAULT_CACHE_DIR,
        "output": None,
        "summary": False,
        "timeout": DEFAULT_TIMEOUT,
    }

    file_cfg: Dict[str, Any] = {}
    if getattr(ns, "config", None):
        file_cfg = _normalize_config_file(_parse_config_file(Path(ns.config)))

    env_cfg: Dict[str, Any] = _compact_dict(
        {
            "url": _env_str("ACCOUNTFACTS_URL"),
            "cert": _env_str("ACCOUNTFACTS_CERT"),
            "key": _env_str("ACCOUNTFACTS_KEY"),
            "cacert": _env_str("ACCOUNTFACTS_CACERT"),
            "filter": _env_str("ACCOUNTFACTS_FILTER"),
            "format": _env_str("ACCOUNTFACTS_FORMAT"),
            "sort": _env_str("ACCOUNTFACTS_SORT"),
            "log_level": _env_str("ACCOUNTFACTS_LOG_LEVEL"),
            "json_logs": _env_bool("ACCOUNTFACTS_JSON_LOGS"),
            "use_cache": _env_bool("ACCOUNTFACTS_USE_CACHE"),
            "cache_dir": _env_str("ACCOUNTFACTS_CACHE_DIR"),
        }
    )

    cli_cfg: Dict[str, Any] = _compact_dict(
        {
            "url": getattr(ns, "url", None),
            "cert": getattr(ns, "cert", None),
            "key": getattr(ns, "key", None),
            "cacert": getattr(ns, "cacert", None),
            "filter": getattr(ns, "filter", None),
            "format": getattr(ns, "format", None),
            "sort": getattr(ns, "sort", None),
            "log_level": getattr(ns, "log_level", None),
            "json_logs": getattr(ns, "json_logs", None),
            "use_cache": getattr(ns, "use_cache", None),
            "cache_dir": getattr(ns, "cache_dir", None),
            "output": getattr(ns, "output", None),
            "summary": getattr(ns, "summary", None),
            "timeout": getattr(ns, "timeout", None),
        }
    )

    merged = {**base, **file_cfg, **env_cfg, **cli_cfg}

    fmt = _check_choice("format", str(merged["format"]).lower(), FORMATS)
    sort = _check_choice("sort key", str(merged["sort"]).lower(), SORT_KEYS)
    log_level = _check_choice("log level", str(merged["log_level"]).upper(), LOG_LEVELS)
    use_cache = bool(merged["use_cache"])

    url = merged.get("url")
    if not url and not use_cache:
        raise ConfigError("A PuppetDB URL is required (--url or ACCOUNTFACTS_URL)")
    if url and not str(url).startswith(("http://", "https://")):
        raise ConfigError(f"PuppetDB URL must start with http:// or https://: {url}")

    node_filter = merged.get("filter")
    parse_node_filter(node_filter)

    timeout = float(merged["timeout"])
    if timeout <= 0:
        raise ConfigError("Timeout must be positive")

    cfg = RunConfig(
        url=str(url) if url else None,
        tls=resolve_tls(merged.get("cert"), merged.get("key"), merged.get("cacert")),
        node_filter=str(node_filter) if node_filter else None,
        timeout=timeout,
        report=report,
        format=fmt,
        sort=sort,
        output=Path(merged["output"]) if merged.get("output") else None,
        summary=bool(merged["summary"]),
        use_cache=use_cache,
        cache_dir=Path(merged["cache_dir"]).expanduser(),
        log_level=log_level,
        json_logs=bool(merged["json_logs"]),
    )
    return report, cfg


def dump_config(cfg: RunConfig) -> Dict[str, Any]:
    return {
        "url": cfg.url,
        "tls": bool(cfg.tls),
        "filter": cfg.node_filter,
        "timeout": cfg.timeout,
        "report": cfg.report,
        "format": cfg.format,
        "sort": cfg.sort,
        "output": str(cfg.output) if cfg.output else None,
        "use_cache": cfg.use_cache,
        "cache_dir": str(cfg.cache_dir),
        "log_level": cfg.log_level,
        "json_logs": cfg.json_logs,
    }


__all__ = ["GROUP_REPORT", "USER_REPORT", "RunConfig", "build_parser", "dump_config", "load_run_config", "resolve_tls"]
