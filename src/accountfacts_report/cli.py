from __future__ import annotations

import logging
import sys
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from time import perf_counter
from typing import Any, Callable, Dict, Iterator, List, Optional, TextIO, Tuple

from .cache import cache_path, read_cache, write_cache
from .config import RunConfig, dump_config, load_run_config
from .export.csv import write_csv
from .export.html import write_html
from .export.json_report import write_json
from .facts.fragments import GROUP_FACT, USER_FACT, FactFragment, FragmentIndex
from .facts.reconcile import reconcile
from .facts.reconstruct import GroupRecord, Record, RecordKind, UserRecord, reconstruct_index
from .logging import LogConfig, get_logger, setup_logging
from .normalize.schema import GROUP_REPORT
from .normalize.transform import denormalize, normalize
from .puppetdb.client import PuppetDBClient
from .puppetdb.query import build_fact_query, query_text
from .util.errors import EmptyResponseError, RenderError, as_exit_code
from .util.rich_summary import render_run_summary_table

LOG = get_logger(__name__)

ClientFactory = Callable[[RunConfig], PuppetDBClient]


class _StepTimers:
    def __init__(self) -> None:
        self._starts: Dict[str, float] = {}

    def start(self, key: str) -> None:
        self._starts[key] = perf_counter()

    def finish(self, key: str) -> Optional[int]:
        started = self._starts.pop(key, None)
        if started is None:
            return None
        return int((perf_counter() - started) * 1000)


def _log_event(
    logger: Any,
    level: int,
    message: str,
    *,
    step: str,
    phase: str,
    timers: Optional[_StepTimers] = None,
    **extra: Any,
) -> None:
    duration_ms = None
    if timers is not None:
        if phase == "start":
            timers.start(step)
        elif phase in {"complete", "error"}:
            duration_ms = timers.finish(step)
    payload: Dict[str, Any] = {"step": step, "phase": phase, "event": f"{step}.{phase}"}
    if duration_ms is not None:
        payload["duration_ms"] = duration_ms
    payload.update(extra)
    logger.log(level, message, extra=payload)


@dataclass
class ReportData:
    fragments: List[FactFragment]
    records: List[Record]
    machines: int
    source: str
    primary_members_added: Optional[int] = None


def report_facts(report: str) -> List[str]:
    """Facts a report needs; group reports also need users to reconcile primary groups."""
    if report == GROUP_REPORT:
        return [GROUP_FACT, USER_FACT]
    return [USER_FACT]


def _default_client(cfg: RunConfig) -> PuppetDBClient:
    return PuppetDBClient(str(cfg.url), tls=cfg.tls, timeout=cfg.timeout)


def _check_cache_origin(meta: Dict[str, Any], cfg: RunConfig, query: str) -> None:
    if meta.get("query") != query:
        LOG.warning(
            "Cached facts were fetched with a different query",
            extra={"cached_query": meta.get("query"), "query": query},
        )
    if cfg.url and not str(meta.get("url") or "").startswith(cfg.url.rstrip("/")):
        LOG.warning(
            "Cached facts were fetched from a different PuppetDB",
            extra={"cached_url": meta.get("url"), "url": cfg.url},
        )


def fetch_fragments(
    cfg: RunConfig,
    *,
    client_factory: Optional[ClientFactory] = None,
    timers: Optional[_StepTimers] = None,
) -> Tuple[List[FactFragment], str]:
    """
    Fragments for the configured report, from the fetch cache or PuppetDB.
    A live fetch refreshes the cache.
    """
    path = cache_path(cfg.cache_dir, cfg.report)
    query = build_fact_query(report_facts(cfg.report), cfg.node_filter)
    if cfg.use_cache:
        meta, fragments = read_cache(path)
        _check_cache_origin(meta, cfg, query_text(query))
        LOG.info(
            "Reusing cached facts",
            extra={"cache": str(path), "fetched_at": meta.get("fetched_at"), "fragments": len(fragments)},
        )
        return fragments, f"cache:{path}"

    factory = client_factory or _default_client
    _log_event(LOG, logging.INFO, "Querying PuppetDB", step="fetch", phase="start", timers=timers, url=cfg.url)
    with factory(cfg) as client:
        try:
            fragments = client.fetch_fragments(query)
        except Exception:
            _log_event(
                LOG,
                logging.ERROR,
                "PuppetDB query failed",
                step="fetch",
                phase="error",
                timers=timers,
                url=client.query_url,
            )
            raise
        source = client.query_url
    _log_event(
        LOG,
        logging.INFO,
        "Fetch complete",
        step="fetch",
        phase="complete",
        timers=timers,
        fragments=len(fragments),
    )
    try:
        write_cache(path, fragments, url=source, query=query_text(query))
    except OSError as e:
        LOG.warning("Could not write fetch cache", extra={"cache": str(path), "error": str(e)})
    return fragments, source


def _require_facts(index: FragmentIndex, report: str) -> None:
    if index.fragment_count == 0:
        raise EmptyResponseError(f"No {index.family} facts found for {report}")


def build_records(fragments: List[FactFragment], report: str, *, timers: Optional[_StepTimers] = None) -> ReportData:
    _log_event(LOG, logging.INFO, "Reconstructing records", step="reconstruct", phase="start", timers=timers)
    users_index = FragmentIndex.build(fragments, USER_FACT)
    if report != GROUP_REPORT:
        _require_facts(users_index, report)
        users: List[UserRecord] = reconstruct_index(users_index, RecordKind.USER)  # type: ignore[assignment]
        _log_event(
            LOG,
            logging.INFO,
            "Reconstruction complete",
            step="reconstruct",
            phase="complete",
            timers=timers,
            records=len(users),
            machines=users_index.machine_count,
        )
        return ReportData(fragments=fragments, records=list(users), machines=users_index.machine_count, source="")

    groups_index = FragmentIndex.build(fragments, GROUP_FACT)
    _require_facts(groups_index, report)
    users = reconstruct_index(users_index, RecordKind.USER)  # type: ignore[assignment]
    groups: List[GroupRecord] = reconstruct_index(groups_index, RecordKind.GROUP)  # type: ignore[assignment]
    _log_event(
        LOG,
        logging.INFO,
        "Reconstruction complete",
        step="reconstruct",
        phase="complete",
        timers=timers,
        records=len(groups),
        machines=groups_index.machine_count,
    )
    _log_event(LOG, logging.INFO, "Reconciling primary groups", step="reconcile", phase="start", timers=timers)
    added = reconcile(groups, users)
    _log_event(
        LOG,
        logging.INFO,
        "Reconciliation complete",
        step="reconcile",
        phase="complete",
        timers=timers,
        members_added=added,
    )
    return ReportData(
        fragments=fragments,
        records=list(groups),
        machines=groups_index.machine_count,
        source="",
        primary_members_added=added,
    )


def render(records: List[Record], cfg: RunConfig, out: TextIO) -> int:
    """Normalize or denormalize for the configured format and write the report; returns rows written."""
    if cfg.format == "csv":
        return write_csv(denormalize(records, cfg.sort), out)
    normalized = normalize(records, cfg.sort)
    if cfg.format == "html":
        return write_html(normalized, out, report=cfg.report, sort_key=cfg.sort, generated_at=cfg.started_at)
    return write_json(normalized, out, report=cfg.report, sort_key=cfg.sort, generated_at=cfg.started_at)


@contextmanager
def _open_output(path: Optional[Path]) -> Iterator[TextIO]:
    if path is None:
        yield sys.stdout
        return
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        handle = path.open("w", encoding="utf-8", newline="")
    except OSError as e:
        raise RenderError(f"Cannot write report to {path}: {e}") from e
    with handle:
        yield handle


def cmd_report(cfg: RunConfig, *, client_factory: Optional[ClientFactory] = None) -> int:
    timers = _StepTimers()
    LOG.debug("Effective configuration", extra={"config": dump_config(cfg)})

    fragments, source = fetch_fragments(cfg, client_factory=client_factory, timers=timers)
    data = build_records(fragments, cfg.report, timers=timers)
    data.source = source

    _log_event(LOG, logging.INFO, "Rendering report", step="render", phase="start", timers=timers, format=cfg.format)
    with _open_output(cfg.output) as out:
        rows = render(data.records, cfg, out)
    _log_event(LOG, logging.INFO, "Report written", step="render", phase="complete", timers=timers, rows=rows)

    metrics: Dict[str, Any] = {
        "report": cfg.report,
        "source": data.source,
        "machines": data.machines,
        "fragments": len(data.fragments),
        "records": len(data.records),
        "rows": rows,
        "output": str(cfg.output) if cfg.output else None,
    }
    if data.primary_members_added is not None:
        metrics["primary_members_added"] = data.primary_members_added
    render_run_summary_table(enabled=cfg.summary, status="OK", metrics=metrics)
    return 0


def main(argv: Optional[List[str]] = None) -> None:
    try:
        _report, cfg = load_run_config(argv=argv)
        setup_logging(LogConfig(level=cfg.log_level, json_logs=cfg.json_logs))
        sys.exit(cmd_report(cfg))
    except SystemExit:
        raise
    except BrokenPipeError:
        # Common when users pipe to `head` or similar tools.
        sys.exit(0)
    except Exception as e:
        setup_logging(LogConfig())
        LOG.error("Execution failed", extra={"error": str(e)})
        sys.exit(as_exit_code(e))


if __name__ == "__main__":
    main()
