from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, List, Optional

import requests

from ..facts.fragments import FactFragment, fragments_from_api
from ..logging import get_logger
from ..util.errors import EmptyResponseError, MalformedResponseError, TransportError
from .query import FACT_CONTENTS_ENDPOINT, query_text

LOG = get_logger(__name__)

DEFAULT_TIMEOUT = 60.0


@dataclass(frozen=True)
class TLSMaterial:
    """Client certificate, key and CA bundle (PEM) for mutual TLS to PuppetDB."""

    cert: Path
    key: Path
    cacert: Path


class PuppetDBClient:
    """
    Thin wrapper over a requests.Session for PuppetDB v4 fact-contents queries.
    """

    def __init__(
        self,
        url: str,
        *,
        tls: Optional[TLSMaterial] = None,
        timeout: float = DEFAULT_TIMEOUT,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.base_url = url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({"Accept": "application/json"})
        if tls is not None:
            self.session.cert = (str(tls.cert), str(tls.key))
            self.session.verify = str(tls.cacert)

    @property
    def query_url(self) -> str:
        return f"{self.base_url}{FACT_CONTENTS_ENDPOINT}"

    def query(self, query: List[Any]) -> List[Any]:
        """Run an AST query and return the decoded JSON rows."""
        url = self.query_url
        text = query_text(query)
        LOG.debug("Querying PuppetDB", extra={"url": url, "query": text})
        try:
            response = self.session.get(url, params={"query": text}, timeout=self.timeout)
        except requests.RequestException as e:
            raise TransportError(f"PuppetDB query to {url} failed: {e}", url=url) from e
        if response.status_code >= 400:
            detail = (response.text or "").strip()[:200]
            raise TransportError(
                f"PuppetDB query to {url} returned HTTP {response.status_code}: {detail}",
                url=url,
                status=response.status_code,
            )
        try:
            payload = response.json()
        except ValueError as e:
            raise MalformedResponseError(f"PuppetDB response from {url} is not JSON: {e}") from e
        if not isinstance(payload, list):
            raise MalformedResponseError(f"PuppetDB response from {url} is not a list of rows")
        return payload

    def fetch_fragments(self, query: List[Any]) -> List[FactFragment]:
        """
        Fetch fact-contents rows as FactFragments. An empty result is an error:
        an account report over zero facts is never a valid report.
        """
        rows = self.query(query)
        if not rows:
            raise EmptyResponseError(f"PuppetDB returned no facts for query {query_text(query)} at {self.query_url}")
        fragments = fragments_from_api(rows)
        LOG.info(
            "Fetched fact fragments",
            extra={"url": self.query_url, "fragments": len(fragments)},
        )
        return fragments

    def close(self) -> None:
        self.session.close()

    def __enter__(self) -> PuppetDBClient:
        return self

    def __exit__(self, exc_type: Any, exc: Any, exc_tb: Any) -> None:
        self.close()
