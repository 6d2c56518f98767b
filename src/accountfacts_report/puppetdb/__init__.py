from __future__ import annotations

from .client import PuppetDBClient, TLSMaterial
from .query import FACT_CONTENTS_ENDPOINT, build_fact_query, parse_node_filter

__all__ = [
    "FACT_CONTENTS_ENDPOINT",
    "PuppetDBClient",
    "TLSMaterial",
    "build_fact_query",
    "parse_node_filter",
]
