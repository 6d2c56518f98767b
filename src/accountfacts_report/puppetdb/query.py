from __future__ import annotations

import json
from typing import Any, List, Optional, Sequence, Union

from ..util.errors import ConfigError

FACT_CONTENTS_ENDPOINT = "/pdb/query/v4/fact-contents"


def parse_node_filter(text: Optional[str]) -> Optional[List[Any]]:
    """
    Parse a PuppetDB AST node filter given as JSON text, e.g. '["~", "certname", "^web"]'.
    """
    if text is None or not text.strip():
        return None
    try:
        parsed = json.loads(text)
    except ValueError as e:
        raise ConfigError(f"Node filter is not valid JSON: {e}") from e
    if not isinstance(parsed, list) or not parsed or not isinstance(parsed[0], str):
        raise ConfigError("Node filter must be a PuppetDB AST query array, e.g. [\"=\", \"certname\", \"web01\"]")
    return parsed


def build_fact_query(fact_names: Union[str, Sequence[str]], node_filter: Optional[str] = None) -> List[Any]:
    """
    AST query selecting every fact-contents leaf of the given facts, optionally
    limited to the nodes matched by node_filter.
    """
    names = [fact_names] if isinstance(fact_names, str) else list(fact_names)
    if not names:
        raise ValueError("At least one fact name is required")
    by_name: List[Any]
    if len(names) == 1:
        by_name = ["=", "name", names[0]]
    else:
        by_name = ["or", *(["=", "name", name] for name in names)]
    parsed = parse_node_filter(node_filter)
    if parsed is None:
        return by_name
    return [
        "and",
        by_name,
        ["in", "certname", ["extract", "certname", ["select_nodes", parsed]]],
    ]


def query_text(query: List[Any]) -> str:
    return json.dumps(query, separators=(",", ":"))
