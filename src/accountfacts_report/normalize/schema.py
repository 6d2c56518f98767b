from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Tuple, Union

SORT_KEYS = ("name", "id")

USER_REPORT = "user-reports"
GROUP_REPORT = "group-reports"

# Canonical report name -> accepted subcommand aliases
REPORT_ALIASES: Dict[str, Tuple[str, ...]] = {
    USER_REPORT: ("users", "user"),
    GROUP_REPORT: ("groups", "group"),
}


@dataclass(frozen=True)
class NormalizedUser:
    uid: Any
    primary_gid: Any
    uname: Any
    shell: Any
    home_dir: Any
    nodes: Tuple[str, ...]
    descriptions: Tuple[str, ...]


@dataclass(frozen=True)
class GroupVariant:
    """Intermediate: one (gid, name, members) combination and the nodes reporting it."""

    gid: Any
    name: Any
    members: Tuple[str, ...]
    nodes: Tuple[str, ...]


@dataclass(frozen=True)
class MembershipVariant:
    members: Tuple[str, ...]
    nodes: Tuple[str, ...]


@dataclass(frozen=True)
class NormalizedGroup:
    gid: Any
    name: Any
    membership: Tuple[MembershipVariant, ...]

    @property
    def nodes(self) -> Tuple[str, ...]:
        return tuple(sorted({n for variant in self.membership for n in variant.nodes}))


NormalizedRecord = Union[NormalizedUser, NormalizedGroup]

# Flat row layouts written by the delimited-text renderer
USER_ROW_FIELDS: List[str] = [
    "uid",
    "primary_gid",
    "uname",
    "shell",
    "home_dir",
    "description",
    "source_node",
]
GROUP_ROW_FIELDS: List[str] = [
    "gid",
    "name",
    "source_node",
]
MEMBER_COLUMN_PREFIX = "member_"


def member_column(position: int) -> str:
    """Column name for the 1-based member position."""
    return f"{MEMBER_COLUMN_PREFIX}{position}"
