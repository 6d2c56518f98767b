from __future__ import annotations

import re
from typing import Any, Dict, List, Sequence, Set, Tuple

from ..facts.reconstruct import GroupRecord, Record, UserRecord
from ..util.errors import ConfigError
from .schema import (
    GROUP_ROW_FIELDS,
    SORT_KEYS,
    USER_ROW_FIELDS,
    GroupVariant,
    MembershipVariant,
    NormalizedGroup,
    NormalizedRecord,
    NormalizedUser,
    member_column,
)

Row = Dict[str, Any]
_INTEGER = re.compile(r"-?[0-9]+")


def _id_order(value: Any) -> Tuple[int, float, str]:
    """Numeric ordering for ids; digit-only strings count as numbers, nulls sort last."""
    if value is None:
        return (2, 0, "")
    if isinstance(value, bool):
        return (1, 0, str(value))
    if isinstance(value, (int, float)):
        return (0, value, "")
    text = str(value).strip()
    if _INTEGER.fullmatch(text):
        return (0, int(text), "")
    return (1, 0, text)


def _name_order(value: Any) -> Tuple[int, str]:
    if value is None:
        return (1, "")
    return (0, str(value))


def _check_sort_key(sort_key: str) -> str:
    if sort_key not in SORT_KEYS:
        raise ConfigError(f"Sort key must be one of: {', '.join(SORT_KEYS)}")
    return sort_key


def _user_order(sort_key: str, uid: Any, uname: Any, primary_gid: Any, shell: Any, home_dir: Any) -> tuple:
    rest = (_id_order(primary_gid), _name_order(shell), _name_order(home_dir))
    if sort_key == "id":
        return (_id_order(uid), _name_order(uname)) + rest
    return (_name_order(uname), _id_order(uid)) + rest


def _group_order(sort_key: str, gid: Any, name: Any) -> tuple:
    if sort_key == "id":
        return (_id_order(gid), _name_order(name))
    return (_name_order(name), _id_order(gid))


def _sorted_unique(values: Set[Any]) -> Tuple[str, ...]:
    return tuple(sorted({str(v) for v in values if v is not None}))


def _all_null(values: Sequence[Any]) -> bool:
    return all(v is None for v in values)


# ---------
# Normalize
# ---------


def normalize_users(records: Sequence[UserRecord], sort_key: str = "name") -> List[NormalizedUser]:
    """
    Collapse users reported identically by several nodes into one entry carrying
    every reporting node and every description seen for it.
    """
    _check_sort_key(sort_key)
    grouped: Dict[tuple, List[UserRecord]] = {}
    for rec in records:
        grouped.setdefault(rec.identity(), []).append(rec)

    out: List[NormalizedUser] = []
    for identity, members in grouped.items():
        if _all_null(identity):
            continue
        uid, primary_gid, uname, shell, home_dir = identity
        out.append(
            NormalizedUser(
                uid=uid,
                primary_gid=primary_gid,
                uname=uname,
                shell=shell,
                home_dir=home_dir,
                nodes=_sorted_unique({m.source_node for m in members}),
                descriptions=_sorted_unique({m.description for m in members}),
            )
        )

    out.sort(
        key=lambda u: _user_order(sort_key, u.uid, u.uname, u.primary_gid, u.shell, u.home_dir) + (u.nodes,)
    )
    return out


def group_variants(records: Sequence[GroupRecord]) -> List[GroupVariant]:
    """
    First stage of group normalization: one entry per distinct (gid, name, members)
    with the nodes that reported exactly that combination.
    """
    nodes_by_identity: Dict[tuple, Set[str]] = {}
    for rec in records:
        nodes_by_identity.setdefault(rec.identity(), set()).add(rec.source_node)

    variants: List[GroupVariant] = []
    for (gid, name, members), nodes in nodes_by_identity.items():
        variants.append(
            GroupVariant(
                gid=gid,
                name=name,
                members=tuple(sorted(members)),
                nodes=_sorted_unique(nodes),
            )
        )
    return variants


def normalize_groups(records: Sequence[GroupRecord], sort_key: str = "name") -> List[NormalizedGroup]:
    """
    Second stage: regroup variants by (gid, name) so each group is listed once
    with every distinct membership list seen across nodes.
    """
    _check_sort_key(sort_key)
    by_group: Dict[Tuple[Any, Any], List[MembershipVariant]] = {}
    for variant in group_variants(records):
        by_group.setdefault((variant.gid, variant.name), []).append(
            MembershipVariant(members=variant.members, nodes=variant.nodes)
        )

    out: List[NormalizedGroup] = []
    for (gid, name), membership in by_group.items():
        if _all_null((gid, name)):
            continue
        membership.sort(key=lambda v: (v.members, v.nodes))
        out.append(NormalizedGroup(gid=gid, name=name, membership=tuple(membership)))

    out.sort(key=lambda g: _group_key(sort_key, g))
    return out


def _group_key(sort_key: str, group: NormalizedGroup) -> tuple:
    return _group_order(sort_key, group.gid, group.name) + (
        tuple((v.members, v.nodes) for v in group.membership),
    )


def normalize(records: Sequence[Record], sort_key: str = "name") -> List[NormalizedRecord]:
    if not records:
        _check_sort_key(sort_key)
        return []
    if isinstance(records[0], GroupRecord):
        return list(normalize_groups(records, sort_key))  # type: ignore[arg-type]
    return list(normalize_users(records, sort_key))  # type: ignore[arg-type]


# -----------
# Denormalize
# -----------


def denormalize_users(records: Sequence[UserRecord], sort_key: str = "name") -> List[Row]:
    _check_sort_key(sort_key)
    ordered = sorted(
        records,
        key=lambda u: _user_order(sort_key, u.uid, u.uname, u.primary_gid, u.shell, u.home_dir)
        + (u.source_node, _name_order(u.description)),
    )
    return [{f: getattr(u, f) for f in USER_ROW_FIELDS} for u in ordered]


def denormalize_groups(records: Sequence[GroupRecord], sort_key: str = "name") -> List[Row]:
    """
    One row per reported group. Members are spread over member_1..member_N where N
    is the longest member list; positions past a group's own count are empty strings.
    """
    _check_sort_key(sort_key)
    width = max((len(g.members) for g in records), default=0)
    ordered = sorted(
        records,
        key=lambda g: _group_order(sort_key, g.gid, g.name) + (g.source_node, tuple(g.sorted_members())),
    )
    rows: List[Row] = []
    for group in ordered:
        row: Row = {f: getattr(group, f) for f in GROUP_ROW_FIELDS}
        members = group.sorted_members()
        for position in range(width):
            row[member_column(position + 1)] = members[position] if position < len(members) else ""
        rows.append(row)
    return rows


def denormalize(records: Sequence[Record], sort_key: str = "name") -> List[Row]:
    if not records:
        _check_sort_key(sort_key)
        return []
    if isinstance(records[0], GroupRecord):
        return denormalize_groups(records, sort_key)  # type: ignore[arg-type]
    return denormalize_users(records, sort_key)  # type: ignore[arg-type]

