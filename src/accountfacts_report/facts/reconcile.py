from __future__ import annotations

from typing import Any, Dict, Iterable, Sequence, Tuple

from ..logging import get_logger
from .reconstruct import GroupRecord, UserRecord

LOG = get_logger(__name__)

# Prefix for members implied by a user's primary group rather than listed in the group.
PRIMARY_MEMBER_MARKER = "*"


def primary_member_label(uname: Any) -> str:
    return f"{PRIMARY_MEMBER_MARKER}{uname}"


def _index_groups(groups: Iterable[GroupRecord]) -> Dict[Tuple[str, Any], GroupRecord]:
    by_key: Dict[Tuple[str, Any], GroupRecord] = {}
    for group in groups:
        # first group reported for a (node, gid) wins
        by_key.setdefault((group.source_node, group.gid), group)
    return by_key


def reconcile(groups: Sequence[GroupRecord], users: Iterable[UserRecord]) -> int:
    """
    Add each user, marked as a primary member, to the group on the same node
    whose gid equals the user's primary gid.

    Users whose primary group is not among the reported groups are skipped.
    Members are only ever added and a repeated call adds nothing new.
    Returns the number of members added.
    """
    by_key = _index_groups(groups)
    added = 0
    unmatched = 0
    for user in users:
        group = by_key.get((user.source_node, user.primary_gid))
        if group is None:
            unmatched += 1
            continue
        label = primary_member_label(user.uname)
        if label in group.members:
            continue
        group.members.add(label)
        added += 1
    LOG.debug(
        "Primary group reconciliation finished",
        extra={"members_added": added, "users_unmatched": unmatched},
    )
    return added
