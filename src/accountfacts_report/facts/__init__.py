from __future__ import annotations

from .fragments import GROUP_FACT, USER_FACT, FactFragment, FragmentIndex, fragment_from_api, fragments_from_api
from .reconcile import PRIMARY_MEMBER_MARKER, reconcile
from .reconstruct import (
    GroupRecord,
    Record,
    RecordKind,
    UserRecord,
    reconstruct,
    reconstruct_groups,
    reconstruct_users,
)

__all__ = [
    "GROUP_FACT",
    "USER_FACT",
    "FactFragment",
    "FragmentIndex",
    "fragment_from_api",
    "fragments_from_api",
    "PRIMARY_MEMBER_MARKER",
    "reconcile",
    "GroupRecord",
    "Record",
    "RecordKind",
    "UserRecord",
    "reconstruct",
    "reconstruct_groups",
    "reconstruct_users",
]
