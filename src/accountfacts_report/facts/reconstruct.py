from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable, List, Set, Union

from ..logging import get_logger
from ..util.errors import MissingFieldError
from .fragments import GROUP_FACT, USER_FACT, FactFragment, FragmentIndex, SlotFields

LOG = get_logger(__name__)


class RecordKind(str, Enum):
    USER = "user"
    GROUP = "group"

    @property
    def fact_name(self) -> str:
        return USER_FACT if self is RecordKind.USER else GROUP_FACT


@dataclass(frozen=True)
class UserRecord:
    uid: Any
    primary_gid: Any
    uname: Any
    shell: Any
    home_dir: Any
    description: Any
    source_node: str

    def identity(self) -> tuple:
        return (self.uid, self.primary_gid, self.uname, self.shell, self.home_dir)


@dataclass
class GroupRecord:
    """A group as reported by one machine. Only the reconciler adds to members."""

    gid: Any
    name: Any
    members: Set[str] = field(default_factory=set)
    source_node: str = ""

    def identity(self) -> tuple:
        return (self.gid, self.name, frozenset(self.members))

    def sorted_members(self) -> List[str]:
        return sorted(self.members)


Record = Union[UserRecord, GroupRecord]

# Leaf field name in the fact -> record attribute
USER_FIELDS = (
    ("uid", "uid"),
    ("primary gid", "primary_gid"),
    ("name", "uname"),
    ("shell", "shell"),
    ("homedir", "home_dir"),
    ("description", "description"),
)
GROUP_FIELDS = (
    ("gid", "gid"),
    ("name", "name"),
)


def _require(fields: SlotFields, name: str, slot: int, machine: str) -> Any:
    if not fields.has(name):
        raise MissingFieldError(name, slot, machine)
    return fields.get(name)


def _build_user(fields: SlotFields, slot: int, machine: str) -> UserRecord:
    values = {attr: _require(fields, leaf, slot, machine) for leaf, attr in USER_FIELDS}
    return UserRecord(source_node=machine, **values)


def _build_group(fields: SlotFields, slot: int, machine: str) -> GroupRecord:
    values = {attr: _require(fields, leaf, slot, machine) for leaf, attr in GROUP_FIELDS}
    members = {str(m) for m in fields.collect("members") if m is not None}
    return GroupRecord(members=members, source_node=machine, **values)


def reconstruct_index(index: FragmentIndex, kind: RecordKind) -> List[Record]:
    """
    Assemble one record per (machine, slot) of an already built index.
    Machines are visited in sorted order and slots ascending, so output order
    does not depend on the order fragments arrived in.
    """
    build = _build_user if kind is RecordKind.USER else _build_group
    records: List[Record] = []
    for machine in index.machines():
        count = 0
        for slot, fields in index.slots(machine):
            records.append(build(fields, slot, machine))
            count += 1
        LOG.debug("Reconstructed %d %s records from %s", count, kind.value, machine)
    return records


def reconstruct(fragments: Iterable[FactFragment], kind: RecordKind) -> List[Record]:
    index = FragmentIndex.build(fragments, kind.fact_name)
    if index.skipped_count:
        LOG.debug(
            "Skipped fragments outside %s",
            kind.fact_name,
            extra={"skipped": index.skipped_count},
        )
    return reconstruct_index(index, kind)


def reconstruct_users(fragments: Iterable[FactFragment]) -> List[UserRecord]:
    return reconstruct(fragments, RecordKind.USER)  # type: ignore[return-value]


def reconstruct_groups(fragments: Iterable[FactFragment]) -> List[GroupRecord]:
    return reconstruct(fragments, RecordKind.GROUP)  # type: ignore[return-value]

