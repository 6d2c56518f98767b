from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Tuple

from ..util.errors import MalformedResponseError

USER_FACT = "accountfacts_users"
GROUP_FACT = "accountfacts_groups"

# Leaf fields that repeat once per array element instead of holding a single value.
PLURAL_FIELDS = frozenset({"members"})

PathElement = Any
_INDEX = re.compile(r"[0-9]+")


@dataclass(frozen=True)
class FactFragment:
    """
    One leaf of a structured fact as returned by PuppetDB fact-contents.

    path[0] is the fact family, path[1] the slot of the record within the
    machine's collection, path[2] the leaf field name. Array leaves carry the
    element index at path[3].
    """

    certname: str
    path: Tuple[PathElement, ...]
    value: Any

    @property
    def family(self) -> PathElement:
        return self.path[0]

    @property
    def slot(self) -> int:
        return self.path[1]

    @property
    def leaf(self) -> str:
        return str(self.path[2])

    @property
    def element(self) -> Optional[int]:
        if len(self.path) > 3 and isinstance(self.path[3], int):
            return self.path[3]
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {"certname": self.certname, "path": list(self.path), "value": self.value}


def _coerce_slot(raw: Any) -> Optional[int]:
    if isinstance(raw, bool):
        return None
    if isinstance(raw, int):
        return raw
    if isinstance(raw, str) and _INDEX.fullmatch(raw):
        return int(raw)
    return None


def fragment_from_api(row: Mapping[str, Any]) -> FactFragment:
    """
    Build a FactFragment from a PuppetDB fact-contents row ({certname, path, value, ...}).
    """
    if not isinstance(row, Mapping):
        raise MalformedResponseError(f"fact-contents row is not an object: {row!r}")
    certname = row.get("certname")
    path = row.get("path")
    if not isinstance(certname, str) or not certname:
        raise MalformedResponseError(f"fact-contents row without certname: {row!r}")
    if not isinstance(path, (list, tuple)) or len(path) < 3:
        raise MalformedResponseError(f"fact-contents row on {certname} has a short path: {path!r}")
    if "value" not in row:
        raise MalformedResponseError(f"fact-contents row on {certname} has no value: {path!r}")
    slot = _coerce_slot(path[1])
    if slot is None:
        raise MalformedResponseError(f"fact-contents row on {certname} has a non-integer slot: {path!r}")
    elements = [path[0], slot, *path[2:]]
    if len(elements) > 3:
        element = _coerce_slot(elements[3])
        if element is not None:
            elements[3] = element
    return FactFragment(certname=certname, path=tuple(elements), value=row["value"])


def fragments_from_api(rows: Iterable[Mapping[str, Any]]) -> List[FactFragment]:
    return [fragment_from_api(row) for row in rows]


@dataclass
class SlotFields:
    """Leaf values collected for one (machine, slot) pair."""

    values: Dict[str, Any] = field(default_factory=dict)
    plural: Dict[str, List[Tuple[int, Any]]] = field(default_factory=dict)

    def add(self, fragment: FactFragment) -> None:
        leaf = fragment.leaf
        if leaf in PLURAL_FIELDS:
            items = self.plural.setdefault(leaf, [])
            element = fragment.element
            items.append((element if element is not None else len(items), fragment.value))
            return
        self.values[leaf] = fragment.value

    def has(self, name: str) -> bool:
        return name in self.values

    def get(self, name: str) -> Any:
        return self.values.get(name)

    def collect(self, name: str) -> List[Any]:
        return [value for _, value in sorted(self.plural.get(name, []), key=lambda item: item[0])]


class FragmentIndex:
    """
    Two-level mapping machine -> slot -> SlotFields built in a single pass
    over the flat fragment list of one fact family.
    """

    def __init__(self, family: str) -> None:
        self.family = family
        self._by_machine: Dict[str, Dict[int, SlotFields]] = {}
        self.fragment_count = 0
        self.skipped_count = 0

    @classmethod
    def build(cls, fragments: Iterable[FactFragment], family: str) -> FragmentIndex:
        index = cls(family)
        for fragment in fragments:
            index.add(fragment)
        return index

    def add(self, fragment: FactFragment) -> None:
        if fragment.family != self.family:
            self.skipped_count += 1
            return
        slots = self._by_machine.setdefault(fragment.certname, {})
        slots.setdefault(fragment.slot, SlotFields()).add(fragment)
        self.fragment_count += 1

    def machines(self) -> List[str]:
        return sorted(self._by_machine)

    def slots(self, machine: str) -> Iterator[Tuple[int, SlotFields]]:
        slots = self._by_machine.get(machine, {})
        for slot in sorted(slots):
            yield slot, slots[slot]

    @property
    def machine_count(self) -> int:
        return len(self._by_machine)

    @property
    def slot_count(self) -> int:
        return sum(len(slots) for slots in self._by_machine.values())

    def __len__(self) -> int:
        return self.slot_count
