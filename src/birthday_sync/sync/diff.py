"""Diff between desired events and the persisted event map."""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import assert_never

from birthday_sync.sync.errors import DuplicateEventKeyError
from birthday_sync.sync.models import (
    EventDescriptor,
    GregorianKey,
    LunarKey,
    parse_event_key,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CycleBoundary:
    """Current cycle year per date system.

    ``lunar`` is None when the current lunar year could not be determined;
    lunar orphans of active records are then kept.
    """

    gregorian: int
    lunar: int | None

    def is_current_or_future(self, key: GregorianKey | LunarKey) -> bool:
        match key:
            case GregorianKey(year=year):
                return year >= self.gregorian
            case LunarKey(year=year):
                return self.lunar is not None and year >= self.lunar
            case _:
                assert_never(key)


@dataclass(frozen=True)
class CreateOp:
    key: str
    descriptor: EventDescriptor


@dataclass(frozen=True)
class UpdateOp:
    key: str
    event_id: str
    descriptor: EventDescriptor


@dataclass(frozen=True)
class DeleteOp:
    key: str
    event_id: str


@dataclass(frozen=True)
class SyncPlan:
    creates: list[CreateOp] = field(default_factory=list)
    updates: list[UpdateOp] = field(default_factory=list)
    deletes: list[DeleteOp] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.creates) + len(self.updates) + len(self.deletes)

    @property
    def is_empty(self) -> bool:
        return len(self) == 0


def index_descriptors(desired: Sequence[EventDescriptor]) -> dict[str, EventDescriptor]:
    """Key descriptors by their serialized event key.

    Raises:
        DuplicateEventKeyError: Two descriptors share a key.
    """
    indexed: dict[str, EventDescriptor] = {}
    for descriptor in desired:
        key = descriptor.map_key
        if key in indexed:
            raise DuplicateEventKeyError(key)
        indexed[key] = descriptor
    return indexed


def compute_plan(
    desired: Sequence[EventDescriptor],
    event_map: Mapping[str, str],
    boundary: CycleBoundary,
    *,
    archived: bool,
) -> SyncPlan:
    """Partition the work needed to make the calendar match *desired*.

    Desired keys already in the map are updated, the rest are created. Mapped
    keys that are no longer desired are deleted when the record is archived,
    or when their cycle is current or future; past-cycle events of active
    records are history and stay. Map keys that do not parse are only
    deleted for archived records.
    """
    if archived and desired:
        logger.warning("Ignoring %d desired events for an archived record", len(desired))
        desired = ()

    wanted = index_descriptors(desired)

    creates: list[CreateOp] = []
    updates: list[UpdateOp] = []
    for key, descriptor in wanted.items():
        event_id = event_map.get(key)
        if event_id:
            updates.append(UpdateOp(key=key, event_id=event_id, descriptor=descriptor))
        else:
            creates.append(CreateOp(key=key, descriptor=descriptor))

    deletes: list[DeleteOp] = []
    for key, event_id in event_map.items():
        if key in wanted or not event_id:
            continue
        if archived:
            deletes.append(DeleteOp(key=key, event_id=event_id))
            continue
        try:
            parsed = parse_event_key(key)
        except ValueError:
            logger.warning("Keeping event %s under unrecognized map key %r", event_id, key)
            continue
        if boundary.is_current_or_future(parsed):
            deletes.append(DeleteOp(key=key, event_id=event_id))

    return SyncPlan(creates=creates, updates=updates, deletes=deletes)
