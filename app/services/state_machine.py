"""Entry lifecycle.

Visitor:  pending -> checked_in -> checked_out
          pending -> cancelled
Delivery: pending -> arrived -> collected
          pending -> collected   (unless arrival is required)
          pending -> cancelled

checked_out, collected and cancelled are terminal. The durable status only
changes through ``transition``, which issues a conditional UPDATE so that of
two racing guards exactly one moves the record.
"""
from __future__ import annotations
import uuid
from dataclasses import dataclass
from typing import Dict, FrozenSet, Tuple

from sqlalchemy import select, update
from sqlalchemy.exc import OperationalError, InterfaceError
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from ..core.clock import Clock
from ..core.errors import AlreadyAdmitted, EntryNotFound, IllegalTransitionError, StoreUnavailable
from ..models import EntryEvent, EntryKind, EntryRecord, EntryStatus

logger = structlog.get_logger()

TERMINAL: FrozenSet[EntryStatus] = frozenset(
    {EntryStatus.CHECKED_OUT, EntryStatus.COLLECTED, EntryStatus.CANCELLED}
)


@dataclass(frozen=True)
class Transition:
    kind: EntryKind
    event: EntryEvent
    sources: FrozenSet[EntryStatus]
    target: EntryStatus
    admits: bool = False          # guard consumes the credential to let someone in
    releases_cache: bool = False  # cache entry deleted once committed
    clears_credential: bool = False  # credential_ref dropped from the record


_P = EntryStatus.PENDING

TRANSITIONS: Dict[Tuple[EntryKind, EntryEvent], Transition] = {
    (EntryKind.VISITOR, EntryEvent.CHECK_IN): Transition(
        EntryKind.VISITOR, EntryEvent.CHECK_IN, frozenset({_P}), EntryStatus.CHECKED_IN,
        admits=True, releases_cache=True,
    ),
    (EntryKind.VISITOR, EntryEvent.CHECK_OUT): Transition(
        EntryKind.VISITOR, EntryEvent.CHECK_OUT, frozenset({EntryStatus.CHECKED_IN}), EntryStatus.CHECKED_OUT,
        releases_cache=True, clears_credential=True,
    ),
    (EntryKind.VISITOR, EntryEvent.CANCEL): Transition(
        EntryKind.VISITOR, EntryEvent.CANCEL, frozenset({_P}), EntryStatus.CANCELLED,
        releases_cache=True, clears_credential=True,
    ),
    (EntryKind.DELIVERY, EntryEvent.ARRIVE): Transition(
        EntryKind.DELIVERY, EntryEvent.ARRIVE, frozenset({_P}), EntryStatus.ARRIVED,
        admits=True,
    ),
    (EntryKind.DELIVERY, EntryEvent.COLLECT): Transition(
        EntryKind.DELIVERY, EntryEvent.COLLECT, frozenset({_P, EntryStatus.ARRIVED}), EntryStatus.COLLECTED,
        admits=True, releases_cache=True, clears_credential=True,
    ),
    (EntryKind.DELIVERY, EntryEvent.CANCEL): Transition(
        EntryKind.DELIVERY, EntryEvent.CANCEL, frozenset({_P}), EntryStatus.CANCELLED,
        releases_cache=True, clears_credential=True,
    ),
}

EVENT_KIND: Dict[EntryEvent, EntryKind | None] = {
    EntryEvent.CHECK_IN: EntryKind.VISITOR,
    EntryEvent.CHECK_OUT: EntryKind.VISITOR,
    EntryEvent.ARRIVE: EntryKind.DELIVERY,
    EntryEvent.COLLECT: EntryKind.DELIVERY,
    EntryEvent.CANCEL: None,
}


def transition_for(kind: EntryKind, event: EntryEvent, *, require_arrival: bool = False) -> Transition:
    t = TRANSITIONS.get((kind, event))
    if t is None:
        raise IllegalTransitionError(f"{event.value} does not apply to a {kind.value}", event=event)
    if require_arrival and t.event == EntryEvent.COLLECT:
        t = Transition(
            t.kind, t.event, frozenset({EntryStatus.ARRIVED}), t.target,
            admits=t.admits, releases_cache=t.releases_cache, clears_credential=t.clears_credential,
        )
    return t


def apply(status: EntryStatus, kind: EntryKind, event: EntryEvent, *, require_arrival: bool = False) -> EntryStatus:
    """Return the status ``event`` leads to from ``status`` or raise."""
    t = transition_for(kind, event, require_arrival=require_arrival)
    if t.admits and status == t.target:
        raise AlreadyAdmitted(f"{kind.value.capitalize()} is already {status.value}", current=status, event=event)
    if status in TERMINAL:
        raise IllegalTransitionError(
            f"{kind.value.capitalize()} is {status.value}; no further changes allowed", current=status, event=event
        )
    if status not in t.sources:
        raise IllegalTransitionError(
            f"Cannot {event.value.replace('_', ' ')} a {kind.value} that is {status.value}",
            current=status, event=event,
        )
    return t.target


async def get_entry(
    db: AsyncSession, entry_id: uuid.UUID, community_id: uuid.UUID | None = None, *, fresh: bool = False
) -> EntryRecord | None:
    q = select(EntryRecord).where(EntryRecord.id == entry_id)
    if community_id is not None:
        q = q.where(EntryRecord.community_id == community_id)
    if fresh:
        q = q.execution_options(populate_existing=True)
    try:
        return (await db.execute(q)).scalar_one_or_none()
    except (OperationalError, InterfaceError) as e:
        raise StoreUnavailable("Entry store unavailable") from e


async def transition(
    db: AsyncSession,
    *,
    entry_id: uuid.UUID,
    event: EntryEvent,
    actor_id: uuid.UUID,
    clock: Clock,
    community_id: uuid.UUID | None = None,
    require_arrival: bool = False,
) -> tuple[EntryRecord, Transition, str | None]:
    """Move one record along ``event``.

    Returns the refreshed record, the transition taken and the public code the
    record held before the change (so the caller can drop it from the cache
    after commit).
    """
    entry = await get_entry(db, entry_id, community_id)
    if entry is None:
        raise EntryNotFound()
    t = transition_for(entry.kind, event, require_arrival=require_arrival)
    apply(entry.status, entry.kind, event, require_arrival=require_arrival)
    previous_code = entry.credential_ref

    now = clock.now()
    values = {"status": t.target, "updated_at": now}
    if t.admits:
        values["acted_by"] = actor_id
        values["acted_at"] = now
    if t.target in (EntryStatus.CHECKED_IN, EntryStatus.ARRIVED):
        values["actual_arrival"] = now
    elif t.target in (EntryStatus.CHECKED_OUT, EntryStatus.COLLECTED):
        values["actual_departure"] = now
    if t.target == EntryStatus.CHECKED_OUT:
        values["checked_out_by"] = actor_id
    elif t.target == EntryStatus.CANCELLED:
        values["cancelled_by"] = actor_id
    if t.target == EntryStatus.COLLECTED and entry.actual_arrival is None:
        values["actual_arrival"] = now
    if t.clears_credential:
        values["credential_ref"] = None
        values["credential_expires_at"] = now

    stmt = (
        update(EntryRecord)
        .where(EntryRecord.id == entry.id, EntryRecord.status.in_(t.sources))
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    try:
        result = await db.execute(stmt)
        if result.rowcount != 1:
            await db.rollback()
            # lost the race: report what the winner left behind
            current = await get_entry(db, entry_id, fresh=True)
            apply(current.status, current.kind, event, require_arrival=require_arrival)
            raise IllegalTransitionError(current=current.status, event=event)
        await db.commit()
    except (OperationalError, InterfaceError) as e:
        await db.rollback()
        raise StoreUnavailable("Entry store unavailable") from e

    await db.refresh(entry)
    logger.info(
        "entry_transitioned",
        entry_id=str(entry.id),
        kind=entry.kind.value,
        entry_event=event.value,
        status=entry.status.value,
        acted_by=str(actor_id),
    )
    return entry, t, previous_code
