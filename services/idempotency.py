# services/idempotency.py
"""
Exactly-once application of offline events.

Every ingestion path (tap-in, tap-out, manual ticket, booking) names its event
with an (event_type, offline_id) key. The key row is inserted first inside the
same transaction as the event's writes and carries the event's outcome, so a
replay either finds the committed outcome or collides on the primary key and
then reads it.
"""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, Tuple

from services.errors import Internal, InvalidRequest, UniqueViolation
from services.stores import IDEMPOTENCY_GUARD

log = logging.getLogger("idempotency")

TAP_IN = "tap_in"
TAP_OUT = "tap_out"
MANUAL_TICKET = "manual_ticket"
BOOKING = "booking"

MAX_OFFLINE_ID_LEN = 64

CREATED = "created"
DUPLICATE = "duplicate"


@dataclass(frozen=True)
class EventResult:
    status: str
    data: Dict[str, Any] = field(default_factory=dict)

    @property
    def duplicate(self) -> bool:
        return self.status == DUPLICATE


def _now_ms() -> int:
    return int(time.time() * 1000)


def _unique_ref(prefix: str) -> str:
    """Compact, unique, non-guessable reference with time + 8-hex suffix."""
    return f"{prefix}-{_now_ms()}-{uuid.uuid4().hex[:8]}"


def event_key(raw: Any, prefix: str) -> str:
    """
    The client's offline id, trimmed; a server-generated one when absent so
    online calls go through the same guard.
    """
    if raw is None or isinstance(raw, bool):
        return _unique_ref(prefix)
    if not isinstance(raw, (str, int)):
        raise InvalidRequest("offline_id must be a string")
    v = str(raw).strip()
    if not v:
        return _unique_ref(prefix)
    if len(v) > MAX_OFFLINE_ID_LEN:
        raise InvalidRequest(f"offline_id must be at most {MAX_OFFLINE_ID_LEN} characters")
    return v


def run_once(
    stores,
    event_type: str,
    offline_id: str,
    apply: Callable[[], Tuple[Optional[int], Dict[str, Any]]],
) -> EventResult:
    """
    Apply an event at most once.

    `apply` runs inside the transaction after the key is claimed and returns
    (ref_id, outcome). Any exception it raises rolls back the key together
    with the event's writes, so a failed event is retried on replay rather
    than deduplicated.
    """
    found = stores.idempotency.lookup(event_type, offline_id)
    if found is not None:
        log.info("[idempotency] duplicate %s/%s -> ref %s", event_type, offline_id, found["ref_id"])
        return EventResult(DUPLICATE, dict(found["outcome"]))

    try:
        with stores.transaction():
            stores.idempotency.claim(event_type, offline_id)
            ref_id, outcome = apply()
            stores.idempotency.settle(event_type, offline_id, ref_id=ref_id, outcome=outcome)
    except UniqueViolation as e:
        if e.constraint != IDEMPOTENCY_GUARD:
            raise
        # lost the race to a concurrent replay; report the winner's outcome
        found = stores.idempotency.lookup(event_type, offline_id)
        if found is None:
            log.error("[idempotency] %s/%s collided but no record is visible", event_type, offline_id)
            raise Internal()
        log.info("[idempotency] concurrent duplicate %s/%s -> ref %s", event_type, offline_id, found["ref_id"])
        return EventResult(DUPLICATE, dict(found["outcome"]))

    return EventResult(CREATED, outcome)
