# services/sync.py
"""
Offline batch sync.

Events are applied one by one in input order, each in its own transaction
through the same code paths as the single-event endpoints. One event failing
never affects the others.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from services.errors import BatchTooLarge, FareError, InvalidRequest

log = logging.getLogger("sync")

SUCCESS = "success"
DUPLICATE = "duplicate"
ERROR = "error"


def _dispatch(meter, event: Dict[str, Any], operator_id: Optional[int]):
    kind = event.get("type")
    common = dict(
        location=event.get("location"),
        timestamp=event.get("timestamp"),
        offline_id=event.get("offline_id"),
        operator_id=operator_id,
    )
    if kind == "tap_in":
        return meter.tap_in(card_id=event.get("card_id"), bus_id=event.get("bus_id"), **common)
    if kind == "tap_out":
        return meter.tap_out(card_id=event.get("card_id"), bus_id=event.get("bus_id"), **common)
    if kind == "manual_ticket":
        return meter.issue_manual_ticket(
            bus_id=event.get("bus_id"),
            fare=event.get("fare"),
            passenger_count=event.get("passenger_count", 1),
            payment_method=event.get("payment_method"),
            ticket_type=event.get("ticket_type"),
            seat_number=event.get("seat_number"),
            drop_stop_id=event.get("drop_stop_id"),
            card_id=event.get("card_id"),
            **common,
        )
    raise InvalidRequest(f"Unknown event type: {kind}")


def process_batch(meter, events: Any, *, operator_id: Optional[int] = None, max_batch: int = 100) -> Dict[str, Any]:
    if not isinstance(events, list):
        raise InvalidRequest("events array is required")
    if len(events) > max_batch:
        raise BatchTooLarge(
            f"Batch size exceeds maximum of {max_batch} events",
            max_batch_size=max_batch,
        )

    results: List[Dict[str, Any]] = []
    summary = {SUCCESS: 0, DUPLICATE: 0, ERROR: 0}

    for event in events:
        if not isinstance(event, dict):
            results.append({"offline_id": "unknown", "status": ERROR,
                            "code": InvalidRequest.code, "message": "Event must be an object"})
            summary[ERROR] += 1
            continue

        offline_id = event.get("offline_id")
        if isinstance(offline_id, bool) or not isinstance(offline_id, (str, int)):
            message = "offline_id is required" if offline_id is None else "offline_id must be a string"
            results.append({"offline_id": "unknown", "status": ERROR,
                            "code": InvalidRequest.code, "message": message})
            summary[ERROR] += 1
            continue
        if str(offline_id).strip() == "":
            results.append({"offline_id": "unknown", "status": ERROR,
                            "code": InvalidRequest.code, "message": "offline_id is required"})
            summary[ERROR] += 1
            continue

        try:
            outcome = _dispatch(meter, event, operator_id)
        except FareError as e:
            results.append({"offline_id": offline_id, "status": ERROR, "code": e.code, "message": e.message})
            summary[ERROR] += 1
            continue
        except Exception:
            meter.stores.rollback()
            log.exception(
                "[sync] event failed type=%s offline_id=%s bus=%s card=%s",
                event.get("type"), offline_id, event.get("bus_id"), event.get("card_id"),
            )
            results.append({"offline_id": offline_id, "status": ERROR,
                            "code": "INTERNAL_ERROR", "message": "Processing failed"})
            summary[ERROR] += 1
            continue

        if outcome.duplicate:
            results.append({"offline_id": offline_id, "status": DUPLICATE,
                            "message": "Event already processed", "data": outcome.data})
            summary[DUPLICATE] += 1
        else:
            results.append({"offline_id": offline_id, "status": SUCCESS, "data": outcome.data})
            summary[SUCCESS] += 1

    log.info("[sync] operator=%s processed=%d summary=%s", operator_id, len(events), summary)
    return {"processed": len(events), "summary": summary, "results": results}
