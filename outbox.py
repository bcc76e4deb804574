"""
Outbox for follow-up work that failed after a commit

Pending entries are replayed by `orders.reconcile_outbox`.
"""
import logging
from typing import Any, Dict, List, Optional

from database import collection, create_document, utcnow
from schemas import Outbox

logger = logging.getLogger(__name__)


def enqueue(kind: str, payload: Dict[str, Any], error: Optional[BaseException] = None,
            status: str = "pending") -> Optional[str]:
    """Record follow-up work. Entries with status "review" are for a person, not the replay loop."""
    entry = Outbox(kind=kind, payload=payload, status=status, last_error=str(error) if error else None)
    try:
        entry_id = create_document("outbox", entry)
    except Exception:
        # Nothing left to fall back on; the log line is the record
        logger.exception("Could not write %s outbox entry %s", kind, payload)
        return None
    logger.error("Queued %s for reconciliation as %s: %s", kind, entry_id, error)
    return entry_id


def pending(limit: int = 50) -> List[Dict[str, Any]]:
    return list(collection("outbox").find({"status": "pending"}).sort("created_at", 1).limit(limit))


def mark_done(entry_id) -> None:
    collection("outbox").update_one(
        {"_id": entry_id},
        {"$set": {"status": "done", "updated_at": utcnow()}, "$inc": {"attempts": 1}},
    )


def mark_failed(entry_id, error: BaseException) -> None:
    collection("outbox").update_one(
        {"_id": entry_id},
        {"$set": {"last_error": str(error), "updated_at": utcnow()}, "$inc": {"attempts": 1}},
    )
