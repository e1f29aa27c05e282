from __future__ import annotations
import json
from typing import Sequence
from nats.aio.client import Client as NATS
import structlog
from .config import get_settings

_settings = get_settings()
_nats = NATS()
logger = structlog.get_logger()

async def nats_connect():
    if not _nats.is_connected:
        servers: Sequence[str] = [u.strip() for u in _settings.nats_urls.split(",") if u.strip()]
        await _nats.connect(servers=servers)

async def nats_close():
    if _nats.is_connected:
        await _nats.drain()

async def publish_entry_event(evt: dict) -> bool:
    """
    evt = {
      "entry_id": str,
      "kind": "visitor" | "delivery",
      "community_id": str,
      "status": str,
      "acted_by": str | None,
      "acted_at": iso8601,
      "idempotency_key": "entry_id:status"
    }
    Best-effort: returns False instead of raising so a committed transition
    is never reported as failed.
    """
    if not _settings.events_enabled:
        return False
    try:
        await nats_connect()
        await _nats.publish(_settings.nats_subject_entry, json.dumps(evt).encode("utf-8"))
    except Exception as e:
        logger.warning("entry_event_publish_failed", entry_id=evt.get("entry_id"), error=str(e))
        return False
    return True
