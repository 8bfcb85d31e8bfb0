from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

from apps.worker.pipeline_persistence import ArtifactStore
from packages.db.models import AuditEvent

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AuditRecord:
    job_id: str
    event_key: str  # unique per job, e.g. "risk_bundle.created:<bundle_id>"
    event_type: str
    payload: dict[str, Any] = field(default_factory=dict)


class AuditSink(Protocol):
    def record(self, event: AuditRecord) -> bool: ...


class DbAuditSink:
    """Writes AuditEvent rows; a repeated event key is a no-op returning False."""

    def __init__(self, store: ArtifactStore | None = None):
        self.store = store or ArtifactStore()

    def record(self, event: AuditRecord) -> bool:
        _row, is_new = self.store.insert_or_get(
            AuditEvent,
            {"job_id": event.job_id, "event_key": event.event_key},
            {"event_type": event.event_type, "payload_json": event.payload},
        )
        if is_new:
            logger.info(f"[{event.job_id}] audit {event.event_type}")
        return is_new
