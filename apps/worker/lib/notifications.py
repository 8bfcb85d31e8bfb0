"""
Notification transport and consent checks for report delivery.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Protocol

from apps.worker.pipeline_persistence import ArtifactStore
from packages.db.models import ConsentRecord
from packages.shared.models.enums import NotificationChannel, NotificationStatus

logger = logging.getLogger(__name__)

REPORT_READY_TITLE = "Your report is ready"
REPORT_READY_BODY = "A new report is available in your account."


@dataclass(frozen=True)
class OutgoingNotification:
    notification_id: str
    job_id: str
    notification_type: str
    channel: str
    pdf_artifact_id: Optional[str]
    title: str = REPORT_READY_TITLE
    body: str = REPORT_READY_BODY


class NotificationTransport(Protocol):
    def send(self, notification: OutgoingNotification) -> NotificationStatus: ...


class InAppTransport:
    """In-app notifications live in notification_records; the send is the record itself."""

    def send(self, notification: OutgoingNotification) -> NotificationStatus:
        logger.info(f"[{notification.job_id}] in-app notification {notification.notification_id} sent")
        return NotificationStatus.SENT


def notification_content(pdf_artifact_id: Optional[str]) -> dict:
    """PHI-free body stored on the record: fixed copy plus opaque references."""
    return {"title": REPORT_READY_TITLE, "body": REPORT_READY_BODY, "pdf_artifact_id": pdf_artifact_id}


def has_consent(store: ArtifactStore, patient_ref: str, channel: str) -> bool:
    if channel == NotificationChannel.IN_APP.value:
        return True
    consent = store.find(ConsentRecord, patient_ref=patient_ref, channel=channel)
    return bool(consent and consent.granted)
