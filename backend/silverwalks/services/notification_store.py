import logging
from datetime import datetime, timezone
from threading import Lock
from typing import Dict, Iterable, List, Optional, Tuple
from uuid import uuid4

from silverwalks.models import NotificationRecord
from silverwalks.services.push_sender import push_sender

logger = logging.getLogger(__name__)

WALK_TEMPLATES: Dict[str, Tuple[str, str]] = {
    "walk_scheduled": ("New walk request", "A walk was requested for {scheduled_date} at {scheduled_time}."),
    "walk_confirmed": ("Walk confirmed", "Your walk on {scheduled_date} at {scheduled_time} is confirmed."),
    "walk_rejected": ("Walk declined", "The walk on {scheduled_date} at {scheduled_time} was declined."),
    "walk_cancelled": ("Walk cancelled", "The walk on {scheduled_date} at {scheduled_time} was cancelled: {reason}"),
    "walk_started": ("Walk started", "Your walk has started. Enjoy!"),
    "walk_completed": ("Walk completed", "Great job! You earned {points_earned} points."),
    "walk_reminder": ("Walk reminder", "Reminder: you have a walk on {scheduled_date} at {scheduled_time}."),
}


class _SafeFormat(dict):
    def __missing__(self, key: str) -> str:
        return ""


class NotificationStore:
    def __init__(self):
        self._lock = Lock()
        self._notifications: List[NotificationRecord] = []
        self._device_tokens: Dict[str, set[str]] = {}

    def register_device_token(self, user_id: str, device_token: str) -> None:
        if not device_token.strip():
            return
        with self._lock:
            self._device_tokens.setdefault(user_id, set()).add(device_token.strip())

    def create(
        self,
        user_id: str,
        title: str,
        body: str,
        category: str = "system",
        template: Optional[str] = None,
        deep_link: Optional[str] = None,
    ) -> NotificationRecord:
        record = NotificationRecord(
            id=f"ntf_{uuid4().hex[:10]}",
            user_id=user_id,
            title=title,
            body=body,
            category=category,  # type: ignore[arg-type]
            template=template,
            read=False,
            created_at=datetime.now(timezone.utc).isoformat(),
            deep_link=deep_link,
        )
        with self._lock:
            self._notifications.insert(0, record)
            tokens = list(self._device_tokens.get(user_id, set()))
        invalid_tokens = push_sender.send(record, tokens)
        if invalid_tokens:
            with self._lock:
                current = self._device_tokens.get(user_id, set())
                for token in invalid_tokens:
                    current.discard(token)
        return record

    def dispatch_event(self, template: str, recipients: Iterable[str], payload: Dict[str, object]) -> int:
        """Fan a walk event out to ``recipients``; returns how many were stored.

        Delivery problems are logged and dropped. The walk change that
        triggered the event has already been committed.
        """
        delivered = 0
        try:
            title, body_format = WALK_TEMPLATES[template]
            body = body_format.format_map(_SafeFormat({k: "" if v is None else v for k, v in payload.items()}))
            walk_id = payload.get("walk_id")
            deep_link = f"/walks/{walk_id}" if walk_id else None
            for user_id in {r for r in recipients if r}:
                self.create(
                    user_id=user_id,
                    title=title,
                    body=body,
                    category="walk",
                    template=template,
                    deep_link=deep_link,
                )
                delivered += 1
        except Exception:
            logger.exception("Notification dispatch failed for template=%s", template)
        return delivered

    def list_for_user(self, user_id: str, unread_only: bool = False) -> List[NotificationRecord]:
        with self._lock:
            rows = [n for n in self._notifications if n.user_id == user_id]
            if unread_only:
                rows = [n for n in rows if not n.read]
            return rows[:100]

    def mark_read(self, user_id: str, notification_id: str) -> Optional[NotificationRecord]:
        with self._lock:
            for idx, row in enumerate(self._notifications):
                if row.id == notification_id and row.user_id == user_id:
                    updated = row.model_copy(update={"read": True})
                    self._notifications[idx] = updated
                    return updated
        return None


notification_store = NotificationStore()
