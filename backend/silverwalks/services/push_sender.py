import logging
import os
from threading import Lock
from typing import Dict, List, Optional, Sequence

from silverwalks.models import NotificationRecord

logger = logging.getLogger(__name__)

# FCM rejects multicast sends above this many tokens.
MULTICAST_LIMIT = 500
ANDROID_CHANNEL_ID = "walks"
URGENT_TEMPLATES = {"walk_reminder", "walk_started", "walk_cancelled"}
REMINDER_TTL_SECONDS = 2 * 60 * 60


def walk_push_data(record: NotificationRecord) -> Dict[str, str]:
    """String-only data payload the mobile app routes on."""
    data = {
        "notification_id": record.id,
        "category": record.category,
        "template": record.template or "",
        "deep_link": record.deep_link or "",
    }
    if record.deep_link and record.deep_link.startswith("/walks/"):
        data["walk_id"] = record.deep_link[len("/walks/"):]
    return data


class PushSender:
    """Delivers walk notifications to devices through Firebase Cloud Messaging.

    Stays disabled (every send is a no-op) until FIREBASE_CREDENTIALS_PATH
    points at a service account file and firebase-admin is installed. A
    ready messaging module can be handed in directly instead.
    """

    def __init__(self, credentials_path: Optional[str] = None, messaging=None):
        self._lock = Lock()
        self._credentials_path = credentials_path
        self._messaging = messaging
        self._initialized = messaging is not None
        self._enabled = messaging is not None

    @property
    def enabled(self) -> bool:
        self._ensure_initialized()
        return self._enabled

    def _ensure_initialized(self) -> None:
        if self._initialized:
            return
        with self._lock:
            if self._initialized:
                return
            self._messaging = self._load_messaging()
            self._enabled = self._messaging is not None
            self._initialized = True

    def _load_messaging(self):
        credentials_path = (self._credentials_path or os.getenv("FIREBASE_CREDENTIALS_PATH", "")).strip()
        if not credentials_path:
            logger.info("Walk push disabled: FIREBASE_CREDENTIALS_PATH not set")
            return None
        try:
            import firebase_admin
            from firebase_admin import credentials, messaging
        except ImportError:
            logger.exception("Walk push disabled: install the push extra for firebase-admin")
            return None
        try:
            if not firebase_admin._apps:  # pylint: disable=protected-access
                firebase_admin.initialize_app(credentials.Certificate(credentials_path))
        except Exception:
            logger.exception("Walk push disabled: Firebase init failed for %s", credentials_path)
            return None
        logger.info("Walk push initialized")
        return messaging

    def _android_config(self, record: NotificationRecord):
        urgent = record.template in URGENT_TEMPLATES
        return self._messaging.AndroidConfig(
            priority="high" if urgent else "normal",
            ttl=REMINDER_TTL_SECONDS if record.template == "walk_reminder" else None,
            # Later updates about the same walk replace the earlier one on the device.
            collapse_key=record.deep_link or None,
            notification=self._messaging.AndroidNotification(channel_id=ANDROID_CHANNEL_ID),
        )

    def _is_dead_token(self, exc: Optional[Exception]) -> bool:
        if exc is None:
            return False
        dead_types = tuple(
            error_type
            for error_type in (
                getattr(self._messaging, "UnregisteredError", None),
                getattr(self._messaging, "SenderIdMismatchError", None),
            )
            if isinstance(error_type, type)
        )
        return bool(dead_types) and isinstance(exc, dead_types)

    def send(self, record: NotificationRecord, tokens: Sequence[str]) -> List[str]:
        """Push ``record`` to every token; returns the tokens FCM reported as dead."""
        self._ensure_initialized()
        if not self._enabled or not tokens:
            return []
        assert self._messaging is not None
        dead: List[str] = []
        tokens = list(tokens)
        for start in range(0, len(tokens), MULTICAST_LIMIT):
            batch_tokens = tokens[start:start + MULTICAST_LIMIT]
            message = self._messaging.MulticastMessage(
                tokens=batch_tokens,
                notification=self._messaging.Notification(title=record.title, body=record.body),
                data=walk_push_data(record),
                android=self._android_config(record),
            )
            try:
                batch = self._messaging.send_each_for_multicast(message)
            except Exception:
                logger.exception("Walk push failed for notification=%s", record.id)
                continue
            for token, response in zip(batch_tokens, batch.responses):
                if not response.success and self._is_dead_token(response.exception):
                    dead.append(token)
        if dead:
            logger.info("Dropping %d stale device tokens for user=%s", len(dead), record.user_id)
        return dead


push_sender = PushSender()
