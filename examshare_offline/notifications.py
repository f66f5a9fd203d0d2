from __future__ import annotations
import json
import logging
import threading
from typing import Any, List, Optional, Protocol, Union

from pydantic import ValidationError

from .schemas import Notification, PushMessage

logger = logging.getLogger(__name__)

SYNC_TITLE = "Submission Synced"
SYNC_BODY = "Your offline submission has been uploaded successfully."
DEFAULT_ICON = "/icons/icon-192x192.png"
DEFAULT_BADGE = "/icons/badge-72x72.png"


class Notifier(Protocol):
    def show(self, notification: Notification) -> None: ...


class LogNotifier:
    def show(self, notification: Notification) -> None:
        logger.info("Notification: %s - %s", notification.title, notification.body)


class MemoryNotifier:
    """Keeps raised notifications so the control API can list them."""

    def __init__(self, limit: int = 100) -> None:
        if limit < 1:
            raise ValueError(f"notification limit must be at least 1, got {limit}")
        self._items: List[Notification] = []
        self._limit = limit
        self._lock = threading.Lock()

    def show(self, notification: Notification) -> None:
        logger.info("Notification: %s - %s", notification.title, notification.body)
        with self._lock:
            self._items.append(notification)
            del self._items[:-self._limit]

    @property
    def items(self) -> List[Notification]:
        with self._lock:
            return list(self._items)

    def clear(self) -> None:
        with self._lock:
            self._items.clear()


def sync_notification(record_id: Optional[int] = None) -> Notification:
    data = {"recordId": record_id} if record_id is not None else {}
    return Notification(title=SYNC_TITLE, body=SYNC_BODY, icon=DEFAULT_ICON, data=data)


def handle_push(payload: Union[bytes, str, dict, None], notifier: Notifier) -> Optional[Notification]:
    """Turn a push message into a user-facing notification.

    Empty or malformed pushes are logged and dropped.
    """
    if not payload:
        logger.info("Push event without data")
        return None
    data: Any = payload
    if isinstance(payload, (bytes, str)):
        try:
            data = json.loads(payload)
        except ValueError:
            logger.warning("Push payload is not JSON, ignoring")
            return None
    try:
        message = PushMessage.model_validate(data)
    except ValidationError as e:
        logger.warning("Push payload rejected: %s", e.errors())
        return None

    notification = Notification(
        title=message.title,
        body=message.message,
        icon=DEFAULT_ICON,
        badge=DEFAULT_BADGE,
        data={"url": message.url or "/"},
    )
    notifier.show(notification)
    return notification
