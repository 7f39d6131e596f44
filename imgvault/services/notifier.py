"""
Task progress notifications.

Fire-and-forget messages keyed by user id. Background workers call
notify() from their own threads; consumers (a websocket bridge, tests)
subscribe to a user's channel and read from a thread-safe queue.
"""

import logging
import queue
import threading
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


@dataclass
class Notification:
    user_id: str
    event: str
    payload: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=datetime.utcnow)


class NotificationHub:
    """Per-user channels. Full or absent subscribers never block a sender."""

    def __init__(self, max_queue_size: int = 100):
        self.max_queue_size = max_queue_size
        self._channels: Dict[str, List[queue.Queue]] = defaultdict(list)
        self._lock = threading.Lock()

    def subscribe(self, user_id: str) -> queue.Queue:
        q: queue.Queue = queue.Queue(maxsize=self.max_queue_size)
        with self._lock:
            self._channels[user_id].append(q)
        return q

    def unsubscribe(self, user_id: str, q: queue.Queue) -> None:
        with self._lock:
            subscribers = self._channels.get(user_id, [])
            if q in subscribers:
                subscribers.remove(q)
            if not subscribers:
                self._channels.pop(user_id, None)

    def notify(self, user_id: Optional[str], event: str, payload: Optional[Dict[str, Any]] = None) -> None:
        if not user_id:
            return
        message = Notification(user_id=user_id, event=event, payload=payload or {})
        with self._lock:
            subscribers = list(self._channels.get(user_id, []))
        for q in subscribers:
            try:
                q.put_nowait(message)
            except queue.Full:
                logger.warning(f"Notification channel full for user {user_id}, dropped {event}")
        logger.debug(f"Notified user {user_id}: {event} ({len(subscribers)} subscribers)")


# Global instance
notification_hub = NotificationHub()
