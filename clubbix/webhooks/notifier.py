"""Action notifier: publishes "action required" descriptors to a Redis Stream.

Consumers that do not share the subscription datastore read the stream to
learn what changed. Publishing is fire-and-forget: a failure is logged and
never fails the webhook, since the record itself is already persisted.
"""

from __future__ import annotations

import json
import logging
import time
import uuid
from typing import Any, Protocol

import redis

from clubbix.webhooks.records import Action

logger = logging.getLogger(__name__)

DEFAULT_STREAM = "clubbix:billing:actions"
_DEFAULT_MAXLEN = 10000


class ActionNotifier(Protocol):
    def notify(self, action: Action, *, event_id: str, event_type: str) -> None: ...


class NullNotifier:
    """Notifier that drops every action."""

    def notify(self, action: Action, *, event_id: str, event_type: str) -> None:
        return None


class RedisStreamNotifier:
    """XADD each action onto a trimmed Redis Stream."""

    def __init__(
        self,
        client: redis.Redis,
        stream: str = DEFAULT_STREAM,
        *,
        maxlen: int = _DEFAULT_MAXLEN,
    ):
        self._redis = client
        self._stream = stream
        self._maxlen = maxlen

    def notify(self, action: Action, *, event_id: str, event_type: str) -> str | None:
        entry: dict[str, Any] = {
            "msg_id": uuid.uuid4().hex[:16],
            "msg_type": "action_required",
            "source": f"stripe:{event_type}",
            "event_id": event_id,
            "ts": time.strftime("%Y-%m-%dT%H:%M:%S+00:00", time.gmtime()),
            "payload": json.dumps(action.to_dict(), default=str),
        }
        try:
            return self._redis.xadd(self._stream, entry, maxlen=self._maxlen, approximate=True)
        except Exception:
            logger.warning(
                "Action publish failed: stream=%s type=%s event=%s",
                self._stream,
                action.type.value,
                event_id,
                exc_info=True,
            )
            return None
