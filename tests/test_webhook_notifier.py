"""Tests for the Redis Stream action notifier."""

from __future__ import annotations

import json
from unittest.mock import MagicMock

import redis

from clubbix.webhooks.notifier import DEFAULT_STREAM, NullNotifier, RedisStreamNotifier
from clubbix.webhooks.records import Action, ActionType

ACTION = Action(
    type=ActionType.CANCEL_SUBSCRIPTION,
    fields={"subscription_id": "sub_1", "club_id": "club456", "user_id": None},
)


def test_publishes_to_stream():
    client = MagicMock()
    client.xadd.return_value = "1700000000000-0"
    notifier = RedisStreamNotifier(client)

    msg_id = notifier.notify(ACTION, event_id="evt_1", event_type="customer.subscription.deleted")

    assert msg_id == "1700000000000-0"
    args, kwargs = client.xadd.call_args
    assert args[0] == DEFAULT_STREAM
    entry = args[1]
    assert entry["msg_type"] == "action_required"
    assert entry["source"] == "stripe:customer.subscription.deleted"
    assert entry["event_id"] == "evt_1"
    assert json.loads(entry["payload"]) == {
        "type": "cancel_subscription",
        "subscription_id": "sub_1",
        "club_id": "club456",
    }
    assert kwargs == {"maxlen": 10000, "approximate": True}


def test_custom_stream():
    client = MagicMock()
    RedisStreamNotifier(client, "billing:test").notify(ACTION, event_id="evt_1", event_type="x")
    assert client.xadd.call_args.args[0] == "billing:test"


def test_publish_failure_is_swallowed(caplog):
    client = MagicMock()
    client.xadd.side_effect = redis.ConnectionError("down")

    result = RedisStreamNotifier(client).notify(ACTION, event_id="evt_1", event_type="x")

    assert result is None
    assert "Action publish failed" in caplog.text


def test_null_notifier():
    assert NullNotifier().notify(ACTION, event_id="evt_1", event_type="x") is None
