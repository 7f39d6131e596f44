"""
Tests for imgvault.services.notifier: per-user progress channels.
"""

import queue

import pytest

from imgvault.services.notifier import NotificationHub


class TestNotificationHub:
    def test_subscriber_receives_message(self):
        hub = NotificationHub()
        q = hub.subscribe("user-1")

        hub.notify("user-1", "backup_completed", {"task_id": "t1"})

        message = q.get_nowait()
        assert message.user_id == "user-1"
        assert message.event == "backup_completed"
        assert message.payload == {"task_id": "t1"}

    def test_other_users_do_not_receive(self):
        hub = NotificationHub()
        q = hub.subscribe("user-1")

        hub.notify("user-2", "backup_completed")

        assert q.empty()

    def test_no_user_is_a_noop(self):
        hub = NotificationHub()
        q = hub.subscribe("user-1")

        hub.notify(None, "backup_completed")

        assert q.empty()

    def test_full_queue_drops_without_blocking(self):
        hub = NotificationHub(max_queue_size=1)
        q = hub.subscribe("user-1")

        hub.notify("user-1", "first")
        hub.notify("user-1", "second")

        assert q.get_nowait().event == "first"
        with pytest.raises(queue.Empty):
            q.get_nowait()

    def test_unsubscribe(self):
        hub = NotificationHub()
        q = hub.subscribe("user-1")
        hub.unsubscribe("user-1", q)

        hub.notify("user-1", "backup_completed")

        assert q.empty()

    def test_notify_without_subscribers(self):
        NotificationHub().notify("nobody", "restore_failed", {"error": "x"})
