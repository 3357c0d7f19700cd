"""
Tests for the live broadcaster.

These tests verify registration, fan-out to every channel of a user,
dropping broken channels and concurrent use from many threads.
"""

import threading
from uuid import uuid4

import pytest

from event_driven.broadcaster import LiveBroadcaster
from shared.channels import RecordingChannel


class TestLiveBroadcaster:
    """Tests for the per-user channel registry."""

    def test_broadcast_without_channels_returns_zero(self, broadcaster: LiveBroadcaster, alice_id):
        """Test pushing to an offline user is not an error."""
        assert broadcaster.broadcast(alice_id, {"hello": "world"}) == 0

    def test_broadcast_reaches_every_channel(self, broadcaster: LiveBroadcaster, alice_id, bob_id):
        """Test a user with two open tabs gets the message twice, nobody else does."""
        laptop, phone, bobs = RecordingChannel(), RecordingChannel(), RecordingChannel()
        broadcaster.register(alice_id, laptop)
        broadcaster.register(alice_id, phone)
        broadcaster.register(bob_id, bobs)

        delivered = broadcaster.broadcast(alice_id, {"title": "New interpretation on your spread"})

        assert delivered == 2
        assert laptop.last_json() == {"title": "New interpretation on your spread"}
        assert phone.get_sent_count() == 1
        assert bobs.get_sent_count() == 0

    def test_failing_channel_is_dropped(self, broadcaster: LiveBroadcaster, alice_id):
        """Test a broken channel is unregistered without affecting the others."""
        healthy = RecordingChannel("healthy")
        broken = RecordingChannel("broken", fail_writes=True)
        broadcaster.register(alice_id, healthy)
        broadcaster.register(alice_id, broken)

        assert broadcaster.broadcast(alice_id, {"n": 1}) == 1
        assert broadcaster.channels_for(alice_id) == [healthy]
        assert broadcaster.broadcast(alice_id, {"n": 2}) == 1
        assert healthy.get_sent_count() == 2

    def test_unregister(self, broadcaster: LiveBroadcaster, alice_id):
        channel = RecordingChannel()
        broadcaster.register(alice_id, channel)

        assert broadcaster.unregister(alice_id, channel) is True
        assert broadcaster.unregister(alice_id, channel) is False
        assert broadcaster.active_user_count() == 0

    def test_close_drains_all_channels(self, broadcaster: LiveBroadcaster, alice_id, bob_id):
        channels = [RecordingChannel() for _ in range(3)]
        broadcaster.register(alice_id, channels[0])
        broadcaster.register(alice_id, channels[1])
        broadcaster.register(bob_id, channels[2])

        broadcaster.close()

        assert all(channel.closed for channel in channels)
        assert broadcaster.active_channel_count() == 0

    def test_rejects_zero_stripes(self):
        with pytest.raises(ValueError):
            LiveBroadcaster(stripes=0)


class TestBroadcasterConcurrency:
    """Tests for use from many threads at once."""

    def test_concurrent_register_broadcast_unregister(self):
        """Test registry operations from many threads never raise or lose channels."""
        broadcaster = LiveBroadcaster(stripes=4)
        users = [uuid4() for _ in range(8)]
        keepers = {user: RecordingChannel() for user in users}
        for user, channel in keepers.items():
            broadcaster.register(user, channel)
        errors = []

        def churn(user):
            try:
                for n in range(50):
                    transient = RecordingChannel()
                    broadcaster.register(user, transient)
                    broadcaster.broadcast(user, {"n": n})
                    broadcaster.unregister(user, transient)
            except Exception as exc:
                errors.append(exc)

        threads = [threading.Thread(target=churn, args=(user,)) for user in users for _ in range(3)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert errors == []
        assert broadcaster.active_channel_count() == len(users)
        for channel in keepers.values():
            assert channel.get_sent_count() == 150
