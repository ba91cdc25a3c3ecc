#!/usr/bin/env python3
"""Tests for pub/sub channels."""

import logging

import pytest

from blockfinax_sync.utils.feed import Channel, Subscription


class TestSubscription:
    def test_token_is_idempotent(self):
        calls = []
        token = Subscription(lambda: calls.append(1))

        token()
        token()

        assert calls == [1]
        assert not token.active


class TestChannel:
    """Tests for Channel."""

    @pytest.mark.asyncio
    async def test_publish_to_sync_and_async_listeners(self):
        channel = Channel("test")
        received = []

        async def async_listener(value):
            received.append(("async", value))

        channel.subscribe(lambda value: received.append(("sync", value)))
        channel.subscribe(async_listener)

        assert await channel.publish(1) == 2
        assert received == [("sync", 1), ("async", 1)]

    @pytest.mark.asyncio
    async def test_topics_are_partitioned(self):
        channel = Channel("test")
        alice, bob = [], []
        channel.subscribe(alice.append, topic="alice")
        channel.subscribe(bob.append, topic="bob")

        await channel.publish("hello", topic="alice")

        assert alice == ["hello"]
        assert bob == []
        assert sorted(channel.topics()) == ["alice", "bob"]

    @pytest.mark.asyncio
    async def test_token_removes_only_its_listener(self):
        channel = Channel("test")
        first, second = [], []
        token = channel.subscribe(first.append)
        channel.subscribe(second.append)

        token()
        await channel.publish(1)

        assert first == []
        assert second == [1]
        assert len(channel) == 1

    @pytest.mark.asyncio
    async def test_failing_listener_does_not_block_others(self, caplog):
        channel = Channel("test")
        received = []

        def broken(value):
            raise RuntimeError("boom")

        channel.subscribe(broken)
        channel.subscribe(received.append)

        with caplog.at_level(logging.ERROR):
            assert await channel.publish(1) == 1

        assert received == [1]
        assert "Listener on test failed" in caplog.text

    @pytest.mark.asyncio
    async def test_listener_may_unsubscribe_while_notified(self):
        channel = Channel("test")
        received = []
        tokens = []

        def once(value):
            received.append(value)
            tokens[0]()

        tokens.append(channel.subscribe(once))

        await channel.publish(1)
        await channel.publish(2)

        assert received == [1]

    def test_on_empty_fires_after_last_listener(self):
        channel = Channel("test")
        emptied = []
        channel.on_empty = lambda: emptied.append(True)
        first = channel.subscribe(print, topic="a")
        second = channel.subscribe(print, topic="b")

        first()
        assert emptied == []
        second()
        assert emptied == [True]
        assert channel.listener_count("a") == 0
