"""
Tests for the program log subscription client.

IMPORTANT: The RPC websocket is faked - no connections are opened.
"""

from contextlib import asynccontextmanager
from types import SimpleNamespace
from unittest.mock import patch

import pytest
from solders.pubkey import Pubkey

from src.chain.log_subscriber import LogSubscriptionClient
from src.events.models import LogBatch

PROGRAM_A = str(Pubkey.new_unique())
PROGRAM_B = str(Pubkey.new_unique())


class FakeSubscriptionResult:
    def __init__(self, result):
        self.result = result


class FakeLogsNotification:
    def __init__(self, subscription, signature, logs, err=None):
        self.subscription = subscription
        self.result = SimpleNamespace(
            value=SimpleNamespace(signature=signature, logs=logs, err=err)
        )


class FakeWebSocket:
    """Minimal stand-in for the solana websocket client."""

    def __init__(self, batches):
        self.batches = batches
        self.subscribed = []
        self.unsubscribed = []
        self._next_id = 100

    async def logs_subscribe(self, filter_, commitment=None):
        self.subscribed.append(filter_)

    async def recv(self):
        self._next_id += 1
        return [FakeSubscriptionResult(self._next_id)]

    async def logs_unsubscribe(self, subscription_id):
        self.unsubscribed.append(subscription_id)

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for batch in self.batches:
            yield batch


def fake_connect(websocket):
    @asynccontextmanager
    async def connect(url):
        yield websocket

    return connect


@pytest.fixture
def patched_types():
    with patch("src.chain.log_subscriber.LogsNotification", FakeLogsNotification), patch(
        "src.chain.log_subscriber.SubscriptionResult", FakeSubscriptionResult
    ):
        yield


class TestLogSubscriptionClient:
    """Tests for subscribe / deliver / unsubscribe."""

    def test_requires_program(self):
        with pytest.raises(ValueError):
            LogSubscriptionClient([])

    @pytest.mark.asyncio
    async def test_delivers_batches(self, patched_types):
        websocket = FakeWebSocket([
            [FakeLogsNotification(101, "sigA", ["Program log: a"])],
            [
                FakeLogsNotification(102, "sigB", ["Program log: b"]),
                FakeLogsNotification(101, "sigC", [], err={"InstructionError": [0, "Custom"]}),
            ],
        ])
        client = LogSubscriptionClient([PROGRAM_A, PROGRAM_B], ws_url="ws://test")
        received: list[LogBatch] = []

        with patch("src.chain.log_subscriber.connect", fake_connect(websocket)):
            await client.run(received.append)

        assert [b.signature for b in received] == ["sigA", "sigB", "sigC"]
        assert received[0].program_id == PROGRAM_A
        assert received[1].program_id == PROGRAM_B
        assert received[0].logs == ("Program log: a",)
        assert received[2].failed
        assert len(websocket.subscribed) == 2

    @pytest.mark.asyncio
    async def test_unsubscribes_when_stream_ends(self, patched_types):
        websocket = FakeWebSocket([])
        client = LogSubscriptionClient([PROGRAM_A, PROGRAM_B], ws_url="ws://test")

        with patch("src.chain.log_subscriber.connect", fake_connect(websocket)):
            await client.run(lambda batch: None)

        assert sorted(websocket.unsubscribed) == [101, 102]
        assert client.subscriptions == {}
        assert not client.running

    @pytest.mark.asyncio
    async def test_callback_error_still_unsubscribes(self, patched_types):
        websocket = FakeWebSocket([[FakeLogsNotification(101, "sigA", [])]])
        client = LogSubscriptionClient([PROGRAM_A], ws_url="ws://test")

        def boom(batch):
            raise RuntimeError("callback failed")

        with patch("src.chain.log_subscriber.connect", fake_connect(websocket)):
            with pytest.raises(RuntimeError):
                await client.run(boom)

        assert websocket.unsubscribed == [101]

    @pytest.mark.asyncio
    async def test_unsubscribe_without_connection(self):
        client = LogSubscriptionClient([PROGRAM_A], ws_url="ws://test")
        await client.unsubscribe()
        await client.unsubscribe()
        assert client.subscriptions == {}
