from __future__ import annotations

import threading

import pytest

from stockfeed.bus import QuoteChannel, connect_with_backoff
from stockfeed.errors import ChannelClosed, ChannelConnectionError, PublishError


def test_channel_delivers_in_send_order() -> None:
    ch = QuoteChannel(maxsize=10)
    ch.connect()
    for i in range(3):
        ch.send("AAPL", f"m{i}".encode())
    ch.send("TSLA", b"t0")

    seen = [ch.receive(timeout=0.1) for _ in range(4)]
    assert [m.value for m in seen] == [b"m0", b"m1", b"m2", b"t0"]
    assert ch.receive(timeout=0.01) is None


def test_send_requires_connection() -> None:
    ch = QuoteChannel()
    with pytest.raises(ChannelConnectionError):
        ch.send("AAPL", b"x")


def test_full_channel_drops_with_publish_error() -> None:
    ch = QuoteChannel(maxsize=1, publish_timeout=0.0)
    ch.connect()
    ch.send("AAPL", b"first")
    with pytest.raises(PublishError):
        ch.send("AAPL", b"second")
    assert ch.pending() == 1


def test_close_keeps_queued_messages_until_drained() -> None:
    ch = QuoteChannel()
    ch.connect()
    ch.send("AAPL", b"a")
    ch.close()

    assert ch.receive(timeout=0.1).value == b"a"
    with pytest.raises(ChannelClosed):
        ch.receive(timeout=0.1)
    with pytest.raises(ChannelConnectionError):
        ch.send("AAPL", b"late")


def test_connect_with_backoff_retries_then_succeeds() -> None:
    calls = {"n": 0}
    delays: list[float] = []

    def flaky() -> None:
        calls["n"] += 1
        if calls["n"] < 3:
            raise ChannelConnectionError("refused")

    connect_with_backoff(flaky, attempts=5, base_delay=1.0, max_delay=1.5, sleep=delays.append)

    assert calls["n"] == 3
    assert delays == [1.0, 1.5]


def test_connect_with_backoff_gives_up() -> None:
    def refuse() -> None:
        raise ChannelConnectionError("refused")

    with pytest.raises(ChannelConnectionError):
        connect_with_backoff(refuse, attempts=3, base_delay=0.0, max_delay=0.0, sleep=lambda _: None)


def test_connect_with_backoff_stops_on_stop_event() -> None:
    stop = threading.Event()
    stop.set()
    calls = {"n": 0}

    def refuse() -> None:
        calls["n"] += 1
        raise ChannelConnectionError("refused")

    with pytest.raises(ChannelConnectionError):
        connect_with_backoff(refuse, attempts=10, base_delay=5.0, max_delay=5.0, stop=stop)
    assert calls["n"] == 1
