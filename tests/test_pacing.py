"""Tests for CancellationToken."""

import threading
import time

from metamind.core.pacing import CancellationToken


def test_wait_times_out_when_not_cancelled():
    token = CancellationToken()
    assert token.wait(0.05) is False
    assert not token.cancelled


def test_zero_delay_returns_immediately():
    token = CancellationToken()
    started = time.monotonic()
    assert token.wait(0) is False
    assert time.monotonic() - started < 0.05


def test_cancel_interrupts_wait():
    token = CancellationToken()
    threading.Timer(0.1, token.cancel, args=("shutdown",)).start()
    started = time.monotonic()
    assert token.wait(60) is True
    assert time.monotonic() - started < 5
    assert token.reason == "shutdown"


def test_wait_after_cancel():
    token = CancellationToken()
    token.cancel()
    assert token.wait(0) is True
    assert token.wait(30) is True
    assert token.reason == "cancelled"
