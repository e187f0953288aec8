"""Test helpers for perp-agent test suite"""

from tests.helpers.fakes import (
    T0,
    FakeExchange,
    FrozenClock,
    PlacedOrder,
    RecordingNotifier,
    make_candles,
)

__all__ = [
    "T0",
    "FakeExchange",
    "FrozenClock",
    "PlacedOrder",
    "RecordingNotifier",
    "make_candles",
]
