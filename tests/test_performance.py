"""
Tests for service latency tracking.
"""

import pytest

from src.sales_agent.errors import GenerationError
from src.sales_agent.performance import LatencyTracker


def test_record_and_summary() -> None:
    tracker = LatencyTracker()

    tracker.record("openai", "chat_completion", 100.0)
    tracker.record("openai", "chat_completion", 300.0)
    tracker.record("twilio", "place_call", 50.0)

    assert tracker.average("openai") == 200.0
    assert tracker.last("openai") == 300.0
    assert tracker.summary() == {
        "openai": {"average": 200.0, "count": 2},
        "tts": {"average": 0.0, "count": 0},
        "twilio": {"average": 50.0, "count": 1},
    }
    assert tracker.to_dict()["twilio"][0]["operation"] == "place_call"
    assert tracker.to_dict()["twilio"][0]["durationMs"] == 50.0


def test_keeps_only_recent_samples() -> None:
    tracker = LatencyTracker(max_samples=3)

    for duration in (10.0, 20.0, 30.0, 40.0):
        tracker.record("tts", "render", duration)

    assert [s["durationMs"] for s in tracker.to_dict()["tts"]] == [20.0, 30.0, 40.0]


def test_measure_skips_failures() -> None:
    tracker = LatencyTracker()

    with tracker.measure("openai", "chat_completion"):
        pass
    with pytest.raises(GenerationError):
        with tracker.measure("openai", "chat_completion"):
            raise GenerationError("boom")

    assert tracker.summary()["openai"]["count"] == 1


def test_unknown_service_rejected() -> None:
    with pytest.raises(ValueError):
        LatencyTracker().record("deepgram", "stream", 1.0)
