"""
Latency tracking for the external services a call depends on.

Each service (OpenAI, speech synthesis, Twilio) keeps its last 100 successful
requests; failed requests are not recorded.
"""

from __future__ import annotations

from collections import deque
from contextlib import contextmanager
from dataclasses import dataclass, field
import time
from typing import Any, Deque, Dict, Iterator

import structlog

logger = structlog.get_logger(__name__)

SERVICES = ("openai", "tts", "twilio")
MAX_SAMPLES = 100


@dataclass
class LatencySample:
    """One timed request."""
    operation: str
    duration_ms: float
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "operation": self.operation,
            "durationMs": round(self.duration_ms, 1),
            "timestamp": self.timestamp,
        }


class LatencyTracker:
    def __init__(self, max_samples: int = MAX_SAMPLES):
        self._samples: Dict[str, Deque[LatencySample]] = {
            service: deque(maxlen=max_samples) for service in SERVICES
        }

    def record(self, service: str, operation: str, duration_ms: float) -> LatencySample:
        if service not in self._samples:
            raise ValueError(f"Unknown service: {service}")
        sample = LatencySample(operation=operation, duration_ms=duration_ms)
        self._samples[service].append(sample)
        logger.debug(
            "Service latency",
            service=service,
            operation=operation,
            duration_ms=round(duration_ms, 1),
            average_ms=self.average(service),
        )
        return sample

    @contextmanager
    def measure(self, service: str, operation: str) -> Iterator[None]:
        """Time the enclosed block; nothing is recorded if it raises."""
        start = time.perf_counter()
        yield
        self.record(service, operation, (time.perf_counter() - start) * 1000)

    def average(self, service: str) -> float:
        samples = self._samples[service]
        if not samples:
            return 0.0
        return round(sum(s.duration_ms for s in samples) / len(samples), 1)

    def last(self, service: str) -> float:
        samples = self._samples[service]
        return round(samples[-1].duration_ms, 1) if samples else 0.0

    def summary(self) -> Dict[str, Dict[str, float]]:
        return {
            service: {"average": self.average(service), "count": len(samples)}
            for service, samples in self._samples.items()
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            service: [s.to_dict() for s in samples]
            for service, samples in self._samples.items()
        }
