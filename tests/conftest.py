from __future__ import annotations

import sys
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Tuple

import pytest
from opentelemetry import trace
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import InMemoryMetricReader
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from users_api.auth import PasswordVerifier
from users_api.database import Database
from users_api.telemetry import OpenTelemetrySink, build_views

TEST_ROUNDS = 4


class RecordingSink:
    """Telemetry sink double that keeps every emission in memory."""

    def __init__(self) -> None:
        self.latencies: List[Tuple[float, Dict[str, object]]] = []
        self.error_count = 0
        self.spans: List[Tuple[str, Dict[str, object]]] = []
        self._lock = threading.Lock()

    def record_latency(self, seconds: float, *, matched: bool) -> None:
        with self._lock:
            self.latencies.append((seconds, {"matched": matched}))

    def increment_error_count(self) -> None:
        with self._lock:
            self.error_count += 1

    @contextmanager
    def start_span(self, name: str, attributes: Optional[Dict[str, object]] = None) -> Iterator[trace.Span]:
        with self._lock:
            self.spans.append((name, dict(attributes or {})))
        yield trace.INVALID_SPAN


@dataclass
class OTelHarness:
    sink: OpenTelemetrySink
    spans: InMemorySpanExporter
    reader: InMemoryMetricReader

    def points(self, metric_name: str) -> list:
        data = self.reader.get_metrics_data()
        found: list = []
        if data is None:
            return found
        for resource_metrics in data.resource_metrics:
            for scope_metrics in resource_metrics.scope_metrics:
                for metric in scope_metrics.metrics:
                    if metric.name == metric_name:
                        found.extend(metric.data.data_points)
        return found


@pytest.fixture()
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture()
def otel() -> Iterator[OTelHarness]:
    exporter = InMemorySpanExporter()
    tracer_provider = TracerProvider()
    tracer_provider.add_span_processor(SimpleSpanProcessor(exporter))
    reader = InMemoryMetricReader()
    meter_provider = MeterProvider(metric_readers=[reader], views=build_views())
    yield OTelHarness(
        sink=OpenTelemetrySink(tracer_provider, meter_provider),
        spans=exporter,
        reader=reader,
    )
    tracer_provider.shutdown()
    meter_provider.shutdown()


@pytest.fixture()
def verifier(sink: RecordingSink) -> PasswordVerifier:
    return PasswordVerifier(sink, rounds=TEST_ROUNDS)


@pytest.fixture()
def database(tmp_path: Path) -> Database:
    db = Database(tmp_path / "users.sqlite3", bcrypt_rounds=TEST_ROUNDS)
    db.initialize()
    return db
