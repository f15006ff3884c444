"""Shared test fixtures for the EQVault test suite."""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import pytest
import pytest_asyncio

import eqvault.audit
from eqvault.errors import TransportError
from eqvault.keys import KeyManager
from eqvault.models import (
    SUBSCALES,
    EmotionalSignal,
    EQMetrics,
    EQPattern,
    PatternType,
    PrivacyLevel,
    new_pattern_id,
)

NOW = datetime(2025, 6, 1, 12, 0, 0, tzinfo=timezone.utc)


# ── Isolation ───────────────────────────────────────────────────────────

@pytest.fixture(autouse=True)
def eqvault_home(tmp_path, monkeypatch):
    """Every test gets its own data directory and a fresh audit singleton."""
    home = tmp_path / "eqvault-home"
    monkeypatch.setenv("EQVAULT_HOME", str(home))
    monkeypatch.setattr(eqvault.audit, "_audit_log", None)
    return home


@pytest.fixture
def frozen_now():
    return NOW


# ── Factories ───────────────────────────────────────────────────────────

@pytest.fixture
def make_signal():
    """Factory for EmotionalSignal with a fixed timestamp.

    Usage:
        signal = make_signal("emotional_resonance", intensity=0.8)
    """
    def _factory(type="self_reflection", **overrides):
        overrides.setdefault("timestamp", NOW)
        return EmotionalSignal(type=type, **overrides)

    return _factory


@pytest.fixture
def make_metrics():
    """Factory for EQMetrics: every subscale 50 unless overridden."""
    def _factory(**overrides):
        values = {name: 50.0 for name in SUBSCALES}
        values.update(
            last_updated=NOW,
            confidence_score=80.0,
            data_points=10,
        )
        values.update(overrides)
        return EQMetrics(**values)

    return _factory


@pytest.fixture
def make_pattern():
    def _factory(
        type: PatternType = PatternType.EMPATHY_SPIKE,
        privacy_level: PrivacyLevel = PrivacyLevel.SELECTIVE_SHARE,
        **overrides,
    ):
        defaults = {
            "id": new_pattern_id(),
            "type": type,
            "confidence": 0.9,
            "detected_at": NOW,
            "anonymized_insight": "Heightened empathetic awareness detected",
            "growth_suggestion": "Channel this empathy into meaningful connections",
            "privacy_level": privacy_level,
        }
        defaults.update(overrides)
        return EQPattern(**defaults)

    return _factory


@pytest.fixture
def history_at(make_metrics):
    """History of snapshots one day apart, ending the day before NOW."""
    def _factory(count: int, **values):
        return [
            make_metrics(last_updated=NOW - timedelta(days=count - i), **values)
            for i in range(count)
        ]

    return _factory


# ── Fakes ───────────────────────────────────────────────────────────────

class MemoryStore:
    """In-memory KeyValueStore that records every write."""

    def __init__(self):
        self.data: Dict[str, Dict[str, Any]] = {}
        self.writes: List[Dict[str, Any]] = []

    async def put(self, key: str, value: Dict[str, Any]) -> None:
        self.data[key] = value
        self.writes.append(value)

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        return self.data.get(key)

    async def delete(self, key: str) -> bool:
        return self.data.pop(key, None) is not None

    async def keys(self, prefix: str = "") -> List[str]:
        return sorted(k for k in self.data if k.startswith(prefix))


class RecordingTransport:
    """Succeeds after `failures` TransportErrors; records what it was sent."""

    def __init__(self, failures: int = 0):
        self.failures = failures
        self.calls = 0
        self.sent: List[Dict[str, Any]] = []

    async def send(self, envelope: Dict[str, Any]) -> None:
        self.calls += 1
        if self.calls <= self.failures:
            raise TransportError(f"connection reset (attempt {self.calls})")
        self.sent.append(envelope)


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def transport():
    return RecordingTransport()


@pytest.fixture
def make_transport():
    """Usage: flaky = make_transport(failures=2)"""
    return RecordingTransport


@pytest_asyncio.fixture
async def key_manager():
    manager = KeyManager("device_test")
    await manager.initialize("correct horse battery staple")
    yield manager
    manager.clear()
