"""
Tests for consented, selective, encrypted pattern sync.
"""

import asyncio
import json
from datetime import timedelta

import pytest

from eqvault.aggregator import AnonymousAggregator
from eqvault.audit import CONSENT_REFUSED, SYNC_CANCELLED, SYNC_COMPLETED, SYNC_FAILED, PrivacyAuditLog
from eqvault.errors import ConsentRequired, SyncFailed, TransportError
from eqvault.models import (
    PatternSyncPreference,
    PatternType,
    PrivacyLevel,
    SealedBox,
    SelectiveSyncConfig,
)
from eqvault.sync import PrivacySyncManager, SyncQueue, SyncStatus
from eqvault.transport import StaticNetworkMonitor

RAW_SIGNAL_KEYS = {"intensity", "smoothness", "quality", "authentic", "outcome", "category"}
METRIC_KEYS = {"self_awareness", "empathy", "emotional_resilience", "confidence_score"}


@pytest.fixture
def sync_config(key_manager):
    return SelectiveSyncConfig(
        sync_patterns=[
            PatternSyncPreference(PatternType.EMPATHY_SPIKE, sync_enabled=True, anonymization_level=10),
            PatternSyncPreference(PatternType.STRESS_RESILIENCE, sync_enabled=True, anonymization_level=4),
            PatternSyncPreference(PatternType.SOCIAL_HARMONY, sync_enabled=False),
        ],
        device_key_fingerprint=key_manager.fingerprint(),
        require_explicit_consent=True,
        max_sync_frequency=3600,
        sync_only_on_wifi=True,
        allow_anonymous_aggregation=True,
    )


@pytest.fixture
def audit(tmp_path):
    return PrivacyAuditLog(tmp_path / "audit.json")


@pytest.fixture
def clock(frozen_now):
    class _Clock:
        now = frozen_now

        def __call__(self):
            return self.now

        def advance(self, **kwargs):
            self.now = self.now + timedelta(**kwargs)

    return _Clock()


@pytest.fixture
def make_manager(sync_config, key_manager, transport, audit, clock):
    def _factory(**overrides):
        options = {
            "config": sync_config,
            "key_manager": key_manager,
            "transport": transport,
            "network": StaticNetworkMonitor(on_wifi=True),
            "audit": audit,
            "retry_backoff": 0.0,
            "clock": clock,
        }
        options.update(overrides)
        return PrivacySyncManager(**options)

    return _factory


async def open_envelope(key_manager, envelope):
    plaintext = await key_manager.decrypt(
        SealedBox.from_base64(envelope["payload"]), envelope["task_id"].encode("utf-8")
    )
    return json.loads(plaintext)


# =============================================================================
# Consent gate
# =============================================================================


class TestConsentGate:

    @pytest.mark.asyncio
    @pytest.mark.parametrize("consent", [False, None, "yes", 1])
    async def test_construction_without_explicit_consent_raises(
        self, make_manager, sync_config, transport, audit, consent
    ):
        sync_config.require_explicit_consent = consent

        with pytest.raises(ConsentRequired):
            make_manager()

        assert transport.calls == 0
        assert len(audit.get_events(CONSENT_REFUSED)) == 1

    @pytest.mark.asyncio
    async def test_revoked_manager_refuses_new_work(self, make_manager, make_pattern):
        manager = make_manager()
        manager.revoke_consent(SyncQueue())

        assert manager.consent_active is False
        with pytest.raises(ConsentRequired):
            await manager.sync_patterns([make_pattern()], SyncQueue())


# =============================================================================
# Filtering and payload
# =============================================================================


class TestFiltering:

    @pytest.mark.asyncio
    async def test_device_only_and_disabled_types_are_dropped(self, make_manager, make_pattern):
        allowed = make_pattern(PatternType.EMPATHY_SPIKE)
        patterns = [
            make_pattern(PatternType.EMPATHY_SPIKE, privacy_level=PrivacyLevel.DEVICE_ONLY),
            allowed,
            make_pattern(PatternType.SOCIAL_HARMONY),
            make_pattern(PatternType.REGULATION_SUCCESS),  # no preference at all
        ]

        assert make_manager().select_patterns(patterns) == [allowed]

    @pytest.mark.asyncio
    async def test_nothing_selected_is_an_empty_success(self, make_manager, make_pattern, transport):
        queue = SyncQueue()
        result = await make_manager().sync_patterns(
            [make_pattern(privacy_level=PrivacyLevel.DEVICE_ONLY)], queue
        )

        assert result.success is True
        assert result.synced_count == 0
        assert transport.calls == 0
        assert len(queue) == 0

    @pytest.mark.asyncio
    @pytest.mark.parametrize("level", list(PrivacyLevel))
    async def test_device_only_never_reaches_transport(
        self, make_manager, make_pattern, transport, key_manager, sync_config, level
    ):
        sync_config.sync_patterns = [
            PatternSyncPreference(t, sync_enabled=True, anonymization_level=0) for t in PatternType
        ]
        marker = "device-only insight that must stay home"
        patterns = [
            make_pattern(t, privacy_level=PrivacyLevel.DEVICE_ONLY, anonymized_insight=marker)
            for t in PatternType
        ] + [make_pattern(PatternType.EMPATHY_SPIKE, privacy_level=level)]

        result = await make_manager().sync_patterns(patterns, SyncQueue())

        expected = 0 if level is PrivacyLevel.DEVICE_ONLY else 1
        assert result.synced_count == expected
        for envelope in transport.sent:
            payload = await open_envelope(key_manager, envelope)
            assert len(payload["patterns"]) == expected
            assert marker not in json.dumps(payload)

    @pytest.mark.asyncio
    async def test_payload_is_anonymized_per_type_level(self, make_manager, make_pattern, transport, key_manager):
        patterns = [make_pattern(PatternType.EMPATHY_SPIKE), make_pattern(PatternType.STRESS_RESILIENCE)]

        result = await make_manager().sync_patterns(patterns, SyncQueue())

        assert result.status is SyncStatus.COMPLETED
        [envelope] = transport.sent
        empathy, resilience = (await open_envelope(key_manager, envelope))["patterns"]

        # level 10
        assert "insight" not in empathy and "growth_suggestion" not in empathy
        assert empathy["time_range"] == "2025"
        # level 4
        assert resilience["insight"] == patterns[1].anonymized_insight
        assert resilience["growth_suggestion"] == patterns[1].growth_suggestion
        assert resilience["time_range"] == "2025-06-01"

    @pytest.mark.asyncio
    async def test_payload_carries_commitments_not_ids(self, make_manager, make_pattern, transport, key_manager):
        pattern = make_pattern()

        await make_manager().sync_patterns([pattern], SyncQueue())

        payload = await open_envelope(key_manager, transport.sent[0])
        assert pattern.id not in json.dumps(payload)
        assert payload["patterns"][0]["proof"]["claim_type"] == "pattern-mastery"
        assert payload["patterns"][0]["proof"]["public_verification_key"] == key_manager.fingerprint()

    @pytest.mark.asyncio
    async def test_envelope_is_encrypted(self, make_manager, make_pattern, transport):
        pattern = make_pattern(anonymized_insight="plainly readable insight")

        await make_manager().sync_patterns([pattern], SyncQueue())

        envelope = transport.sent[0]
        assert set(envelope) == {"task_id", "device_fingerprint", "protocol_version", "payload"}
        assert "empathy" not in json.dumps(envelope)

    @pytest.mark.asyncio
    async def test_no_raw_signal_or_metric_keys(self, make_manager, make_pattern, transport, key_manager):
        await make_manager().sync_patterns([make_pattern()], SyncQueue())

        payload = await open_envelope(key_manager, transport.sent[0])
        keys = set(payload)
        for entry in payload["patterns"]:
            keys |= set(entry)
        assert not keys & (RAW_SIGNAL_KEYS | METRIC_KEYS)


# =============================================================================
# State machine
# =============================================================================


class TestRetries:

    @pytest.mark.asyncio
    async def test_transient_failures_are_retried(self, make_manager, make_pattern, make_transport, audit):
        flaky = make_transport(failures=2)
        queue = SyncQueue()

        result = await make_manager(transport=flaky).sync_patterns([make_pattern()], queue)

        assert result.success is True
        assert result.status is SyncStatus.COMPLETED
        assert result.attempts == 3
        assert result.synced_count == 1
        assert queue.get(result.task_id).status is SyncStatus.COMPLETED
        assert audit.get_events(SYNC_COMPLETED)[0]["count"] == 1

    @pytest.mark.asyncio
    async def test_three_failures_are_terminal(self, make_manager, make_pattern, make_transport, audit):
        broken = make_transport(failures=10)
        queue = SyncQueue()

        result = await make_manager(transport=broken).sync_patterns([make_pattern()], queue)

        assert result.success is False
        assert result.status is SyncStatus.FAILED
        assert result.attempts == 3
        assert broken.calls == 3
        assert "connection reset" in result.reason
        assert queue.get(result.task_id).status is SyncStatus.FAILED
        assert len(audit.get_events(SYNC_FAILED)) == 1
        with pytest.raises(SyncFailed) as exc_info:
            result.raise_for_status()
        assert exc_info.value.reason == result.reason

    @pytest.mark.asyncio
    async def test_completed_result_does_not_raise(self, make_manager, make_pattern):
        result = await make_manager().sync_patterns([make_pattern()], SyncQueue())
        result.raise_for_status()


class TestDeferral:

    @pytest.mark.asyncio
    async def test_wifi_only_defers_then_resumes(self, make_manager, make_pattern, transport):
        network = StaticNetworkMonitor(on_wifi=False)
        manager = make_manager(network=network)
        queue = SyncQueue()

        deferred = await manager.sync_patterns([make_pattern()], queue)

        assert deferred.deferred is True
        assert deferred.success is False
        assert deferred.status is SyncStatus.PENDING
        assert "Wi-Fi" in deferred.reason
        assert transport.calls == 0

        network.on_wifi = True
        [resumed] = await manager.resume(queue)

        assert resumed.status is SyncStatus.COMPLETED
        assert resumed.task_id == deferred.task_id
        assert transport.calls == 1

    @pytest.mark.asyncio
    async def test_wifi_not_required(self, make_manager, make_pattern, sync_config, transport):
        sync_config.sync_only_on_wifi = False
        manager = make_manager(network=StaticNetworkMonitor(on_wifi=False))

        result = await manager.sync_patterns([make_pattern()], SyncQueue())

        assert result.status is SyncStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_frequency_cap(self, make_manager, make_pattern, clock, transport):
        manager = make_manager()
        queue = SyncQueue()

        first = await manager.sync_patterns([make_pattern()], queue)
        clock.advance(minutes=10)
        second = await manager.sync_patterns([make_pattern()], queue)

        assert first.status is SyncStatus.COMPLETED
        assert second.deferred is True
        assert "frequency" in second.reason
        assert transport.calls == 1

        clock.advance(hours=1)
        [resumed] = await manager.resume(queue)
        assert resumed.status is SyncStatus.COMPLETED
        assert transport.calls == 2

    @pytest.mark.asyncio
    async def test_frequency_cap_holds_for_overlapping_syncs(self, make_manager, make_pattern, transport):
        manager = make_manager()
        queue = SyncQueue()

        first, second = await asyncio.gather(
            manager.sync_patterns([make_pattern()], queue),
            manager.sync_patterns([make_pattern()], queue),
        )

        assert first.status is SyncStatus.COMPLETED
        assert second.deferred is True
        assert transport.calls == 1

    @pytest.mark.asyncio
    async def test_failed_sync_releases_the_slot(self, make_manager, make_pattern, make_transport):
        flaky = make_transport(failures=3)
        manager = make_manager(transport=flaky)
        queue = SyncQueue()

        failed = await manager.sync_patterns([make_pattern()], queue)
        retried = await manager.sync_patterns([make_pattern()], queue)

        assert failed.status is SyncStatus.FAILED
        assert retried.status is SyncStatus.COMPLETED


class TestRevocation:

    @pytest.mark.asyncio
    async def test_revoke_cancels_queued_tasks(self, make_manager, make_pattern, transport, audit):
        manager = make_manager(network=StaticNetworkMonitor(on_wifi=False))
        queue = SyncQueue()
        await manager.sync_patterns([make_pattern()], queue)
        await manager.sync_patterns([make_pattern()], queue)

        assert manager.revoke_consent(queue) == 2

        assert all(task.status is SyncStatus.CANCELLED for task in queue)
        assert queue.pending() == []
        assert transport.calls == 0
        assert audit.get_events(SYNC_CANCELLED)[0]["count"] == 2

    @pytest.mark.asyncio
    async def test_revoke_during_retry_stops_transport(self, make_manager, make_pattern):
        queue = SyncQueue()

        class RevokingTransport:
            calls = 0

            async def send(self, envelope):
                RevokingTransport.calls += 1
                manager.revoke_consent(queue)
                raise TransportError("dropped")

        manager = make_manager(transport=RevokingTransport())

        result = await manager.sync_patterns([make_pattern()], queue)

        assert result.status is SyncStatus.CANCELLED
        assert RevokingTransport.calls == 1

    @pytest.mark.asyncio
    async def test_revoke_leaves_other_configs_alone(self, make_manager, make_pattern, sync_config):
        queue = SyncQueue()
        manager = make_manager(network=StaticNetworkMonitor(on_wifi=False))
        await manager.sync_patterns([make_pattern()], queue)

        other_config = SelectiveSyncConfig(
            sync_patterns=sync_config.sync_patterns,
            device_key_fingerprint=sync_config.device_key_fingerprint,
            require_explicit_consent=True,
        )
        other = make_manager(config=other_config, network=StaticNetworkMonitor(on_wifi=False))
        await other.sync_patterns([make_pattern()], queue)

        assert manager.revoke_consent(queue) == 1
        assert len(queue.pending(other_config.config_id)) == 1

    @pytest.mark.asyncio
    async def test_prune_drops_terminal_tasks(self, make_manager, make_pattern):
        queue = SyncQueue()
        manager = make_manager(network=StaticNetworkMonitor(on_wifi=False))
        await manager.sync_patterns([make_pattern()], queue)
        manager.revoke_consent(queue)

        assert queue.prune() == 1
        assert len(queue) == 0


# =============================================================================
# Aggregation contributions
# =============================================================================


class TestAggregationContribution:

    @pytest.mark.asyncio
    async def test_requires_consent(self, make_manager, make_pattern):
        with pytest.raises(ConsentRequired):
            make_manager().contribute_to_aggregation([make_pattern()], "agg_1", consent=False)

    @pytest.mark.asyncio
    async def test_requires_aggregation_enabled(self, make_manager, make_pattern, sync_config):
        sync_config.allow_anonymous_aggregation = False
        with pytest.raises(ConsentRequired):
            make_manager().contribute_to_aggregation([make_pattern()], "agg_1", consent=True)

    @pytest.mark.asyncio
    async def test_device_only_excluded(self, make_manager, make_pattern):
        contribution = make_manager().contribute_to_aggregation(
            [make_pattern(), make_pattern(privacy_level=PrivacyLevel.DEVICE_ONLY)],
            "agg_1",
            consent=True,
        )
        assert len(contribution.pattern_hashes) == 1

    @pytest.mark.asyncio
    async def test_contributions_are_unlinkable(self, make_manager, make_pattern):
        manager = make_manager()
        first = manager.contribute_to_aggregation([make_pattern()], "agg_1", consent=True)
        second = manager.contribute_to_aggregation([make_pattern()], "agg_1", consent=True)
        assert first.participant_proof != second.participant_proof

    @pytest.mark.asyncio
    async def test_feeds_the_aggregator(self, make_manager, make_pattern):
        manager = make_manager()
        contributions = [
            manager.contribute_to_aggregation([make_pattern(confidence=0.9)], "agg_1", consent=True)
            for _ in range(10)
        ]

        aggregation = AnonymousAggregator().create(contributions)

        assert aggregation.participant_count == 10
        assert sum(len(c.pattern_hashes) for c in contributions) == 10
