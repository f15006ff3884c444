"""
EQVault - Privacy Sync Manager
Selective sharing with end-to-end encryption and user control.

Pipeline for every sync attempt (each step happens-before the next):

    1. drop device-only patterns (unconditional)
    2. drop pattern types the user has not enabled
    3. check Wi-Fi / frequency conditions (defer, don't fail)
    4. anonymize each pattern at its configured level
    5. AEAD-encrypt the payload, then hand it to the transport

Task state machine: pending -> syncing -> completed | failed,
with `cancelled` when consent is revoked. Transport errors are
retried up to MAX_ATTEMPTS before the task is failed.
"""

import asyncio
import base64
import hashlib
import json
import os
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, Dict, Iterator, List, Optional, Sequence, Tuple
from uuid import uuid4

import numpy as np
import structlog

from .aggregator import AggregationContribution, pattern_commitment
from .anonymize import DEFAULT_EPSILON, add_differential_privacy_noise, anonymize_pattern, shareable
from .audit import (
    AGGREGATION_REFUSED,
    CONSENT_REFUSED,
    SYNC_CANCELLED,
    SYNC_COMPLETED,
    SYNC_DEFERRED,
    SYNC_FAILED,
    PrivacyAuditLog,
)
from .errors import ConsentRequired, SyncDeferred, SyncFailed, TransportError
from .keys import KeyManager
from .models import ClaimType, EQPattern, SelectiveSyncConfig, utcnow
from .proof import ProofGenerator
from .transport import NetworkMonitor, StaticNetworkMonitor, SyncTransport

logger = structlog.get_logger(__name__)

PROTOCOL_VERSION = "1.0.0"


class SyncStatus(Enum):
    PENDING = "pending"
    SYNCING = "syncing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = (SyncStatus.COMPLETED, SyncStatus.FAILED, SyncStatus.CANCELLED)


@dataclass
class SyncTask:
    """One sync attempt. Holds filtered patterns in memory only."""
    id: str
    config_id: str
    patterns: Tuple[EQPattern, ...]
    status: SyncStatus = SyncStatus.PENDING
    attempts: int = 0
    created_at: datetime = field(default_factory=utcnow)
    deferred_reason: Optional[str] = None
    last_error: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class SyncQueue:
    """
    Arena of sync tasks keyed by id.

    Owned by the caller and passed into the manager, so task state is
    never hidden inside a long-lived object.
    """

    def __init__(self):
        self._tasks: Dict[str, SyncTask] = {}

    def __len__(self) -> int:
        return len(self._tasks)

    def __iter__(self) -> Iterator[SyncTask]:
        return iter(list(self._tasks.values()))

    def __contains__(self, task_id: str) -> bool:
        return task_id in self._tasks

    def add(self, task: SyncTask) -> SyncTask:
        self._tasks[task.id] = task
        return task

    def get(self, task_id: str) -> Optional[SyncTask]:
        return self._tasks.get(task_id)

    def pending(self, config_id: Optional[str] = None) -> List[SyncTask]:
        return [
            t for t in self._tasks.values()
            if t.status is SyncStatus.PENDING and (config_id is None or t.config_id == config_id)
        ]

    def cancel(self, config_id: str) -> int:
        """Cancel every non-terminal task for a config. Returns how many."""
        cancelled = 0
        for task in self._tasks.values():
            if task.config_id == config_id and not task.is_terminal:
                task.status = SyncStatus.CANCELLED
                cancelled += 1
        return cancelled

    def prune(self) -> int:
        """Drop terminal tasks. Returns how many were removed."""
        done = [task_id for task_id, t in self._tasks.items() if t.is_terminal]
        for task_id in done:
            del self._tasks[task_id]
        return len(done)


@dataclass(frozen=True)
class SyncResult:
    success: bool
    status: SyncStatus
    task_id: Optional[str] = None
    synced_count: int = 0
    reason: Optional[str] = None
    deferred: bool = False
    attempts: int = 0
    timestamp: datetime = field(default_factory=utcnow)

    def raise_for_status(self) -> None:
        """Raise SyncFailed if the task is terminally failed."""
        if self.status is SyncStatus.FAILED:
            raise SyncFailed(self.task_id or "unknown", self.reason or "unknown error")


class PrivacySyncManager:
    """
    Syncs selected, anonymized, encrypted patterns for one SelectiveSyncConfig.

    Construction is the consent gate: without an explicit, true
    `require_explicit_consent` the manager refuses to exist, before any
    transport is touched.
    """

    MAX_ATTEMPTS = 3

    def __init__(
        self,
        config: SelectiveSyncConfig,
        key_manager: KeyManager,
        transport: SyncTransport,
        network: Optional[NetworkMonitor] = None,
        audit: Optional[PrivacyAuditLog] = None,
        retry_backoff: float = 1.0,
        epsilon: float = DEFAULT_EPSILON,
        clock: Callable[[], datetime] = utcnow,
        rng: Optional[np.random.Generator] = None,
    ):
        if config.require_explicit_consent is not True:
            logger.warning("sync_consent_refused", config_id=config.config_id)
            if audit:
                audit.log_event(CONSENT_REFUSED, "sync", "refused",
                                detail="explicit consent is required for sync initialization")
            raise ConsentRequired("Explicit consent is required for sync initialization")

        self.config = config
        self.key_manager = key_manager
        self.transport = transport
        self.network = network or StaticNetworkMonitor()
        self.audit = audit
        self.retry_backoff = retry_backoff
        self.epsilon = epsilon
        self.clock = clock
        self.rng = rng
        self.proofs = ProofGenerator(config.device_key_fingerprint)

        self._revoked = False
        self._last_sync_at: Optional[datetime] = None

    # === CONSENT ===

    @property
    def consent_active(self) -> bool:
        return not self._revoked

    def _require_consent(self) -> None:
        if self._revoked:
            raise ConsentRequired("Consent for this sync configuration was revoked")

    def revoke_consent(self, queue: SyncQueue) -> int:
        """
        Withdraw consent: cancel queued and in-flight tasks for this config.
        No further transport attempt is made for any of them.
        """
        self._revoked = True
        cancelled = queue.cancel(self.config.config_id)
        logger.info("sync_consent_revoked", config_id=self.config.config_id, cancelled=cancelled)
        if self.audit:
            self.audit.log_event(SYNC_CANCELLED, "sync", "cancelled",
                                 detail="consent revoked", count=cancelled)
        return cancelled

    # === FILTERING & CONDITIONS ===

    def select_patterns(self, patterns: Sequence[EQPattern]) -> List[EQPattern]:
        """Steps 1 and 2: privacy gate, then the user's per-type toggles."""
        selected = []
        for pattern in shareable(patterns):
            pref = self.config.preference_for(pattern.type)
            if pref is not None and pref.sync_enabled:
                selected.append(pattern)
        return selected

    def check_conditions(self) -> None:
        """
        Raises:
            SyncDeferred: Wi-Fi required but absent, or frequency cap not elapsed
        """
        if self.config.sync_only_on_wifi and not self.network.is_on_wifi():
            raise SyncDeferred("Waiting for Wi-Fi connection")

        if self._last_sync_at is not None and self.config.max_sync_frequency > 0:
            elapsed = (self.clock() - self._last_sync_at).total_seconds()
            if elapsed < self.config.max_sync_frequency:
                wait = int(self.config.max_sync_frequency - elapsed) + 1
                raise SyncDeferred(f"Sync frequency cap reached, next sync in {wait}s")

    # === PAYLOAD ===

    def _anonymization_level(self, pattern: EQPattern) -> int:
        pref = self.config.preference_for(pattern.type)
        return pref.anonymization_level if pref is not None else 10

    def build_payload(self, task: SyncTask) -> Dict:
        """Step 4: anonymized, proof-carrying plaintext payload."""
        patterns = []
        for pattern in task.patterns:
            entry = anonymize_pattern(pattern, self._anonymization_level(pattern), self.rng).to_dict()
            entry["proof"] = self.proofs.generate(ClaimType.PATTERN_MASTERY, pattern.id).to_dict()
            patterns.append(entry)

        return {
            "patterns": patterns,
            "device_fingerprint": self.config.device_key_fingerprint,
            "timestamp": self.clock().isoformat(),
            "protocol_version": PROTOCOL_VERSION,
        }

    async def seal_payload(self, task: SyncTask) -> Dict:
        """Step 5: encrypt the anonymized payload into a transport envelope."""
        plaintext = json.dumps(self.build_payload(task), sort_keys=True).encode("utf-8")
        sealed = await self.key_manager.encrypt(plaintext, task.id.encode("utf-8"))
        return {
            "task_id": task.id,
            "device_fingerprint": self.config.device_key_fingerprint,
            "protocol_version": PROTOCOL_VERSION,
            "payload": sealed.to_base64(),
        }

    # === EXECUTION ===

    async def sync_patterns(self, patterns: Sequence[EQPattern], queue: SyncQueue) -> SyncResult:
        """Selectively sync patterns based on user preferences."""
        self._require_consent()

        selected = self.select_patterns(patterns)
        if not selected:
            return SyncResult(success=True, status=SyncStatus.COMPLETED, synced_count=0)

        task = queue.add(SyncTask(
            id=f"sync_{uuid4().hex[:16]}",
            config_id=self.config.config_id,
            patterns=tuple(selected),
        ))
        return await self.run_task(task)

    async def resume(self, queue: SyncQueue) -> List[SyncResult]:
        """Retry deferred tasks for this config, oldest first."""
        self._require_consent()
        tasks = sorted(queue.pending(self.config.config_id), key=lambda t: t.created_at)
        return [await self.run_task(task) for task in tasks]

    def _cancelled(self, task: SyncTask) -> SyncResult:
        task.status = SyncStatus.CANCELLED
        return SyncResult(
            success=False,
            status=SyncStatus.CANCELLED,
            task_id=task.id,
            reason="Consent revoked",
            attempts=task.attempts,
        )

    async def run_task(self, task: SyncTask) -> SyncResult:
        if self._revoked or task.status is SyncStatus.CANCELLED:
            return self._cancelled(task)

        try:
            self.check_conditions()
        except SyncDeferred as deferral:
            task.deferred_reason = deferral.reason
            logger.info("sync_deferred", task_id=task.id, reason=deferral.reason)
            if self.audit:
                self.audit.log_event(SYNC_DEFERRED, "sync", "deferred", detail=deferral.reason)
            return SyncResult(
                success=False,
                status=task.status,
                task_id=task.id,
                reason=deferral.reason,
                deferred=True,
                attempts=task.attempts,
            )

        # Claim the slot before the first await so overlapping runs see it
        previous_sync_at = self._last_sync_at
        self._last_sync_at = self.clock()
        task.deferred_reason = None
        try:
            result = await self._deliver(task)
        except BaseException:
            self._last_sync_at = previous_sync_at
            raise

        if result.status is not SyncStatus.COMPLETED:
            self._last_sync_at = previous_sync_at
        return result

    async def _deliver(self, task: SyncTask) -> SyncResult:
        envelope = await self.seal_payload(task)

        while True:
            if self._revoked or task.status is SyncStatus.CANCELLED:
                return self._cancelled(task)

            task.status = SyncStatus.SYNCING
            task.attempts += 1
            try:
                await self.transport.send(envelope)
            except TransportError as e:
                task.last_error = str(e)
                if self._revoked or task.status is SyncStatus.CANCELLED:
                    return self._cancelled(task)
                if task.attempts >= self.MAX_ATTEMPTS:
                    return self._fail(task)

                task.status = SyncStatus.PENDING
                delay = self.retry_backoff * 2 ** (task.attempts - 1)
                logger.warning("sync_retry", task_id=task.id, attempt=task.attempts, error=str(e))
                await asyncio.sleep(delay)
                continue

            return self._complete(task)

    def _complete(self, task: SyncTask) -> SyncResult:
        task.status = SyncStatus.COMPLETED
        self._last_sync_at = self.clock()
        count = len(task.patterns)
        logger.info("sync_completed", task_id=task.id, synced=count, attempts=task.attempts)
        if self.audit:
            self.audit.log_event(SYNC_COMPLETED, "sync", "completed", count=count)
        return SyncResult(
            success=True,
            status=SyncStatus.COMPLETED,
            task_id=task.id,
            synced_count=count,
            attempts=task.attempts,
        )

    def _fail(self, task: SyncTask) -> SyncResult:
        task.status = SyncStatus.FAILED
        logger.error("sync_failed", task_id=task.id, attempts=task.attempts, reason=task.last_error)
        if self.audit:
            self.audit.log_event(SYNC_FAILED, "sync", "failed", detail=task.last_error)
        return SyncResult(
            success=False,
            status=SyncStatus.FAILED,
            task_id=task.id,
            reason=task.last_error,
            attempts=task.attempts,
        )

    # === AGGREGATION ===

    def contribute_to_aggregation(
        self,
        patterns: Sequence[EQPattern],
        aggregation_id: str,
        consent: bool,
    ) -> AggregationContribution:
        """
        Build an anonymous aggregation contribution.

        Device-only patterns are dropped, the rest are noised (Laplace)
        and reduced to commitments. The participant proof is a fresh
        random hash, unlinkable across contributions.
        """
        if consent is not True or not self.config.allow_anonymous_aggregation:
            reason = ("Explicit consent is required for aggregation" if consent is not True
                      else "Anonymous aggregation not enabled")
            logger.warning("aggregation_consent_refused", reason=reason)
            if self.audit:
                self.audit.log_event(AGGREGATION_REFUSED, "sync", "refused", detail=reason)
            raise ConsentRequired(reason)
        self._require_consent()

        noisy = add_differential_privacy_noise(shareable(patterns), self.epsilon, self.rng)
        now = self.clock()
        proof_seed = os.urandom(32) + now.isoformat().encode("utf-8")

        return AggregationContribution(
            aggregation_id=aggregation_id,
            timestamp=now,
            pattern_hashes=tuple(pattern_commitment(p) for p in noisy),
            participant_proof=base64.b64encode(hashlib.sha256(proof_seed).digest()).decode("ascii"),
        )
