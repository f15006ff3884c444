"""
EQVault - Command Line Interface
Main entry point for local processing.

Usage:
    eqvault process SIGNALS.json   # Score a batch, detect patterns, coach
    eqvault status                 # Show vault and privacy status
    eqvault export                 # Decrypt the latest snapshot as JSON
    eqvault sync --consent         # Share enabled patterns, encrypted
    eqvault aggregate FILE.json    # Aggregate anonymous contributions
    eqvault config                 # Create/show config file
    eqvault cleanup                # Apply the retention boundary
"""

import argparse
import asyncio
import getpass
import json
import os
import sys
from pathlib import Path
from typing import List, Optional

from .aggregator import AggregationContribution, AnonymousAggregator
from .analyzer import LocalEQProcessor
from .audit import PrivacyAuditLog, get_audit_log
from .coach import CoachingGenerator
from .config import (
    EQVaultConfig,
    build_sync_config,
    create_default_config,
    ensure_device_id,
    get_config_path,
    load_config,
)
from .errors import EQVaultError, InvalidInput
from .keys import KeyManager
from .local_db import METRICS_PREFIX, SecureLocalStore, SQLiteKeyValueStore, get_db_path
from .log import configure_logging
from .models import CoachingStyle, EmotionalSignal, EQPattern
from .patterns import PatternDetector
from .sync import PrivacySyncManager, SyncQueue, SyncResult
from .transport import HttpSyncTransport, StaticNetworkMonitor, SyncTransport

SECRET_ENV = "EQVAULT_SECRET"
HISTORY_WINDOW = 10


def read_secret() -> str:
    """User secret from EQVAULT_SECRET, else an interactive prompt."""
    secret = os.getenv(SECRET_ENV)
    if secret:
        return secret
    return getpass.getpass("🔑 Vault passphrase: ")


def load_signals(path: Path) -> List[EmotionalSignal]:
    """Read a JSON array of signal records."""
    try:
        with open(path, "r") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise InvalidInput(f"Cannot read signals from {path}: {e}") from e

    if not isinstance(data, list):
        raise InvalidInput("Signals file must contain a JSON array")
    return [EmotionalSignal.from_dict(item) for item in data]


def load_contributions(path: Path) -> List[AggregationContribution]:
    """Read a JSON array of aggregation contributions."""
    try:
        with open(path, "r") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise InvalidInput(f"Cannot read contributions from {path}: {e}") from e

    if not isinstance(data, list):
        raise InvalidInput("Contributions file must contain a JSON array")
    return [AggregationContribution.from_dict(item) for item in data]


def audit_log_for(config: EQVaultConfig) -> Optional[PrivacyAuditLog]:
    """The shared audit log, or None when auditing is switched off."""
    return get_audit_log() if config.enable_privacy_audit_log else None


class VaultSession:
    """
    Wires config, key, store and the local engine for one CLI run.
    """

    def __init__(self, config: Optional[EQVaultConfig] = None):
        self.config = config or load_config()
        device_id = ensure_device_id(self.config)
        self.key_manager = KeyManager(device_id, iterations=self.config.kdf_iterations)
        self.backend = SQLiteKeyValueStore()
        self.store = SecureLocalStore(self.key_manager, self.backend)

    async def unlock(self) -> None:
        await self.key_manager.initialize(read_secret())

    async def process(self, signals: List[EmotionalSignal], style: CoachingStyle) -> dict:
        if not self.config.allow_local_processing:
            raise EQVaultError("Local processing is disabled in config")

        history = await self.store.load_history(limit=HISTORY_WINDOW)
        metrics = await LocalEQProcessor(self.store).process_signals(signals)
        patterns = PatternDetector(privacy_level=self.config.privacy_level).detect(metrics, history)
        report = CoachingGenerator().generate(metrics, patterns, style)

        return {
            "metrics": metrics,
            "patterns": patterns,
            "report": report,
        }

    async def latest(self):
        return await self.store.load_latest()

    async def stored_patterns(self) -> List[EQPattern]:
        """Re-run detection on the newest stored snapshot against its history."""
        history = await self.store.load_history(limit=HISTORY_WINDOW + 1)
        if not history:
            return []
        detector = PatternDetector(privacy_level=self.config.privacy_level)
        return detector.detect(history[-1], history[:-1])

    def sync_manager(
        self,
        consent: bool,
        transport: SyncTransport,
        on_wifi: bool = True,
    ) -> PrivacySyncManager:
        return PrivacySyncManager(
            build_sync_config(self.config, self.key_manager.fingerprint(), consent),
            self.key_manager,
            transport,
            network=StaticNetworkMonitor(on_wifi=on_wifi),
            audit=audit_log_for(self.config),
            retry_backoff=self.config.retry_backoff_seconds,
        )

    async def sync(
        self,
        consent: bool,
        on_wifi: bool = True,
        transport: Optional[SyncTransport] = None,
    ) -> SyncResult:
        """Sync patterns from stored snapshots to the configured endpoint."""
        owned = None
        if transport is None:
            if not self.config.sync_endpoint:
                raise EQVaultError("No sync_endpoint configured")
            transport = owned = HttpSyncTransport(self.config.sync_endpoint)

        try:
            manager = self.sync_manager(consent, transport, on_wifi)
            patterns = await self.stored_patterns()
            return await manager.sync_patterns(patterns, SyncQueue())
        finally:
            if owned is not None:
                owned.close()

    async def cleanup(self, days: int) -> int:
        return await self.store.cleanup(days)

    def close(self) -> None:
        self.key_manager.clear()


def _print_metrics(metrics) -> None:
    for name, value in metrics.subscales().items():
        bar = "█" * int(value / 10)
        print(f"  {name.replace('_', ' ').title():<24} {value:5.1f}  {bar}")
    print(f"  {'Confidence':<24} {metrics.confidence_score:5.1f}")
    print(f"  {'Data points':<24} {metrics.data_points:5d}")


def cmd_process(args):
    """Process a batch of signals locally."""
    session = VaultSession()
    style = CoachingStyle(args.style) if args.style else session.config.style
    signals = load_signals(Path(args.signals))

    async def run():
        await session.unlock()
        try:
            return await session.process(signals, style)
        finally:
            session.close()

    result = asyncio.run(run())

    print("🧠 EQ Snapshot (stored encrypted on this device)")
    print("-" * 50)
    _print_metrics(result["metrics"])

    if result["patterns"]:
        print("\n✨ Patterns")
        for pattern in result["patterns"]:
            print(f"  • {pattern.type.value} ({pattern.confidence:.0%}) [{pattern.privacy_level.value}]")
            print(f"    {pattern.anonymized_insight}")

    print("\n💬 Coaching")
    for insight in result["report"].insights:
        print(f"  {insight}")

    for milestone in result["report"].milestones:
        print(f"\n🏆 Milestone: {milestone.milestone_id}: {milestone.insight_gained}")


def cmd_status(args):
    """Show vault and privacy status."""
    config = load_config()

    async def count():
        return len(await SQLiteKeyValueStore().keys(METRICS_PREFIX))

    print("📊 EQVault Status")
    print("-" * 40)
    print(f"Device: {config.device_id or 'not initialized'}")
    print(f"Snapshots stored: {asyncio.run(count())}")
    print(f"Retention: {config.retention_period_days} days")

    print("\n🔒 Privacy")
    print(f"  Default pattern level: {config.default_privacy_level}")
    print(f"  Selective sync: {'on' if config.allow_selective_sync else 'off'}")
    print(f"  Anonymous aggregation: {'on' if config.allow_anonymous_aggregation else 'off'}")
    print(f"  Research participation: {'on' if config.allow_research_participation else 'off'}")

    if config.enable_privacy_audit_log:
        stats = get_audit_log().get_stats()
        print("\n📜 Audit log")
        print(f"  Events: {stats['total_events']}")
        print(f"  Refusals: {stats['refusals']}")
        print(f"  Syncs completed: {stats['syncs_completed']} ({stats['items_synced']} patterns)")


def cmd_export(args):
    """Decrypt the latest snapshot and print it as JSON."""
    session = VaultSession()

    async def run():
        await session.unlock()
        try:
            return await session.latest()
        finally:
            session.close()

    metrics = asyncio.run(run())
    if metrics is None:
        print(json.dumps({"metrics": None}, indent=2))
        return

    output = metrics.to_dict()
    output["overall"] = round(metrics.overall(), 2)
    print(json.dumps(output, indent=2))


def cmd_config(args):
    """Open or create config file."""
    config_path = get_config_path()

    if create_default_config():
        print("📝 Created default config")

    print(f"📁 Config file: {config_path}")
    print(f"📁 Database: {get_db_path()}")
    print("\nTo edit, run:")
    print(f"  nano {config_path}")


def cmd_sync(args):
    """Share enabled, non-device-only patterns with the sync endpoint."""
    session = VaultSession()

    async def run():
        await session.unlock()
        try:
            return await session.sync(consent=args.consent, on_wifi=not args.metered)
        finally:
            session.close()

    result = asyncio.run(run())
    result.raise_for_status()

    if result.deferred:
        print(f"⏳ Sync deferred: {result.reason}")
    elif result.synced_count == 0:
        print("📭 Nothing to sync (no enabled, shareable patterns)")
    else:
        print(f"🔄 Synced {result.synced_count} patterns (anonymized + encrypted)")


def cmd_aggregate(args):
    """Aggregate anonymous contributions behind the k-anonymity floor."""
    config = load_config()
    contributions = load_contributions(Path(args.contributions))
    aggregator = AnonymousAggregator(
        minimum_participants=config.aggregation_threshold,
        audit=audit_log_for(config),
    )
    aggregation = aggregator.create(contributions)

    print("🌐 Anonymous Aggregation")
    print("-" * 40)
    print(f"Participants: {aggregation.participant_count} (minimum {aggregation.minimum_participants})")
    print(f"k-anonymity: {aggregation.k_anonymity_score}")
    for insight in aggregation.community_insights:
        print(f"  • {insight}")


def cmd_cleanup(args):
    """Delete stored snapshots older than the retention period."""
    session = VaultSession()
    days = args.days if args.days is not None else session.config.retention_period_days
    deleted = asyncio.run(session.cleanup(days))
    print(f"🧹 Cleaned up {deleted} records older than {days} days")


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="EQVault - private emotional-intelligence analytics",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  eqvault process signals.json    Score a batch of signals
  eqvault status                  Show vault and privacy status
  eqvault export                  Export latest snapshot as JSON
  eqvault sync --consent          Share enabled patterns (opt-in)

Privacy:
  🔒 Metrics are encrypted with a key derived from your passphrase
  🔒 Raw signals are never stored
  🔒 Nothing leaves ~/.eqvault/ unless you opt in and consent
        """
    )
    parser.add_argument("--log-level", default=None, help="Override config log level")
    parser.add_argument("--json-logs", action="store_true", help="Emit logs as JSON")

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    process_parser = subparsers.add_parser("process", help="Process a signals JSON file")
    process_parser.add_argument("signals", help="Path to a JSON array of signals")
    process_parser.add_argument(
        "--style",
        choices=[style.value for style in CoachingStyle],
        help="Coaching style (defaults to config)",
    )
    process_parser.set_defaults(func=cmd_process)

    status_parser = subparsers.add_parser("status", help="Show vault status")
    status_parser.set_defaults(func=cmd_status)

    export_parser = subparsers.add_parser("export", help="Export latest snapshot as JSON")
    export_parser.set_defaults(func=cmd_export)

    sync_parser = subparsers.add_parser("sync", help="Sync enabled patterns to the sync endpoint")
    sync_parser.add_argument(
        "--consent",
        action="store_true",
        help="Explicitly consent to sharing for this run (required)",
    )
    sync_parser.add_argument("--metered", action="store_true", help="Current connection is not Wi-Fi")
    sync_parser.set_defaults(func=cmd_sync)

    aggregate_parser = subparsers.add_parser("aggregate", help="Aggregate anonymous contributions")
    aggregate_parser.add_argument("contributions", help="Path to a JSON array of contributions")
    aggregate_parser.set_defaults(func=cmd_aggregate)

    config_parser = subparsers.add_parser("config", help="Create/show config file")
    config_parser.set_defaults(func=cmd_config)

    cleanup_parser = subparsers.add_parser("cleanup", help="Apply retention period")
    cleanup_parser.add_argument("--days", type=int, default=None, help="Override retention days")
    cleanup_parser.set_defaults(func=cmd_cleanup)

    args = parser.parse_args()

    if args.command is None:
        parser.print_help()
        return

    configure_logging(args.log_level or load_config().log_level, json=args.json_logs)

    try:
        args.func(args)
    except EQVaultError as e:
        print(f"❌ {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
