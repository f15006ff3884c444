"""
EQVault
🔒 Local-first emotional intelligence. Encrypted at rest. Shared only with consent.

Turns emotional signals into EQ metrics, patterns and coaching on the
device that produced them.
"""

__version__ = "1.0.0"
__author__ = "EQVault"
__license__ = "MIT"

from .errors import (
    EQVaultError,
    EncryptionNotInitialized,
    DecryptionFailed,
    InvalidInput,
    ConsentRequired,
    InsufficientParticipants,
    SyncDeferred,
    SyncFailed,
    TransportError,
)
from .models import (
    EmotionalSignal,
    EQMetrics,
    EQPattern,
    PatternType,
    PrivacyLevel,
    CoachingStyle,
    ClaimType,
    SelectiveSyncConfig,
    PatternSyncPreference,
)
from .keys import KeyManager
from .analyzer import MetricsCalculator, LocalEQProcessor
from .patterns import PatternDetector
from .coach import CoachingGenerator
from .local_db import SecureLocalStore, SQLiteKeyValueStore, get_db_path
from .sync import PrivacySyncManager, SyncQueue, SyncStatus
from .proof import ProofGenerator
from .aggregator import AnonymousAggregator
from .value import ValueCreator, ResearchRegistry, RevenueLedger
from .config import EQVaultConfig, load_config, get_config_path

__all__ = [
    # Errors
    "EQVaultError",
    "EncryptionNotInitialized",
    "DecryptionFailed",
    "InvalidInput",
    "ConsentRequired",
    "InsufficientParticipants",
    "SyncDeferred",
    "SyncFailed",
    "TransportError",

    # Model
    "EmotionalSignal",
    "EQMetrics",
    "EQPattern",
    "PatternType",
    "PrivacyLevel",
    "CoachingStyle",
    "ClaimType",
    "SelectiveSyncConfig",
    "PatternSyncPreference",

    # Local engine
    "KeyManager",
    "MetricsCalculator",
    "LocalEQProcessor",
    "PatternDetector",
    "CoachingGenerator",
    "SecureLocalStore",
    "SQLiteKeyValueStore",
    "get_db_path",

    # Consented sharing
    "PrivacySyncManager",
    "SyncQueue",
    "SyncStatus",
    "ProofGenerator",
    "AnonymousAggregator",
    "ValueCreator",
    "ResearchRegistry",
    "RevenueLedger",

    # Config
    "EQVaultConfig",
    "load_config",
    "get_config_path",
]
