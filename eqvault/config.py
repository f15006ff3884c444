"""
EQVault - Configuration Management
Handles ~/.eqvault/config.yaml with defaults.

Privacy controls default to the strictest setting: nothing leaves
the device until the user turns it on here AND consents per call.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional
from uuid import uuid4

import structlog
import yaml

from .models import (
    CoachingStyle,
    PatternSyncPreference,
    PatternType,
    PrivacyLevel,
    SelectiveSyncConfig,
    validate_anonymization_level,
)

logger = structlog.get_logger(__name__)


# ============================================================
# PATHS
# ============================================================

def get_eqvault_dir() -> Path:
    """Get the EQVault data directory (EQVAULT_HOME overrides ~/.eqvault)."""
    override = os.getenv("EQVAULT_HOME")
    eqvault_dir = Path(override) if override else Path.home() / ".eqvault"
    eqvault_dir.mkdir(parents=True, exist_ok=True)
    return eqvault_dir


def get_config_path() -> Path:
    """Get path to config file."""
    return get_eqvault_dir() / "config.yaml"


# ============================================================
# CONFIG DATACLASS
# ============================================================

def default_sync_patterns() -> Dict[str, Dict[str, Any]]:
    """Every pattern type off, maximum anonymization."""
    return {
        pattern_type.value: {"enabled": False, "anonymization_level": 10}
        for pattern_type in PatternType
    }


@dataclass
class EQVaultConfig:
    """Configuration settings for EQVault."""

    # Stable identifier, also the KDF salt. Generated on first run.
    device_id: Optional[str] = None

    # === PRIVACY CONTROLS ===
    allow_local_processing: bool = True
    allow_anonymous_aggregation: bool = False
    allow_selective_sync: bool = False
    allow_research_participation: bool = False

    # Privacy level assigned to newly detected patterns
    default_privacy_level: str = PrivacyLevel.DEVICE_ONLY.value

    # === DATA BOUNDARIES ===
    retention_period_days: int = 90
    aggregation_threshold: int = 10  # Min participants before aggregating

    # === SYNC ===
    sync_endpoint: Optional[str] = None
    sync_only_on_wifi: bool = True
    max_sync_frequency: int = 3600  # seconds
    retry_backoff_seconds: float = 1.0
    sync_patterns: Dict[str, Dict[str, Any]] = field(default_factory=default_sync_patterns)

    # === COACHING ===
    coaching_style: str = CoachingStyle.SUPPORTIVE_COMPANION.value

    # === SECURITY & DIAGNOSTICS ===
    kdf_iterations: int = 100_000
    log_level: str = "WARNING"
    enable_privacy_audit_log: bool = True

    @property
    def privacy_level(self) -> PrivacyLevel:
        return PrivacyLevel(self.default_privacy_level)

    @property
    def style(self) -> CoachingStyle:
        return CoachingStyle(self.coaching_style)

    def sync_preferences(self) -> List[PatternSyncPreference]:
        """Parse sync_patterns into typed preferences (unknown types are ignored)."""
        preferences = []
        for pattern_type in PatternType:
            entry = self.sync_patterns.get(pattern_type.value, {})
            preferences.append(PatternSyncPreference(
                pattern_type=pattern_type,
                sync_enabled=bool(entry.get("enabled", False)),
                anonymization_level=validate_anonymization_level(
                    entry.get("anonymization_level", 10)
                ),
            ))
        return preferences


_FIELDS = (
    "device_id",
    "allow_local_processing",
    "allow_anonymous_aggregation",
    "allow_selective_sync",
    "allow_research_participation",
    "default_privacy_level",
    "retention_period_days",
    "aggregation_threshold",
    "sync_endpoint",
    "sync_only_on_wifi",
    "max_sync_frequency",
    "retry_backoff_seconds",
    "sync_patterns",
    "coaching_style",
    "kdf_iterations",
    "log_level",
    "enable_privacy_audit_log",
)


# ============================================================
# CONFIG LOADING
# ============================================================

def _validate(config: EQVaultConfig) -> None:
    """Raise ValueError on bad enum values or levels."""
    PrivacyLevel(config.default_privacy_level)
    CoachingStyle(config.coaching_style)
    config.sync_preferences()
    if int(config.aggregation_threshold) < 1:
        raise ValueError("aggregation_threshold must be at least 1")
    if float(config.retry_backoff_seconds) < 0:
        raise ValueError("retry_backoff_seconds must be non-negative")


def load_config(config_path: Optional[Path] = None) -> EQVaultConfig:
    """
    Load configuration from ~/.eqvault/config.yaml
    Falls back to defaults if file doesn't exist or can't be parsed.
    """
    config_path = config_path or get_config_path()

    if not config_path.exists():
        return EQVaultConfig()

    try:
        with open(config_path, "r") as f:
            data = yaml.safe_load(f) or {}

        defaults = EQVaultConfig()
        sync_patterns = default_sync_patterns()
        sync_patterns.update(data.get("sync_patterns") or {})

        config = EQVaultConfig(**{
            name: data.get(name, getattr(defaults, name))
            for name in _FIELDS
            if name != "sync_patterns"
        }, sync_patterns=sync_patterns)

        _validate(config)
        return config
    except (yaml.YAMLError, TypeError, ValueError, AttributeError) as e:
        logger.warning("config_load_failed", path=str(config_path), error=str(e))
        return EQVaultConfig()


def save_config(config: EQVaultConfig, config_path: Optional[Path] = None) -> None:
    """Save configuration to ~/.eqvault/config.yaml"""
    config_path = config_path or get_config_path()
    config_path.parent.mkdir(parents=True, exist_ok=True)

    data = {name: getattr(config, name) for name in _FIELDS}

    # Only save optional fields if they exist
    for optional in ("device_id", "sync_endpoint"):
        if not data[optional]:
            del data[optional]

    with open(config_path, "w") as f:
        yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False)


def ensure_device_id(config: EQVaultConfig, config_path: Optional[Path] = None) -> str:
    """Return the configured device id, generating and saving one on first use."""
    if not config.device_id:
        config.device_id = f"device_{uuid4().hex}"
        save_config(config, config_path)
        logger.info("device_id_created")
    return config.device_id


def build_sync_config(
    config: EQVaultConfig,
    device_key_fingerprint: str,
    consent: bool,
) -> SelectiveSyncConfig:
    """Translate the file config plus a per-session consent answer into a SelectiveSyncConfig."""
    return SelectiveSyncConfig(
        sync_patterns=config.sync_preferences(),
        device_key_fingerprint=device_key_fingerprint,
        require_explicit_consent=consent is True and config.allow_selective_sync,
        max_sync_frequency=config.max_sync_frequency,
        sync_only_on_wifi=config.sync_only_on_wifi,
        allow_anonymous_aggregation=config.allow_anonymous_aggregation,
    )


def get_example_config() -> str:
    """Return an example config.yaml content."""
    lines = [
        "# EQVault Configuration",
        "# Location: ~/.eqvault/config.yaml",
        "",
        "# === PRIVACY CONTROLS ===",
        "# Nothing leaves this device unless enabled here AND consented per call.",
        "allow_local_processing: true",
        "allow_anonymous_aggregation: false",
        "allow_selective_sync: false",
        "allow_research_participation: false",
        "",
        "# Privacy level for newly detected patterns:",
        "#   device-only | anonymous-aggregate | selective-share | research-contribution",
        "default_privacy_level: device-only",
        "",
        "# === DATA BOUNDARIES ===",
        "retention_period_days: 90",
        "aggregation_threshold: 10",
        "",
        "# === SYNC ===",
        "# sync_endpoint: https://sync.example.org/v1/patterns",
        "sync_only_on_wifi: true",
        "max_sync_frequency: 3600",
        "retry_backoff_seconds: 1.0",
        "",
        "# Per pattern type: enabled + anonymization level (0 = exact, 10 = maximum)",
        "sync_patterns:",
    ]
    for pattern_type in PatternType:
        lines.append(f"  {pattern_type.value}:")
        lines.append("    enabled: false")
        lines.append("    anonymization_level: 10")
    lines += [
        "",
        "# === COACHING ===",
        "#   gentle-guide | direct-mentor | socratic-questioner | supportive-companion",
        "coaching_style: supportive-companion",
        "",
        "# === SECURITY & DIAGNOSTICS ===",
        "kdf_iterations: 100000",
        "log_level: WARNING",
        "enable_privacy_audit_log: true",
        "",
    ]
    return "\n".join(lines)


def create_default_config() -> bool:
    """Create a default config file if it doesn't exist. Returns True if created."""
    config_path = get_config_path()
    if config_path.exists():
        return False
    config_path.write_text(get_example_config())
    return True
