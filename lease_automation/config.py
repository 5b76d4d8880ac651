"""
Lease Automation -- Configuration Module

Centralizes all configuration for the automation scheduling and delivery core.
Loads defaults from dataclasses, then overlays any overrides from config.yaml.

Usage:
    from lease_automation.config import get_config
    cfg = get_config()                         # loads config.yaml if present
    cfg = get_config("path/to/custom.yaml")    # loads a specific file
    print(cfg.scheduler.trigger_hour)          # 9
    print(cfg.queue.max_attempts)              # 3
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import yaml

# ---------------------------------------------------------------------------
# Path constants -- everything relative to the project root
# ---------------------------------------------------------------------------
_THIS_DIR = Path(__file__).resolve().parent          # lease_automation/
PROJECT_ROOT = _THIS_DIR.parent                       # repository root
DEFAULT_CONFIG_PATH = PROJECT_ROOT / "config.yaml"

# Floor applied to every scheduler check interval (milliseconds).
MIN_CHECK_INTERVAL_MS = 10_000


# ===================================================================
# 1. Scheduler
# ===================================================================

@dataclass
class SchedulerSettings:
    """Polling cadence and the daily trigger gate."""
    check_interval_ms: int = 60_000
    trigger_hour: int = 9            # local wall-clock hour of the daily pass
    owner_id: str = ""               # automation owner the scheduler acts for

    def __post_init__(self):
        self.owner_id = self.owner_id or os.environ.get("LEASE_OWNER_ID", "")
        self.check_interval_ms = max(int(self.check_interval_ms), MIN_CHECK_INTERVAL_MS)


# ===================================================================
# 2. Local Queue
# ===================================================================

@dataclass
class QueueSettings:
    """Retry and transport settings for the local delivery backend."""
    max_attempts: int = 3
    # 0 = retry on the very next processing pass.
    retry_interval_seconds: int = 0
    # "simulated" or "smtp"
    transport: str = "simulated"
    simulated_success_rate: float = 0.9
    smtp_timeout_seconds: float = 30.0


# ===================================================================
# 3. Templates
# ===================================================================

@dataclass
class TemplateSettings:
    """Template cache lifetime and substitution policy."""
    cache_ttl_seconds: int = 300
    # "keep" leaves unknown {{tokens}} verbatim, "empty" blanks them,
    # "error" raises.
    missing_key_policy: str = "keep"
    seed_defaults: bool = True


# ===================================================================
# 4. Remote Relay
# ===================================================================

@dataclass
class RelaySettings:
    """HTTP relay that performs the actual SMTP handoff remotely.

    An empty URL means no relay: every send goes through the local queue.
    """
    url: str = ""                    # set via env var LEASE_RELAY_URL
    api_key: str = ""                # set via env var LEASE_RELAY_API_KEY
    timeout_seconds: float = 15.0

    def __post_init__(self):
        self.url = self.url or os.environ.get("LEASE_RELAY_URL", "")
        self.api_key = self.api_key or os.environ.get("LEASE_RELAY_API_KEY", "")

    @property
    def enabled(self) -> bool:
        return bool(self.url)


# ===================================================================
# 5. Vault
# ===================================================================

@dataclass
class VaultSettings:
    """Master secret and key-derivation parameters for the vault."""
    master_key: str = ""             # set via env var LEASE_VAULT_KEY
    salt: str = "lease-automation-vault"
    iterations: int = 390_000

    def __post_init__(self):
        self.master_key = self.master_key or os.environ.get("LEASE_VAULT_KEY", "")


# ===================================================================
# 6. Storage
# ===================================================================

@dataclass
class StorageSettings:
    """SQLite files and data inputs (relative to project root unless absolute)."""
    state_db: str = "data/local_state.db"
    vault_db: str = "data/vault.db"
    records_db: str = "data/records.db"
    properties_xlsx: str = "data/properties.xlsx"

    def resolve(self, rel_path: str) -> Path:
        p = Path(rel_path)
        if not p.is_absolute():
            p = PROJECT_ROOT / p
        return p


# ===================================================================
# 7. Execution Engine
# ===================================================================

@dataclass
class EngineSettings:
    """Defaults used while assembling and dispatching an automation run."""
    default_receipt_document_template_id: str = "550e8400-e29b-41d4-a716-446655440003"
    fallback_recipient: str = "recipient@example.com"
    landlord_name: str = "Your landlord"
    fallback_body: str = "Automation executed"
    currency_symbol: str = "$"
    activity_queue_size: int = 256


# ===================================================================
# 8. Logging
# ===================================================================

@dataclass
class LoggingSettings:
    level: str = "INFO"
    format: str = "%(asctime)s | %(levelname)-7s | %(name)s | %(message)s"
    datefmt: str = "%H:%M:%S"


# ===================================================================
# Master Config
# ===================================================================

@dataclass
class LeaseAutomationConfig:
    """Top-level configuration container for the automation core."""
    scheduler: SchedulerSettings = field(default_factory=SchedulerSettings)
    queue: QueueSettings = field(default_factory=QueueSettings)
    templates: TemplateSettings = field(default_factory=TemplateSettings)
    relay: RelaySettings = field(default_factory=RelaySettings)
    vault: VaultSettings = field(default_factory=VaultSettings)
    storage: StorageSettings = field(default_factory=StorageSettings)
    engine: EngineSettings = field(default_factory=EngineSettings)
    logging: LoggingSettings = field(default_factory=LoggingSettings)


# ===================================================================
# YAML Loading
# ===================================================================

def _apply_yaml_to_config(cfg: LeaseAutomationConfig, data: dict) -> None:
    """Apply a parsed YAML dict onto a LeaseAutomationConfig instance."""
    _section_map = {
        "scheduler": cfg.scheduler,
        "queue": cfg.queue,
        "templates": cfg.templates,
        "relay": cfg.relay,
        "vault": cfg.vault,
        "storage": cfg.storage,
        "engine": cfg.engine,
        "logging": cfg.logging,
    }

    for section_key, section_obj in _section_map.items():
        if section_key in data and isinstance(data[section_key], dict):
            for attr, val in data[section_key].items():
                if hasattr(section_obj, attr):
                    setattr(section_obj, attr, val)

    # YAML may lower the interval below the floor; re-apply it.
    cfg.scheduler.check_interval_ms = max(
        int(cfg.scheduler.check_interval_ms), MIN_CHECK_INTERVAL_MS
    )


def get_config(yaml_path: Optional[str | Path] = None) -> LeaseAutomationConfig:
    """Build a LeaseAutomationConfig, optionally overlaying values from a YAML file.

    Args:
        yaml_path: Path to a config.yaml file.  If None, looks for the
                   default config.yaml at the project root.  If that file
                   doesn't exist, returns pure defaults.

    Returns:
        Fully populated LeaseAutomationConfig instance.
    """
    cfg = LeaseAutomationConfig()

    path = Path(yaml_path) if yaml_path else DEFAULT_CONFIG_PATH
    if path.exists():
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        _apply_yaml_to_config(cfg, data)

    return cfg
