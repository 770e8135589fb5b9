"""
Bridge Configuration
====================
The single options object consumed by the bridge core.

Sources, lowest priority first:
    1. Built-in defaults
    2. config.json (optional)
    3. Environment variables (a .env file is loaded into the environment first)

Usage:
    from nwc_bridge.config import load_config

    config = load_config("config.json", env_file=".env")
    if not config.has_signing_identity:
        print("Sweeper and receiver will be skipped")
"""

import os
import json
import logging
from pathlib import Path
from dataclasses import dataclass, asdict, replace
from typing import Optional

from dotenv import load_dotenv

logger = logging.getLogger("Config")

# --- DEFAULTS ---
DEFAULT_MINT = "https://mint.minibits.cash/Bitcoin"
NPUB_CASH_URL = "https://npubx.cash"
DEFAULT_RELAY = "wss://relay.damus.io"
PLACEHOLDER_KEY = "nsec1..."

# Env var -> (field, parser)
ENV_OVERRIDES = {
    "NPUB_PRIVKEY": ("npub_privkey", str),
    "MINT_URL": ("mint_url", str),
    "NPUB_CASH_URL": ("npub_cash_url", str),
    "NWC_RELAY": ("nwc_relay", str),
    "SWEEP_INTERVAL_MS": ("sweep_interval_ms", int),
    "SAVE_INTERVAL_MS": ("save_interval_ms", int),
    "MIN_BALANCE_TO_SWEEP": ("min_balance_to_sweep", int),
}


# Numeric fields accept JSON numbers or numeric strings
NUMERIC_FIELDS = {
    "sweep_interval_ms": int,
    "save_interval_ms": int,
    "min_balance_to_sweep": int,
    "request_timeout": float,
}

@dataclass(frozen=True)
class BridgeConfig:
    npub_privkey: Optional[str] = None   # nsec or hex; None disables sweeper + receiver
    mint_url: str = DEFAULT_MINT
    npub_cash_url: str = NPUB_CASH_URL
    nwc_relay: str = DEFAULT_RELAY
    sweep_interval_ms: int = 60000
    save_interval_ms: int = 5000
    min_balance_to_sweep: int = 100      # sats
    request_timeout: float = 10.0        # seconds, per external call

    def __post_init__(self):
        if self.sweep_interval_ms <= 0:
            raise ValueError(f"sweep_interval_ms must be positive, got {self.sweep_interval_ms}")
        if self.save_interval_ms <= 0:
            raise ValueError(f"save_interval_ms must be positive, got {self.save_interval_ms}")
        if self.min_balance_to_sweep < 0:
            raise ValueError(f"min_balance_to_sweep must be >= 0, got {self.min_balance_to_sweep}")

    @property
    def has_signing_identity(self):
        """False when the key is missing or still the placeholder."""
        key = (self.npub_privkey or "").strip()
        return bool(key) and not key.startswith(PLACEHOLDER_KEY)

    @property
    def sweep_interval(self):
        return self.sweep_interval_ms / 1000.0

    @property
    def save_interval(self):
        return self.save_interval_ms / 1000.0

    @classmethod
    def from_dict(cls, data):
        """Build from a plain dict, ignoring unknown keys."""
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        for name, parse in NUMERIC_FIELDS.items():
            if name in known:
                value = known[name]
                if isinstance(value, bool):
                    raise ValueError(f"Invalid value for {name}: {value!r}")
                try:
                    known[name] = parse(value)
                except (TypeError, ValueError):
                    raise ValueError(f"Invalid value for {name}: {value!r}")
        return cls(**known)

    @classmethod
    def from_file(cls, path):
        """Read a JSON config. A missing file yields the defaults."""
        path = Path(path)
        if not path.exists():
            logger.info(f"No config file at {path}, using defaults")
            return cls()
        with open(path, 'r') as f:
            data = json.load(f)
        if not isinstance(data, dict):
            raise ValueError(f"Config file {path} must contain a JSON object")
        return cls.from_dict(data)

    def from_env(self, environ=None):
        """Return a copy with environment overrides applied."""
        environ = os.environ if environ is None else environ
        changes = {}
        for var, (field_name, parse) in ENV_OVERRIDES.items():
            value = environ.get(var)
            if value:
                try:
                    changes[field_name] = parse(value)
                except ValueError:
                    raise ValueError(f"Invalid value for {var}: {value!r}")
        return replace(self, **changes) if changes else self

    def to_dict(self, redact=True):
        data = asdict(self)
        if redact and data.get("npub_privkey"):
            data["npub_privkey"] = data["npub_privkey"][:8] + "..."
        return data


def load_config(config_path=None, env_file=None):
    """
    Load .env into the process environment, then layer file and env on defaults.
    """
    if env_file:
        env_path = Path(env_file).resolve()
        if env_path.exists():
            load_dotenv(dotenv_path=env_path, override=True)
            logger.info(f"✅ .env loaded from {env_path}")
        else:
            logger.warning(f"⚠️  .env not found at {env_path}")

    config = BridgeConfig.from_file(config_path) if config_path else BridgeConfig()
    config = config.from_env()

    if not config.has_signing_identity:
        logger.warning("⚠️  npub_privkey not set - sweeper and receiver will be skipped")
    return config
