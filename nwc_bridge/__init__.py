"""
Cashu-NWC Bridge
================
Exposes a custodial Cashu balance over Nostr Wallet Connect and sweeps
npub.cash payments into it.

Usage:
    from nwc_bridge import Bridge, load_config
"""

from .bridge import Bridge, BridgeState, bridge_status
from .config import BridgeConfig, load_config

__version__ = "0.1.0"
__all__ = ["Bridge", "BridgeState", "BridgeConfig", "bridge_status", "load_config"]
