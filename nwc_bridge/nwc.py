"""
NWC Provider
============
Mints and re-opens Nostr Wallet Connect (NIP-47) connections.

A connection string is generated exactly once per remote identity. Re-opening
a known identity hands back the stored string and never mints a new secret,
otherwise the app holding the old string would be locked out.

The relay wire protocol lives behind `relay_connector`: an optional async
callable `(descriptor) -> None` that subscribes the wallet service on the
relay. Without one, sessions are tracked as live locally only.
"""

import logging
from dataclasses import dataclass
from urllib.parse import urlencode, urlparse, parse_qs

from . import keys
from .state import DEFAULT_PERMISSIONS, SessionDescriptor

logger = logging.getLogger("NWC")

NWC_SCHEME = "nostr+walletconnect"


class SessionError(Exception):
    """An NWC session could not be created or re-opened."""


@dataclass(frozen=True)
class NWCConnection:
    pubkey: str       # app (remote) public key, the registry key
    nwc_string: str
    service_secret: str = ""   # wallet-side key, persisted with the descriptor


def build_connection_string(wallet_pubkey, relay, app_secret):
    return f"{NWC_SCHEME}://{wallet_pubkey}?{urlencode({'relay': relay, 'secret': app_secret})}"


def parse_connection_string(nwc_string):
    """Split a NIP-47 URI into (wallet_pubkey, relay, app_secret)."""
    parsed = urlparse(nwc_string)
    if parsed.scheme != NWC_SCHEME or not parsed.netloc:
        raise ValueError(f"Not an NWC connection string: {nwc_string[:30]}...")
    query = parse_qs(parsed.query)
    try:
        return parsed.netloc, query["relay"][0], query["secret"][0]
    except (KeyError, IndexError):
        raise ValueError("NWC connection string missing relay or secret")


class WalletConnectProvider:
    """Interface for the remote-control protocol collaborator."""

    async def create_session(self, mint, permissions, relay, existing=None):
        """
        Open a session.

        Args:
            existing: SessionDescriptor of a known identity to re-open. When
                given, the returned connection string must equal
                `existing.nwc_string`.

        Returns:
            NWCConnection
        """
        raise NotImplementedError

    async def close_session(self, pubkey):
        raise NotImplementedError

    async def close(self):
        pass


class KeypairWalletConnect(WalletConnectProvider):
    def __init__(self, relay_connector=None):
        self.relay_connector = relay_connector
        self.live = {}   # app pubkey -> SessionDescriptor

    async def create_session(self, mint, permissions, relay, existing=None):
        permissions = list(permissions or DEFAULT_PERMISSIONS)

        if existing is not None:
            if not existing.nwc_string:
                raise SessionError(f"Stored session {existing.pubkey[:12]}... has no connection string")
            service_secret = existing.extra.get("service_secret", "")
            try:
                wallet_pubkey, _, app_secret = parse_connection_string(existing.nwc_string)
                if keys.public_key_hex(app_secret) != existing.pubkey:
                    raise ValueError(f"Connection string does not belong to {existing.pubkey[:12]}...")
                if service_secret and keys.public_key_hex(service_secret) != wallet_pubkey:
                    raise ValueError(f"Stored wallet key does not match {existing.pubkey[:12]}...")
            except ValueError as e:
                raise SessionError(str(e))
            descriptor = existing.with_metadata(relay=relay, permissions=permissions)
            if existing.pubkey in self.live:
                logger.debug(f"🔁 Session {existing.pubkey[:12]}... already live")
                return NWCConnection(existing.pubkey, existing.nwc_string, service_secret)
            await self._connect(descriptor)
            logger.info(f"🔌 Re-opened NWC session {existing.pubkey[:12]}... on {relay}")
            return NWCConnection(existing.pubkey, existing.nwc_string, service_secret)

        app_secret = keys.generate_secret()
        wallet_secret = keys.generate_secret()
        app_pubkey = keys.public_key_hex(app_secret)
        nwc_string = build_connection_string(keys.public_key_hex(wallet_secret), relay, app_secret)
        descriptor = SessionDescriptor(
            pubkey=app_pubkey,
            mymint=mint,
            permissions=permissions,
            relay=relay,
            nwc_string=nwc_string,
            extra={"service_secret": wallet_secret},
        )
        await self._connect(descriptor)
        logger.info(f"✨ Created NWC session {app_pubkey[:12]}... for {mint}")
        return NWCConnection(app_pubkey, nwc_string, wallet_secret)

    async def _connect(self, descriptor):
        if self.relay_connector is not None:
            try:
                await self.relay_connector(descriptor)
            except Exception as e:
                raise SessionError(f"Relay connect failed for {descriptor.pubkey[:12]}...: {e}")
        self.live[descriptor.pubkey] = descriptor

    async def close_session(self, pubkey):
        self.live.pop(pubkey, None)

    async def close(self):
        self.live.clear()
