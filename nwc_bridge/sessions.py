"""
Session Registry + Connection Manager.

On startup every persisted NWC descriptor is re-opened with its stored
identity, mint, permissions and relay. With an empty registry exactly one new
connection is provisioned against the default mint/relay and flushed to disk
straight away, so the fresh connection string survives a crash.
"""

import logging

from .nwc import SessionError
from .state import DEFAULT_PERMISSIONS, SessionDescriptor

logger = logging.getLogger("Sessions")


class SessionManager:
    def __init__(self, state, provider, config, flush):
        """
        Args:
            state: WalletState holding the registry.
            provider: WalletConnectProvider.
            config: BridgeConfig (default mint + relay).
            flush: async callable persisting the current state.
        """
        self.state = state
        self.provider = provider
        self.config = config
        self.flush = flush
        self.live = set()

    async def reconcile(self):
        """Re-open or provision sessions. Returns the set of live pubkeys."""
        descriptors = list(self.state.sessions.values())

        if not descriptors:
            logger.info("[Sessions] No NWC connection found. Creating one...")
            await self.provision(self.config.mint_url, DEFAULT_PERMISSIONS, self.config.nwc_relay)
            return set(self.live)

        logger.info(f"[Sessions] Restoring {len(descriptors)} NWC connections...")
        for descriptor in descriptors:
            if descriptor.pubkey in self.live:
                continue
            try:
                conn = await self.provider.create_session(
                    descriptor.mymint,
                    descriptor.permissions,
                    descriptor.relay,
                    existing=descriptor,
                )
                if conn.nwc_string != descriptor.nwc_string:
                    raise SessionError(f"Provider minted a new string for {descriptor.pubkey[:12]}...")
                self.live.add(descriptor.pubkey)
            except Exception as e:
                logger.warning(f"⚠️  [Sessions] Could not restore {descriptor.pubkey[:12]}...: {e}")

        logger.info(f"[Sessions] {len(self.live)}/{len(descriptors)} connections live")
        return set(self.live)

    async def provision(self, mint, permissions, relay):
        """Create a brand-new connection and persist it immediately."""
        conn = await self.provider.create_session(mint, permissions, relay)
        extra = {"service_secret": conn.service_secret} if conn.service_secret else {}
        descriptor = SessionDescriptor(
            pubkey=conn.pubkey,
            mymint=mint,
            permissions=list(permissions),
            relay=relay,
            nwc_string=conn.nwc_string,
            extra=extra,
        )
        async with self.state.lock:
            self.state.put_session(descriptor)
        self.live.add(conn.pubkey)
        await self.flush()

        logger.info("-" * 57)
        logger.info("NWC CONNECTION STRING (Put this in your Nostr App):")
        logger.info(conn.nwc_string)
        logger.info("-" * 57)
        return descriptor

    async def revoke(self, pubkey):
        """Explicit revocation: close, forget and persist. Not used by reconcile."""
        async with self.state.lock:
            removed = self.state.revoke_session(pubkey)
        if removed is None:
            return False
        self.live.discard(pubkey)
        await self.provider.close_session(pubkey)
        await self.flush()
        logger.info(f"🗑️  [Sessions] Revoked {pubkey[:12]}...")
        return True

    def primary_connection_string(self):
        sessions = list(self.state.sessions.values())
        return sessions[0].nwc_string if sessions else None
