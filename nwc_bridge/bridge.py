"""
Cashu-NWC Bridge
================
Lifecycle controller tying persistence, NWC sessions, the npub.cash sweeper
and the push receiver together around one WalletState.

start():  load -> reconcile sessions -> receiver -> autosave timer
          -> sweep timer -> one sweep now -> RUNNING
stop():   cancel timers -> final save -> release receiver -> STOPPED

Push payments enter through `bridge.bus`. The bridge does not own a
npub.cash socket; pass a PaymentEventBus that something publishes to, or
rely on the sweeper alone.

Usage:
    bridge = Bridge(load_config("config.json", ".env"), db_path="db.json")
    await bridge.start()
    ...
    await bridge.stop()
"""

import asyncio
import logging
from enum import Enum
from pathlib import Path

from .nwc import KeypairWalletConnect
from .npubcash import NpubCashClient
from .receiver import PaymentEventBus, PaymentReceiver
from .sessions import SessionManager
from .state import WalletState
from .store import StateStore
from .sweeper import RecordingClaimer, SettlementMerger, Sweeper

logger = logging.getLogger("Bridge")

DEFAULT_DB_FILE = "db.json"


class BridgeState(Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"


def bridge_status(db_path, config):
    """Status from the persisted snapshot. The bridge does not need to run."""
    snapshot = StateStore(db_path).load()
    sessions = list(snapshot.nwc_info.values())
    return {
        "connected": bool(sessions),
        "primaryConnectionString": sessions[0].nwc_string if sessions else None,
        "backingLedgerUrl": config.mint_url,
        "utxoCount": len(snapshot.utxos),
        "sessionCount": len(sessions),
        "balance": snapshot.balance,
    }


class Bridge:
    def __init__(self, config, db_path=None, provider=None, settlements=None, bus=None, claimer=None):
        self.config = config
        self.store = StateStore(db_path or Path.cwd() / DEFAULT_DB_FILE)
        self.state = WalletState()

        self.provider = provider or KeypairWalletConnect()
        self.settlements = settlements or NpubCashClient(config.npub_cash_url, timeout=config.request_timeout)
        self.bus = bus or PaymentEventBus()

        self.merger = SettlementMerger(self.state, claimer or RecordingClaimer(config.npub_cash_url), self.flush)
        self.sessions = SessionManager(self.state, self.provider, config, self.flush)
        self.receiver = PaymentReceiver(config, self.bus, self.merger)
        self.sweeper = Sweeper(config, self.settlements, self.merger)

        self.lifecycle = BridgeState.STOPPED
        self._start_lock = asyncio.Lock()
        self._stopping = False
        self._tasks = []

    @property
    def balance(self):
        return self.state.balance()

    async def flush(self):
        """Write the current state to disk. Errors are logged, not raised."""
        async with self.state.lock:
            snapshot = self.state.snapshot()
        try:
            self.store.save(snapshot)
            return True
        except OSError as e:
            logger.error(f"❌ [Persistence] Save failed: {e}")
            return False

    async def _every(self, interval, job, name):
        while not self._stopping:
            await asyncio.sleep(interval)
            if self._stopping:
                break
            try:
                await job()
            except Exception as e:
                logger.error(f"🔥 [{name}] {e}")

    async def start(self):
        """Bring the bridge up. Returns False if it was already started."""
        async with self._start_lock:
            if self.lifecycle != BridgeState.STOPPED:
                logger.debug("[System] start() ignored, bridge not stopped")
                return False
            self.lifecycle = BridgeState.STARTING
            self._stopping = False

            snapshot = self.store.load()
            async with self.state.lock:
                self.state.restore(snapshot)

            try:
                await self.sessions.reconcile()
            except Exception as e:
                logger.error(f"❌ [Sessions] NWC setup failed: {e}")

            if self._stopping:
                return False

            self.merger.start()
            self.receiver.start()
            self._tasks = [
                asyncio.create_task(self._every(self.config.save_interval, self.flush, "Autosave")),
                asyncio.create_task(self._every(self.config.sweep_interval, self.sweeper.run_once, "Sweeper")),
            ]
            await self.sweeper.run_once()

            if self._stopping:
                return False
            self.lifecycle = BridgeState.RUNNING
            logger.info("[System] Bridge is running.")
            return True

    async def stop(self):
        """
        Cancel timers, save once, release the receiver. Safe when never started.

        Returns False when already stopped or another stop() is in progress.
        """
        if self.lifecycle in (BridgeState.STOPPED, BridgeState.STOPPING):
            return False
        self.lifecycle = BridgeState.STOPPING
        self._stopping = True

        for task in self._tasks:
            task.cancel()
        self._tasks = []

        await self.merger.stop()
        await self.flush()
        self.receiver.stop()
        try:
            await self.provider.close()
        except Exception as e:
            logger.warning(f"⚠️  [NWC] Provider close failed: {e}")

        self.lifecycle = BridgeState.STOPPED
        logger.info("[System] Bridge stopped.")
        return True

    def status(self):
        return bridge_status(self.store.path, self.config)
