"""
Sweeper - folds settled npub.cash payments into the local balance.

Two sources feed settlements in: this polling loop and the push receiver.
Both hand SettlementEvents to one SettlementMerger, which applies them one at
a time. A settlement id is credited at most once; a failed claim leaves the
id unmarked so the next cycle retries it.

Cycle:
    IDLE -> QUERYING (auth + list quotes) -> MERGING -> IDLE
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from .keys import NostrSigner
from .state import UnspentRecord, SettlementEvent, SETTLED

logger = logging.getLogger("Sweeper")

IDLE = "idle"
QUERYING = "querying"
MERGING = "merging"


class ClaimError(Exception):
    """A settled payment could not be moved into the wallet."""


class Claimer:
    """Turns a settled payment into unspent records held by the wallet."""

    async def claim(self, event):
        raise NotImplementedError


class RecordingClaimer(Claimer):
    """
    Books the settled amount as one record redeemable at the payment
    service's mint. The record id is derived from the settlement id, so the
    same payment always maps to the same record.
    """

    def __init__(self, mint_url):
        self.mint_url = mint_url

    async def claim(self, event):
        if event.amount <= 0:
            raise ClaimError(f"Settlement {event.id} has no positive amount")
        return [UnspentRecord(
            id=f"npc:{event.id}",
            amount=event.amount,
            mint=self.mint_url,
            extra={"source": event.source, "settled_at": event.at},
        )]


def _resolve(future, result):
    if not future.done():
        future.set_result(result)


class SettlementMerger:
    """Serialised merge worker. `submit` from anywhere; one task applies."""

    def __init__(self, state, claimer, flush):
        self.state = state
        self.claimer = claimer
        self.flush = flush
        self.queue = asyncio.Queue()
        self._merge_lock = asyncio.Lock()
        self._worker = None
        self.closed = False

    @property
    def running(self):
        return self._worker is not None and not self._worker.done()

    def start(self):
        self.closed = False
        if not self.running:
            self._worker = asyncio.create_task(self._run())

    async def stop(self):
        """Stop the worker. Anyone still waiting in `submit` gets False."""
        self.closed = True
        if self._worker is not None:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None
        while not self.queue.empty():
            _, future = self.queue.get_nowait()
            _resolve(future, False)

    async def submit(self, event):
        """Queue `event` and wait for its outcome. True if it was credited."""
        if self.closed:
            logger.debug(f"[Merge] Stopped, dropping {event.id} until next start")
            return False
        if not self.running:
            return await self.merge(event)
        future = asyncio.get_running_loop().create_future()
        await self.queue.put((event, future))
        return await future

    async def _run(self):
        while True:
            event, future = await self.queue.get()
            try:
                result = await self.merge(event)
            except asyncio.CancelledError:
                # stop() landed mid-merge
                _resolve(future, False)
                raise
            except Exception as e:
                logger.warning(f"⚠️  [Merge] {event.id}: {e}")
                result = False
            finally:
                self.queue.task_done()
            _resolve(future, result)

    async def merge(self, event):
        """
        Apply one settlement. Idempotent per `event.id`.

        Returns:
            True if the balance changed.
        """
        if event.status != SETTLED:
            return False

        async with self._merge_lock:
            if self.state.is_processed(event.id):
                logger.debug(f"[Merge] {event.id} already applied")
                return False

            try:
                records = await self.claimer.claim(event)
            except Exception as e:
                logger.warning(f"⚠️  [Merge] Claim failed for {event.id}, will retry: {e}")
                return False

            async with self.state.lock:
                applied = self.state.apply_settlement(event, records)
                balance = self.state.balance()

            if applied:
                logger.info(f"💰 [Merge] +{event.amount} sats ({event.source}, {event.id}). Balance: {balance}")
                await self.flush()
            return applied


@dataclass
class SweepResult:
    found: int = 0
    applied: int = 0
    skipped: int = 0
    deferred: int = 0
    error: Optional[str] = None


class Sweeper:
    def __init__(self, config, client, merger, signer_factory=NostrSigner):
        self.config = config
        self.client = client
        self.merger = merger
        self.signer_factory = signer_factory
        self.phase = IDLE
        self._signer = None
        self.identity_error = None

    def _get_signer(self):
        if self._signer is not None:
            return self._signer
        if not self.config.has_signing_identity:
            reason = "Please set your npub_privkey in config.json"
        else:
            try:
                self._signer = self.signer_factory(self.config.npub_privkey)
                return self._signer
            except ValueError as e:
                reason = f"npub_privkey is malformed: {e}"

        if self.identity_error is None:
            logger.warning(f"[Sweeper] {reason}")
        else:
            logger.debug("[Sweeper] Skipping cycle: no signing identity")
        self.identity_error = reason
        return None

    async def run_once(self):
        """One reconciliation pass. Never raises."""
        if self.phase != IDLE:
            logger.debug("[Sweeper] Previous cycle still running, skipping tick")
            return None

        signer = self._get_signer()
        if signer is None:
            return SweepResult(error=self.identity_error)

        result = SweepResult()
        try:
            self.phase = QUERYING
            auth = await self.client.authenticate(signer)
            quotes = await self.client.list_settlements(auth)

            settled = [q for q in quotes if q["status"] == SETTLED]
            result.found = len(settled)
            logger.info(f"[Sweeper] Found {len(settled)} paid quotes on npub.cash.")

            pending, seen = [], set()
            for q in settled:
                if q["id"] in seen or self.merger.state.is_processed(q["id"]):
                    result.skipped += 1
                    continue
                seen.add(q["id"])
                pending.append(q)

            total = sum(q["amount"] for q in pending)
            if pending and total < self.config.min_balance_to_sweep:
                result.deferred = len(pending)
                logger.info(
                    f"[Sweeper] {total} sats pending, below minimum "
                    f"{self.config.min_balance_to_sweep}. Waiting."
                )
                return result

            self.phase = MERGING
            for q in pending:
                event = SettlementEvent(id=q["id"], amount=q["amount"], status=SETTLED, source="poll")
                if await self.merger.submit(event):
                    result.applied += 1
                else:
                    result.skipped += 1
        except Exception as e:
            logger.warning(f"[Sweeper] Error: {e}")
            result.error = str(e)
        finally:
            self.phase = IDLE
        return result
