"""
Payment Receiver - push path for incoming npub.cash payments.

The receiving side (whatever holds the npub.cash websocket) publishes
"mint-quote:redeemed" events on a PaymentEventBus. PaymentReceiver subscribes
once and hands each payment to the same SettlementMerger the sweeper uses, so
a payment seen by both paths is credited once.
"""

import logging
from urllib.parse import urlparse

from .keys import NostrSigner
from .state import SettlementEvent, SETTLED

logger = logging.getLogger("Receiver")

REDEEMED = "mint-quote:redeemed"


class Subscription:
    def __init__(self, bus, event, handler):
        self._bus = bus
        self.event = event
        self.handler = handler
        self.active = True

    def unsubscribe(self):
        if self.active:
            self._bus._remove(self)
            self.active = False


class PaymentEventBus:
    """Minimal async emitter standing in for the push collaborator."""

    def __init__(self):
        self._subs = {}

    def subscribe(self, event, handler):
        sub = Subscription(self, event, handler)
        self._subs.setdefault(event, []).append(sub)
        return sub

    def _remove(self, sub):
        subs = self._subs.get(sub.event, [])
        if sub in subs:
            subs.remove(sub)

    def subscriber_count(self, event):
        return len(self._subs.get(event, []))

    async def emit(self, event, payload):
        """Deliver to every handler. Handler errors are logged, not raised."""
        for sub in list(self._subs.get(event, [])):
            try:
                await sub.handler(payload)
            except Exception as e:
                logger.error(f"❌ Handler for {event} failed: {e}")


def parse_redeemed(payload):
    """
    Accepts {"amount", "externalId"} or the nested {"quote": {"amount", "quoteId"}}.

    Returns:
        (external_id, amount)
    """
    if "quote" in payload and isinstance(payload["quote"], dict):
        quote = payload["quote"]
        external_id = quote.get("quoteId") or quote.get("id")
        amount = quote.get("amount")
    else:
        external_id = payload.get("externalId")
        amount = payload.get("amount")
    if not external_id:
        raise ValueError("Payment event has no external id")
    amount = int(amount)
    if amount <= 0:
        raise ValueError(f"Payment event amount must be positive, got {amount}")
    return str(external_id), amount


class PaymentReceiver:
    def __init__(self, config, bus, merger):
        self.config = config
        self.bus = bus
        self.merger = merger
        self.subscription = None
        self.address = None

    @property
    def active(self):
        return self.subscription is not None and self.subscription.active

    def start(self):
        """Subscribe to redeemed payments. Returns False when skipped."""
        if self.active:
            return True

        logger.info("[Receiver] Initializing npub.cash receiver...")
        if not self.config.has_signing_identity:
            logger.warning("[Receiver] Skipped: Invalid Private Key")
            return False
        try:
            signer = NostrSigner(self.config.npub_privkey)
        except ValueError as e:
            logger.warning(f"[Receiver] Skipped: Invalid Private Key ({e})")
            return False

        self.subscription = self.bus.subscribe(REDEEMED, self._on_redeemed)
        host = urlparse(self.config.npub_cash_url).netloc or self.config.npub_cash_url
        self.address = f"{signer.npub}@{host}"
        logger.info(f"[Receiver] Listening on: {self.address}")
        return True

    async def _on_redeemed(self, payload):
        try:
            external_id, amount = parse_redeemed(payload)
        except (ValueError, TypeError) as e:
            logger.warning(f"⚠️  [Receiver] Ignoring malformed payment event: {e}")
            return
        logger.info(f"[Receiver] Received Payment: {amount} sats")
        event = SettlementEvent(id=external_id, amount=amount, status=SETTLED, source="push")
        await self.merger.submit(event)

    def stop(self):
        if self.subscription is not None:
            self.subscription.unsubscribe()
            self.subscription = None
