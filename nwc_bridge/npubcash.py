"""
npub.cash client - the payment-status collaborator.

Authentication is NIP-98: a signed kind-27235 event for the exact URL is
exchanged for a short-lived JWT, which then authorises the quote listing.
"""

import logging
from dataclasses import dataclass

import httpx

from .state import SETTLED, PENDING, UNKNOWN

logger = logging.getLogger("NpubCash")

AUTH_PATH = "/api/v2/auth/nip98"
QUOTES_PATH = "/api/v2/wallet/quotes"

# npub.cash quote state -> settlement status
QUOTE_STATES = {
    "PAID": SETTLED,
    "UNPAID": PENDING,
    "PENDING": PENDING,
}


class SettlementServiceError(Exception):
    """npub.cash rejected a request or returned something unusable."""


@dataclass(frozen=True)
class NpubCashAuth:
    token: str
    pubkey: str


def settlement_status(state):
    return QUOTE_STATES.get((state or "").upper(), UNKNOWN)


class NpubCashClient:
    def __init__(self, base_url, timeout=10.0, transport=None):
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self._transport = transport   # httpx transport override (tests)

    def _client(self):
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    @staticmethod
    def _unwrap(resp, what):
        if resp.status_code != 200:
            raise SettlementServiceError(f"{what} failed: {resp.status_code} {resp.text[:100]}")
        try:
            body = resp.json()
        except ValueError:
            raise SettlementServiceError(f"{what} returned non-JSON body")
        if not isinstance(body, dict) or body.get("error"):
            message = body.get("message") if isinstance(body, dict) else body
            raise SettlementServiceError(f"{what} error: {message}")
        return body.get("data") or {}

    async def authenticate(self, signer):
        """Trade a NIP-98 assertion for a bearer token."""
        url = f"{self.base_url}{AUTH_PATH}"
        headers = {"Authorization": signer.auth_header(url, "GET")}
        async with self._client() as client:
            resp = await client.get(url, headers=headers)
        data = self._unwrap(resp, "Auth")
        token = data.get("token")
        if not token:
            raise SettlementServiceError("Auth response carried no token")
        return NpubCashAuth(token=token, pubkey=signer.pubkey)

    async def list_settlements(self, auth):
        """
        All known quotes for the authenticated identity, in service order.

        Returns:
            list of {"id", "amount", "status", "state"} dicts.
        """
        url = f"{self.base_url}{QUOTES_PATH}"
        headers = {"Authorization": f"Bearer {auth.token}"}
        async with self._client() as client:
            resp = await client.get(url, headers=headers)
        data = self._unwrap(resp, "Quote list")

        quotes = data.get("quotes", [])
        if not isinstance(quotes, list):
            raise SettlementServiceError("Quote list is not a list")

        records = []
        for q in quotes:
            try:
                records.append({
                    "id": str(q["quoteId"]),
                    "amount": int(q["amount"]),
                    "state": q.get("state"),
                    "status": settlement_status(q.get("state")),
                })
            except (KeyError, TypeError, ValueError) as e:
                logger.debug(f"Skipping malformed quote {q!r}: {e}")
        return records
