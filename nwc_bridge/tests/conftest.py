"""
Shared fixtures for bridge tests.

Collaborators that would touch the network (npub.cash, relays) are replaced
by small in-memory fakes; everything else is the real code.
"""

import pytest
from coincurve import PublicKeyXOnly

from nwc_bridge.config import BridgeConfig
from nwc_bridge.keys import event_id
from nwc_bridge.npubcash import NpubCashAuth
from nwc_bridge.state import WalletState, SETTLED, PENDING

# Any valid secp256k1 scalar works here
TEST_KEY = "5c2d6d098c4713c7723906aa7c2448342743956793e230787479637c2237ec16"


def verify_event(event):
    """Check the id and BIP340 signature of a signed Nostr event."""
    if event_id(event) != event.get("id"):
        return False
    try:
        pub = PublicKeyXOnly(bytes.fromhex(event["pubkey"]))
        return pub.verify(bytes.fromhex(event["sig"]), bytes.fromhex(event["id"]))
    except (ValueError, KeyError):
        return False


class FakeSettlementClient:
    """Stands in for NpubCashClient."""

    def __init__(self, quotes=None, fail=None):
        self.quotes = list(quotes or [])
        self.fail = fail
        self.auth_calls = 0
        self.list_calls = 0

    async def authenticate(self, signer):
        self.auth_calls += 1
        if self.fail is not None:
            raise self.fail
        return NpubCashAuth(token="jwt-test", pubkey=signer.pubkey)

    async def list_settlements(self, auth):
        self.list_calls += 1
        return [dict(q) for q in self.quotes]


def paid(quote_id, amount):
    return {"id": quote_id, "amount": amount, "state": "PAID", "status": SETTLED}


def unpaid(quote_id, amount):
    return {"id": quote_id, "amount": amount, "state": "UNPAID", "status": PENDING}


class FlushCounter:
    def __init__(self):
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        return True


@pytest.fixture
def config():
    return BridgeConfig(
        npub_privkey=TEST_KEY,
        mint_url="https://mint.test/Bitcoin",
        npub_cash_url="https://npubx.test",
        nwc_relay="wss://relay.test",
        sweep_interval_ms=60000,
        save_interval_ms=60000,
        min_balance_to_sweep=0,
    )


@pytest.fixture
def keyless_config(config):
    return BridgeConfig(**{**config.to_dict(redact=False), "npub_privkey": "nsec1..."})


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "db.json"


@pytest.fixture
def state():
    return WalletState()


@pytest.fixture
def flush():
    return FlushCounter()
