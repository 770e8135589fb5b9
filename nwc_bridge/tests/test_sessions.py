from dataclasses import replace

import pytest

from nwc_bridge.nwc import KeypairWalletConnect, SessionError, parse_connection_string
from nwc_bridge.sessions import SessionManager
from nwc_bridge.state import WalletState, DEFAULT_PERMISSIONS
from nwc_bridge import keys


class CountingProvider(KeypairWalletConnect):
    def __init__(self, fail_for=(), **kwargs):
        super().__init__(**kwargs)
        self.created = []
        self.reopened = []
        self.fail_for = set(fail_for)

    async def create_session(self, mint, permissions, relay, existing=None):
        if existing is not None and existing.pubkey in self.fail_for:
            raise SessionError("relay down")
        conn = await super().create_session(mint, permissions, relay, existing=existing)
        (self.reopened if existing is not None else self.created).append(conn.pubkey)
        return conn


async def seeded_state(config, count):
    """A WalletState holding `count` sessions minted by a previous run."""
    state = WalletState()
    for _ in range(count):
        manager = SessionManager(state, KeypairWalletConnect(), config, flush=_noop)
        await manager.provision(config.mint_url, DEFAULT_PERMISSIONS, config.nwc_relay)
    return state


async def _noop():
    return True


@pytest.mark.asyncio
async def test_empty_registry_provisions_one_and_flushes(state, config, flush):
    provider = CountingProvider()
    manager = SessionManager(state, provider, config, flush)

    live = await manager.reconcile()

    assert state.session_count == 1
    assert len(provider.created) == 1
    assert flush.calls == 1
    descriptor = next(iter(state.sessions.values()))
    assert live == {descriptor.pubkey}
    assert descriptor.mymint == config.mint_url
    assert descriptor.relay == config.nwc_relay
    assert descriptor.nwc_string.startswith("nostr+walletconnect://")


@pytest.mark.asyncio
async def test_new_connection_string_matches_identity(state, config, flush):
    manager = SessionManager(state, KeypairWalletConnect(), config, flush)
    await manager.reconcile()

    descriptor = next(iter(state.sessions.values()))
    wallet_pubkey, relay, secret = parse_connection_string(descriptor.nwc_string)
    assert relay == config.nwc_relay
    assert keys.public_key_hex(secret) == descriptor.pubkey
    assert keys.public_key_hex(descriptor.extra["service_secret"]) == wallet_pubkey


@pytest.mark.asyncio
async def test_reconcile_twice_never_provisions_again(state, config, flush):
    provider = CountingProvider()
    manager = SessionManager(state, provider, config, flush)

    await manager.reconcile()
    first = dict(state.sessions)
    await manager.reconcile()

    assert len(provider.created) == 1
    assert state.sessions == first
    assert flush.calls == 1


@pytest.mark.asyncio
async def test_restart_reopens_with_same_string(config, flush):
    state = await seeded_state(config, 2)
    before = {pk: d.nwc_string for pk, d in state.sessions.items()}

    provider = CountingProvider()
    manager = SessionManager(state, provider, config, flush)
    live = await manager.reconcile()

    assert provider.created == []
    assert sorted(provider.reopened) == sorted(before)
    assert live == set(before)
    assert {pk: d.nwc_string for pk, d in state.sessions.items()} == before
    assert flush.calls == 0


@pytest.mark.asyncio
async def test_reopen_is_repeatable(config, flush):
    state = await seeded_state(config, 1)
    provider = CountingProvider()
    descriptor = next(iter(state.sessions.values()))

    a = await provider.create_session(descriptor.mymint, descriptor.permissions, descriptor.relay, existing=descriptor)
    b = await provider.create_session(descriptor.mymint, descriptor.permissions, descriptor.relay, existing=descriptor)

    assert a.nwc_string == b.nwc_string == descriptor.nwc_string


@pytest.mark.asyncio
async def test_one_broken_session_does_not_stop_others(config, flush):
    state = await seeded_state(config, 3)
    broken = next(iter(state.sessions))
    provider = CountingProvider(fail_for={broken})
    manager = SessionManager(state, provider, config, flush)

    live = await manager.reconcile()

    assert broken not in live
    assert len(live) == 2
    # still registered for the next run
    assert state.get_session(broken) is not None


@pytest.mark.asyncio
async def test_tampered_descriptor_is_rejected(config, flush):
    state = await seeded_state(config, 1)
    pubkey, descriptor = next(iter(state.sessions.items()))
    forged = replace(descriptor, nwc_string="nostr+walletconnect://ff?relay=wss%3A%2F%2Fr&secret=" + "11" * 32)

    with pytest.raises(SessionError):
        await KeypairWalletConnect().create_session(forged.mymint, forged.permissions, forged.relay, existing=forged)


@pytest.mark.asyncio
async def test_relay_connector_failure_surfaces_as_session_error(config, flush):
    async def down(descriptor):
        raise ConnectionError("no route")

    provider = KeypairWalletConnect(relay_connector=down)
    with pytest.raises(SessionError):
        await provider.create_session(config.mint_url, None, config.nwc_relay)


@pytest.mark.asyncio
async def test_revoke_removes_exactly_one(config, flush):
    state = await seeded_state(config, 2)
    target, other = list(state.sessions)
    manager = SessionManager(state, KeypairWalletConnect(), config, flush)

    assert await manager.revoke(target)
    assert list(state.sessions) == [other]
    assert flush.calls == 1
    assert not await manager.revoke(target)


@pytest.mark.asyncio
async def test_primary_connection_string(state, config, flush):
    manager = SessionManager(state, KeypairWalletConnect(), config, flush)
    assert manager.primary_connection_string() is None
    descriptor = await manager.provision(config.mint_url, DEFAULT_PERMISSIONS, config.nwc_relay)
    assert manager.primary_connection_string() == descriptor.nwc_string
