import pytest

from nwc_bridge.state import (
    UnspentRecord, SessionDescriptor, SettlementEvent, Snapshot, WalletState,
)


def descriptor(pubkey="aa" * 32, relay="wss://relay.test", nwc_string="nostr+walletconnect://x?relay=r&secret=s"):
    return SessionDescriptor(pubkey, "https://mint.test", ["get_balance"], relay, nwc_string)


@pytest.mark.parametrize("amount", [0, -1, 1.5, True, "10"])
def test_record_amount_must_be_positive_int(amount):
    with pytest.raises(ValueError):
        UnspentRecord("a", amount)


def test_balance_is_sum_of_records(state):
    state.add_utxos([UnspentRecord("a", 10), UnspentRecord("b", 5)])
    assert state.balance() == 15
    assert state.utxo_count == 2


def test_duplicate_record_ids_rejected(state):
    state.add_utxos([UnspentRecord("a", 10)])
    with pytest.raises(ValueError):
        state.add_utxos([UnspentRecord("a", 3)])
    with pytest.raises(ValueError):
        state.add_utxos([UnspentRecord("c", 1), UnspentRecord("c", 2)])
    assert state.balance() == 10


def test_spend_removes_record(state):
    state.add_utxos([UnspentRecord("a", 10), UnspentRecord("b", 5)])
    spent = state.remove_utxo("a")
    assert spent.amount == 10
    assert state.balance() == 5
    assert state.remove_utxo("a") is None


def test_apply_settlement_once(state):
    event = SettlementEvent("q1", 5)
    assert state.apply_settlement(event, [UnspentRecord("npc:q1", 5)])
    assert not state.apply_settlement(event, [UnspentRecord("npc:q1-again", 5)])
    assert state.balance() == 5
    assert state.is_processed("q1")


def test_apply_settlement_with_existing_record_marks_only(state):
    # file written before the processed set existed
    state.add_utxos([UnspentRecord("npc:q1", 5)])
    assert not state.apply_settlement(SettlementEvent("q1", 5), [UnspentRecord("npc:q1", 5)])
    assert state.balance() == 5
    assert state.is_processed("q1")


def test_put_session_keeps_connection_string(state):
    state.put_session(descriptor(nwc_string="original"))
    updated = state.put_session(descriptor(relay="wss://new.relay", nwc_string="regenerated"))

    assert updated.nwc_string == "original"
    assert updated.relay == "wss://new.relay"
    assert state.session_count == 1


def test_revoke_session(state):
    state.put_session(descriptor())
    assert state.revoke_session("aa" * 32) is not None
    assert state.session_count == 0
    assert state.revoke_session("aa" * 32) is None


def test_snapshot_is_a_copy(state):
    state.add_utxos([UnspentRecord("a", 10)])
    snap = state.snapshot()
    state.add_utxos([UnspentRecord("b", 1)])
    assert snap.balance == 10


def test_snapshot_from_dict_keeps_unknown_fields():
    data = {
        "utxos": [{"id": "a", "amount": 10, "secret": "s", "C": "02"}],
        "nwc_info": {"aa" * 32: {"mymint": "m", "permissions": ["pay_invoice"], "relay": "r",
                                 "nwc_string": "n", "balance": 100}},
    }
    snap = Snapshot.from_dict(data)
    out = snap.to_dict()
    assert out["utxos"][0]["secret"] == "s"
    assert out["nwc_info"]["aa" * 32]["balance"] == 100


def test_proofs_sharing_keyset_id_are_distinct(state):
    state.add_utxos([
        UnspentRecord("009a1f293253e41e", 8, extra={"secret": "s1", "C": "02aa"}),
        UnspentRecord("009a1f293253e41e", 2, extra={"secret": "s2", "C": "02bb"}),
    ])
    assert state.balance() == 10
    assert state.remove_utxo("s1").amount == 8
    assert state.balance() == 2


def test_restore_keeps_records_with_clashing_keys(state, caplog):
    snapshot = Snapshot.from_dict({"utxos": [
        {"id": "009a1f293253e41e", "amount": 8},
        {"id": "009a1f293253e41e", "amount": 2},
    ]})

    with caplog.at_level("ERROR", logger="Persistence"):
        state.restore(snapshot)

    assert state.balance() == 10
    assert len(state.snapshot().to_dict()["utxos"]) == 2
    assert "Duplicate UTXO key" in caplog.text
