"""
Wallet State
============
In-memory working copy of the wallet: unspent records, NWC session registry
and the set of settlement ids already folded into the balance.

One WalletState is owned by the Bridge and handed to every component.
All mutations go through `async with state.lock` so a merge and a flush never
see a half-applied update.
"""

import time
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set

SETTLED = "settled"
PENDING = "pending"
UNKNOWN = "unknown"

logger = logging.getLogger("Persistence")

DEFAULT_PERMISSIONS = [
    "pay_invoice",
    "get_balance",
    "make_invoice",
    "lookup_invoice",
    "list_transactions",
    "get_info",
]


@dataclass(frozen=True)
class UnspentRecord:
    id: str
    amount: int
    mint: str = ""
    extra: dict = field(default_factory=dict, compare=False)

    def __post_init__(self):
        if not self.id:
            raise ValueError("UnspentRecord needs an id")
        if isinstance(self.amount, bool) or not isinstance(self.amount, int) or self.amount <= 0:
            raise ValueError(f"UnspentRecord amount must be a positive int, got {self.amount!r}")

    @classmethod
    def from_dict(cls, data):
        extra = {k: v for k, v in data.items() if k not in ("id", "amount", "mint")}
        return cls(id=str(data["id"]), amount=data["amount"], mint=data.get("mint", ""), extra=extra)

    @property
    def key(self):
        """Local identity. Cashu proofs share a keyset `id`, their `secret` is unique."""
        return self.extra.get("secret") or self.id

    def to_dict(self):
        data = dict(self.extra)
        data.update({"id": self.id, "amount": self.amount})
        if self.mint:
            data["mint"] = self.mint
        return data


@dataclass(frozen=True)
class SessionDescriptor:
    pubkey: str                 # remote identity, registry key
    mymint: str
    permissions: List[str]
    relay: str
    nwc_string: str             # generated once, never regenerated
    extra: dict = field(default_factory=dict, compare=False)

    @classmethod
    def from_dict(cls, pubkey, data):
        extra = {k: v for k, v in data.items()
                 if k not in ("mymint", "permissions", "relay", "nwc_string")}
        return cls(
            pubkey=pubkey,
            mymint=data.get("mymint", ""),
            permissions=list(data.get("permissions") or DEFAULT_PERMISSIONS),
            relay=data.get("relay", ""),
            nwc_string=data.get("nwc_string", ""),
            extra=extra,
        )

    def to_dict(self):
        data = dict(self.extra)
        data.update({
            "mymint": self.mymint,
            "permissions": list(self.permissions),
            "relay": self.relay,
            "nwc_string": self.nwc_string,
        })
        return data

    def with_metadata(self, relay=None, permissions=None):
        """Copy with updated relay/permissions. The connection string is kept."""
        return SessionDescriptor(
            pubkey=self.pubkey,
            mymint=self.mymint,
            permissions=list(permissions) if permissions is not None else list(self.permissions),
            relay=relay if relay is not None else self.relay,
            nwc_string=self.nwc_string,
            extra=dict(self.extra),
        )


@dataclass
class Snapshot:
    utxos: List[UnspentRecord] = field(default_factory=list)
    nwc_info: Dict[str, SessionDescriptor] = field(default_factory=dict)
    processed: Set[str] = field(default_factory=set)

    @classmethod
    def empty(cls):
        return cls()

    @property
    def balance(self):
        return sum(u.amount for u in self.utxos)

    @classmethod
    def from_dict(cls, data):
        if not isinstance(data, dict):
            raise ValueError("Snapshot must be a JSON object")
        utxos = [UnspentRecord.from_dict(u) for u in data.get("utxos") or []]
        nwc_info = {
            pk: SessionDescriptor.from_dict(pk, info)
            for pk, info in (data.get("nwc_info") or {}).items()
        }
        processed = set(data.get("processed_settlements") or [])
        return cls(utxos=utxos, nwc_info=nwc_info, processed=processed)

    def to_dict(self):
        return {
            "utxos": [u.to_dict() for u in self.utxos],
            "nwc_info": {pk: d.to_dict() for pk, d in self.nwc_info.items()},
            "processed_settlements": sorted(self.processed),
        }


@dataclass(frozen=True)
class SettlementEvent:
    """An externally reported settlement. Folded into UnspentRecords, never stored itself."""
    id: str
    amount: int
    status: str = SETTLED
    source: str = "poll"
    at: float = field(default_factory=time.time)

    @property
    def settled(self):
        return self.status == SETTLED


class WalletState:
    """
    The single owner of mutable wallet data.

    Methods prefixed with `_` or documented as "caller holds lock" do no
    locking of their own; everything else is safe to call without the lock
    only when no other task can run (startup, tests).
    """

    def __init__(self):
        self.lock = asyncio.Lock()
        self._utxos: Dict[str, UnspentRecord] = {}
        self._sessions: Dict[str, SessionDescriptor] = {}
        self._processed: Set[str] = set()

    # --- balance ---

    def balance(self):
        return sum(u.amount for u in self._utxos.values())

    @property
    def utxos(self):
        return list(self._utxos.values())

    @property
    def utxo_count(self):
        return len(self._utxos)

    def add_utxos(self, records):
        """Insert new records. Rejects keys already held (keys are unique)."""
        records = list(records)
        clash = [r.key for r in records if r.key in self._utxos]
        if clash or len({r.key for r in records}) != len(records):
            raise ValueError(f"Duplicate UTXO key(s): {clash or [r.key for r in records]}")
        for r in records:
            self._utxos[r.key] = r

    def remove_utxo(self, key):
        """Spend a record. Records are replaced, never edited."""
        return self._utxos.pop(key, None)

    # --- settlements ---

    def is_processed(self, settlement_id):
        return settlement_id in self._processed

    @property
    def processed(self):
        return frozenset(self._processed)

    def apply_settlement(self, event, records):
        """
        Credit `records` and mark `event.id` applied in one step (caller holds lock).

        Returns False and credits nothing if the id was already applied, or if
        the records it would create are already held (older files carry no
        processed set); the id is marked applied in that case.
        """
        if event.id in self._processed:
            return False
        if any(r.key in self._utxos for r in records):
            self._processed.add(event.id)
            return False
        self.add_utxos(records)
        self._processed.add(event.id)
        return True

    # --- sessions ---

    @property
    def sessions(self):
        return dict(self._sessions)

    @property
    def session_count(self):
        return len(self._sessions)

    def get_session(self, pubkey) -> Optional[SessionDescriptor]:
        return self._sessions.get(pubkey)

    def put_session(self, descriptor):
        """Insert or update metadata. An existing connection string always wins."""
        current = self._sessions.get(descriptor.pubkey)
        if current is not None:
            descriptor = current.with_metadata(relay=descriptor.relay, permissions=descriptor.permissions)
        self._sessions[descriptor.pubkey] = descriptor
        return descriptor

    def revoke_session(self, pubkey):
        return self._sessions.pop(pubkey, None)

    # --- snapshot ---

    def snapshot(self):
        return Snapshot(
            utxos=list(self._utxos.values()),
            nwc_info=dict(self._sessions),
            processed=set(self._processed),
        )

    def restore(self, snapshot):
        self._utxos = {}
        for n, u in enumerate(snapshot.utxos):
            key = u.key
            if key in self._utxos:
                # keep both so the next save writes them back
                logger.error(f"❌ Duplicate UTXO key {key!r} in state file, keeping both records")
                key = f"{key}#{n}"
            self._utxos[key] = u
        self._sessions = dict(snapshot.nwc_info)
        self._processed = set(snapshot.processed)
