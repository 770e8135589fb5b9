"""
Nostr key handling and event signing.

Provides the signing collaborator used by the sweeper (NIP-98 HTTP auth against
npub.cash) and the NWC provider (fresh keypairs for new connections).
"""

import json
import time
import base64
import hashlib
import secrets

from bech32 import bech32_decode, bech32_encode, convertbits
from coincurve import PrivateKey

NIP98_KIND = 27235


def decode_secret(key):
    """
    Turn an nsec (bech32) or 64-char hex secret into 32 raw bytes.

    Raises:
        ValueError: if the key is missing or malformed.
    """
    if not key:
        raise ValueError("Empty private key")
    key = key.strip()

    if key.startswith("nsec"):
        hrp, data = bech32_decode(key)
        if hrp != "nsec" or data is None:
            raise ValueError("Invalid nsec encoding")
        raw = convertbits(data, 5, 8, False)
        if raw is None or len(raw) != 32:
            raise ValueError("Invalid nsec payload")
        return bytes(raw)

    try:
        raw = bytes.fromhex(key)
    except ValueError:
        raise ValueError("Private key must be nsec or hex")
    if len(raw) != 32:
        raise ValueError(f"Private key must be 32 bytes, got {len(raw)}")
    return raw


def generate_secret():
    """Fresh 32-byte secret as hex."""
    return PrivateKey().secret.hex()


def public_key_hex(secret):
    """x-only public key (hex) for a secret given as nsec, hex or bytes."""
    raw = secret if isinstance(secret, bytes) else decode_secret(secret)
    return PrivateKey(raw).public_key.format(compressed=True)[1:].hex()


def npub_encode(pubkey_hex):
    data = convertbits(bytes.fromhex(pubkey_hex), 8, 5)
    return bech32_encode("npub", data)


def event_id(event):
    """NIP-01 id: sha256 over the canonical serialisation."""
    payload = [0, event["pubkey"], event["created_at"], event["kind"], event["tags"], event["content"]]
    serialized = json.dumps(payload, separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256(serialized.encode("utf-8")).hexdigest()


def sign_event(event, secret):
    """
    Complete and sign an unsigned event template (kind, tags, content).

    Fills pubkey and created_at when absent. Returns a new dict.
    """
    raw = secret if isinstance(secret, bytes) else decode_secret(secret)
    signed = {
        "kind": event["kind"],
        "tags": event.get("tags", []),
        "content": event.get("content", ""),
        "created_at": event.get("created_at") or int(time.time()),
        "pubkey": public_key_hex(raw),
    }
    signed["id"] = event_id(signed)
    sig = PrivateKey(raw).sign_schnorr(bytes.fromhex(signed["id"]), secrets.token_bytes(32))
    signed["sig"] = sig.hex()
    return signed


class NostrSigner:
    """Signs NIP-98 assertions for one identity. The secret never leaves this object."""

    def __init__(self, key):
        self._secret = decode_secret(key)
        self.pubkey = public_key_hex(self._secret)

    @property
    def npub(self):
        return npub_encode(self.pubkey)

    def sign(self, event):
        return sign_event(event, self._secret)

    def auth_header(self, url, method="GET"):
        """Authorization header value for a NIP-98 request."""
        event = self.sign({
            "kind": NIP98_KIND,
            "tags": [["u", url], ["method", method.upper()]],
            "content": "",
        })
        token = base64.b64encode(json.dumps(event).encode("utf-8")).decode("ascii")
        return f"Nostr {token}"
