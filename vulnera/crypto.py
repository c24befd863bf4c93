"""Wallet identity and request signing for the Vulnera API.

Provides:
- Ed25519 keypairs mapped to base58 Solana wallet addresses
- Signed API requests (METHOD\\nPATH\\nTIMESTAMP\\nBODY, hex signature)
- Wallet-ownership proofs (base64 detached signature over a message)
- Replay protection over the rate limiter's `limits` storage

Dependencies: base64, time, cryptography, solders, limits
"""

import base64
import binascii
import time as _time

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)
from limits import RateLimitItemPerSecond
from solders.pubkey import Pubkey

from vulnera.protocol import REQUEST_MAX_AGE

WALLET_HEADER = "X-Vulnera-Wallet"
TIMESTAMP_HEADER = "X-Vulnera-Timestamp"
SIGNATURE_HEADER = "X-Vulnera-Signature"

# Future timestamps within this skew are accepted
CLOCK_SKEW = 30


# ---------------------------------------------------------------------------
# Ed25519 identity
# ---------------------------------------------------------------------------

def generate_wallet_keypair() -> tuple[bytes, str]:
    """Generate a new Ed25519 keypair. Returns (privkey_bytes, wallet_address)."""
    privkey = Ed25519PrivateKey.generate()
    priv_bytes = privkey.private_bytes(
        serialization.Encoding.Raw,
        serialization.PrivateFormat.Raw,
        serialization.NoEncryption(),
    )
    return priv_bytes, privkey_to_wallet(priv_bytes)


def privkey_to_wallet(privkey_bytes: bytes) -> str:
    """Base58 wallet address of a 32-byte Ed25519 private key."""
    pub = Ed25519PrivateKey.from_private_bytes(privkey_bytes).public_key().public_bytes(
        serialization.Encoding.Raw,
        serialization.PublicFormat.Raw,
    )
    return str(Pubkey.from_bytes(pub))


def wallet_to_pubkey(wallet: str) -> bytes:
    """Raw 32-byte public key of a base58 wallet. Raises ValueError."""
    return bytes(Pubkey.from_string(wallet))


def ed25519_sign(privkey_bytes: bytes, data: bytes) -> bytes:
    return Ed25519PrivateKey.from_private_bytes(privkey_bytes).sign(data)


def ed25519_verify(pubkey_bytes: bytes, data: bytes, signature: bytes) -> bool:
    """Verify Ed25519 signature. Returns True if valid."""
    try:
        pubkey = Ed25519PublicKey.from_public_bytes(pubkey_bytes)
        pubkey.verify(signature, data)
        return True
    except (InvalidSignature, ValueError):
        return False


# ---------------------------------------------------------------------------
# Wallet ownership
# ---------------------------------------------------------------------------

def sign_wallet_message(privkey_bytes: bytes, message: str) -> str:
    """Detached signature over message, base64 (what a browser wallet returns)."""
    return base64.b64encode(ed25519_sign(privkey_bytes, message.encode("utf-8"))).decode("ascii")


def verify_wallet_signature(wallet: str, message: str, signature_b64: str) -> bool:
    """Check that `wallet` signed `message`. Malformed input is just False."""
    try:
        pubkey = wallet_to_pubkey(wallet)
        signature = base64.b64decode(signature_b64, validate=True)
    except (ValueError, binascii.Error):
        return False
    if len(signature) != 64:
        return False
    return ed25519_verify(pubkey, message.encode("utf-8"), signature)


# ---------------------------------------------------------------------------
# Signed API requests
# ---------------------------------------------------------------------------

class ReplayGuard:
    """Reject request signatures seen while they could still verify.

    Each signature gets a one-hit window of `ttl` seconds in the given
    `limits` strategy, so every worker sharing its storage sees the same set
    of signatures.
    """

    def __init__(self, limiter, ttl: int = REQUEST_MAX_AGE + CLOCK_SKEW):
        self._limiter = limiter
        self._ttl = ttl
        self._item = RateLimitItemPerSecond(1, ttl)

    def check_and_record(self, sig_hex: str) -> bool:
        """Return False if sig was already seen, True if new (and record it)."""
        return self._limiter.hit(self._item, "replay", sig_hex)


def sign_request(
    privkey_bytes: bytes,
    method: str,
    path: str,
    body: str = "",
    timestamp: float | None = None,
) -> dict:
    """Sign an API request with the wallet key. Returns headers to include.

    Signs: METHOD\\nPATH\\nTIMESTAMP\\nBODY
    """
    ts = str(int(_time.time() if timestamp is None else timestamp))
    payload = f"{method}\n{path}\n{ts}\n{body}".encode("utf-8")
    return {
        WALLET_HEADER: privkey_to_wallet(privkey_bytes),
        TIMESTAMP_HEADER: ts,
        SIGNATURE_HEADER: ed25519_sign(privkey_bytes, payload).hex(),
    }


def verify_request(
    method: str,
    path: str,
    body: str,
    timestamp: str,
    signature: str,
    wallet: str,
) -> tuple[bool, str]:
    """Verify a wallet-signed API request.

    Returns (ok, error_message).
    """
    try:
        ts = int(timestamp)
    except (ValueError, TypeError):
        return False, "invalid timestamp"

    age = _time.time() - ts
    if age < -CLOCK_SKEW:
        return False, f"request timestamp is in the future (skew={int(-age)}s)"
    if age > REQUEST_MAX_AGE:
        return False, f"request expired (age={int(age)}s, max={REQUEST_MAX_AGE}s)"

    try:
        pubkey_bytes = wallet_to_pubkey(wallet)
    except ValueError:
        return False, "invalid wallet address"

    try:
        sig_bytes = bytes.fromhex(signature)
    except ValueError:
        return False, "invalid signature hex"

    payload = f"{method}\n{path}\n{timestamp}\n{body}".encode("utf-8")
    if not ed25519_verify(pubkey_bytes, payload, sig_bytes):
        return False, "invalid signature"

    return True, ""
