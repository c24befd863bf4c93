"""Tests for vulnera crypto utilities (wallet keys, request signing, replay guard)."""

import base64
import sys
import os
import time

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

import pytest

from vulnera.crypto import (
    SIGNATURE_HEADER,
    TIMESTAMP_HEADER,
    WALLET_HEADER,
    ReplayGuard,
    ed25519_sign,
    ed25519_verify,
    generate_wallet_keypair,
    privkey_to_wallet,
    sign_request,
    sign_wallet_message,
    verify_request,
    verify_wallet_signature,
    wallet_to_pubkey,
)
from limits.storage import MemoryStorage
from limits.strategies import FixedWindowRateLimiter
from vulnera.solana import validate_wallet_address


# ---- Ed25519 wallets ----

class TestWalletKeys:
    def test_wallet_is_base58_pubkey(self):
        priv, wallet = generate_wallet_keypair()
        assert len(priv) == 32
        assert 32 <= len(wallet) <= 44
        validate_wallet_address(wallet)

    def test_privkey_to_wallet_deterministic(self):
        priv, wallet = generate_wallet_keypair()
        assert privkey_to_wallet(priv) == wallet

    def test_wallet_roundtrips_to_pubkey(self):
        _, wallet = generate_wallet_keypair()
        assert len(wallet_to_pubkey(wallet)) == 32

    def test_bad_wallet_raises(self):
        with pytest.raises(ValueError):
            wallet_to_pubkey("0OIl-not-base58")

    def test_sign_verify(self):
        priv, wallet = generate_wallet_keypair()
        sig = ed25519_sign(priv, b"payload")
        assert ed25519_verify(wallet_to_pubkey(wallet), b"payload", sig)
        assert not ed25519_verify(wallet_to_pubkey(wallet), b"tampered", sig)

    def test_verify_with_wrong_key(self):
        priv, _ = generate_wallet_keypair()
        _, other = generate_wallet_keypair()
        sig = ed25519_sign(priv, b"payload")
        assert not ed25519_verify(wallet_to_pubkey(other), b"payload", sig)


class TestWalletOwnership:
    def test_valid_proof(self):
        priv, wallet = generate_wallet_keypair()
        sig = sign_wallet_message(priv, "Sign in to Vulnera: 1234")
        assert verify_wallet_signature(wallet, "Sign in to Vulnera: 1234", sig)

    def test_different_message(self):
        priv, wallet = generate_wallet_keypair()
        sig = sign_wallet_message(priv, "message A")
        assert not verify_wallet_signature(wallet, "message B", sig)

    def test_other_wallet(self):
        priv, _ = generate_wallet_keypair()
        _, other = generate_wallet_keypair()
        sig = sign_wallet_message(priv, "hello")
        assert not verify_wallet_signature(other, "hello", sig)

    def test_malformed_inputs_are_false(self):
        _, wallet = generate_wallet_keypair()
        assert not verify_wallet_signature(wallet, "hello", "not base64!!")
        assert not verify_wallet_signature(wallet, "hello", base64.b64encode(b"short").decode())
        assert not verify_wallet_signature("garbage", "hello", base64.b64encode(b"x" * 64).decode())


# ---- Signed requests ----

class TestSignedRequests:
    def test_headers(self):
        priv, wallet = generate_wallet_keypair()
        headers = sign_request(priv, "POST", "/bounties", '{"a":1}', timestamp=1_700_000_000)
        assert headers[WALLET_HEADER] == wallet
        assert headers[TIMESTAMP_HEADER] == "1700000000"
        assert len(bytes.fromhex(headers[SIGNATURE_HEADER])) == 64

    def test_roundtrip(self):
        priv, wallet = generate_wallet_keypair()
        h = sign_request(priv, "POST", "/blockchain/release-payment", '{"amount":1}')
        ok, err = verify_request("POST", "/blockchain/release-payment", '{"amount":1}',
                                 h[TIMESTAMP_HEADER], h[SIGNATURE_HEADER], wallet)
        assert ok, err

    @pytest.mark.parametrize("field,value", [
        ("method", "GET"),
        ("path", "/blockchain/withdraw-escrow"),
        ("body", '{"amount":2}'),
    ])
    def test_tampered_request_rejected(self, field, value):
        priv, wallet = generate_wallet_keypair()
        h = sign_request(priv, "POST", "/blockchain/release-payment", '{"amount":1}')
        req = {"method": "POST", "path": "/blockchain/release-payment", "body": '{"amount":1}'}
        req[field] = value
        ok, err = verify_request(req["method"], req["path"], req["body"],
                                 h[TIMESTAMP_HEADER], h[SIGNATURE_HEADER], wallet)
        assert not ok
        assert err == "invalid signature"

    def test_expired(self):
        priv, wallet = generate_wallet_keypair()
        h = sign_request(priv, "GET", "/bounties", timestamp=time.time() - 3600)
        ok, err = verify_request("GET", "/bounties", "", h[TIMESTAMP_HEADER], h[SIGNATURE_HEADER], wallet)
        assert not ok
        assert "expired" in err

    def test_future_timestamp(self):
        priv, wallet = generate_wallet_keypair()
        h = sign_request(priv, "GET", "/bounties", timestamp=time.time() + 600)
        ok, err = verify_request("GET", "/bounties", "", h[TIMESTAMP_HEADER], h[SIGNATURE_HEADER], wallet)
        assert not ok
        assert "future" in err

    def test_garbage_fields(self):
        priv, wallet = generate_wallet_keypair()
        h = sign_request(priv, "GET", "/bounties")
        assert verify_request("GET", "/bounties", "", "soon", h[SIGNATURE_HEADER], wallet) == \
            (False, "invalid timestamp")
        assert verify_request("GET", "/bounties", "", h[TIMESTAMP_HEADER], "zz", wallet) == \
            (False, "invalid signature hex")
        assert verify_request("GET", "/bounties", "", h[TIMESTAMP_HEADER], h[SIGNATURE_HEADER], "nope") == \
            (False, "invalid wallet address")

    def test_signature_from_other_wallet(self):
        priv, _ = generate_wallet_keypair()
        _, other = generate_wallet_keypair()
        h = sign_request(priv, "GET", "/bounties")
        ok, _ = verify_request("GET", "/bounties", "", h[TIMESTAMP_HEADER], h[SIGNATURE_HEADER], other)
        assert not ok


def _strategy():
    return FixedWindowRateLimiter(MemoryStorage())


class TestReplayGuard:
    def test_first_seen_then_replayed(self):
        guard = ReplayGuard(_strategy())
        assert guard.check_and_record("ab" * 64)
        assert not guard.check_and_record("ab" * 64)
        assert guard.check_and_record("cd" * 64)

    def test_shared_store_across_guards(self):
        strategy = _strategy()
        assert ReplayGuard(strategy).check_and_record("ef" * 64)
        assert not ReplayGuard(strategy).check_and_record("ef" * 64)

    def test_ttl_covers_clock_skew(self):
        from vulnera.crypto import CLOCK_SKEW
        from vulnera.protocol import REQUEST_MAX_AGE
        guard = ReplayGuard(_strategy())
        assert guard._ttl == REQUEST_MAX_AGE + CLOCK_SKEW
        assert guard._item.get_expiry() == REQUEST_MAX_AGE + CLOCK_SKEW
