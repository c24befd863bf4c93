"""Tests for vulnera/solana.py -- escrow derivation, validation, instruction
descriptors, the simulated chain, and the RPC backend against a mocked client."""

import base64
import hashlib
import json
import struct
import sys
import os
from types import SimpleNamespace
from unittest import mock

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))
sys.path.insert(0, os.path.dirname(__file__))

import httpx
import pytest
from solana.rpc.core import RPCException
from solders.hash import Hash
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.transaction_status import TransactionConfirmationStatus

from vulnera.errors import (
    InvalidAddressError, InvalidSignatureError, RpcUnavailableError,
    TransactionRejectedError,
)
from vulnera.protocol import LAMPORTS_PER_SOL, PLATFORM_WALLET, PROGRAM_ID
from vulnera.solana import (
    SimBackend, SolanaBackend, anchor_discriminator, deposit_descriptor,
    derive_escrow_address, explorer_url, initialize_descriptor,
    lamports_to_sol, load_keypair, validate_tx_signature,
    validate_wallet_address,
)
from conftest import OWNER_WALLET, RESEARCHER_WALLET


# ---- Helpers ----

class TestHelpers:
    def test_lamports_to_sol_exact(self):
        assert str(lamports_to_sol(1_500_000_000)) == "1.5"
        assert str(lamports_to_sol(1)) == "1E-9"

    def test_explorer_url(self):
        assert explorer_url("abc") == "https://explorer.solana.com/tx/abc?cluster=devnet"
        assert explorer_url("abc", "mainnet-beta") == "https://explorer.solana.com/tx/abc"

    def test_anchor_discriminator(self):
        assert len(anchor_discriminator("deposit")) == 8
        assert anchor_discriminator("deposit") != anchor_discriminator("close_bounty")


class TestValidation:
    def test_valid_wallet(self):
        assert str(validate_wallet_address(OWNER_WALLET)) == OWNER_WALLET

    @pytest.mark.parametrize("bad", ["", "short", "0" * 44, "l" * 40, "x" * 45, None, 12345])
    def test_invalid_wallet(self, bad):
        with pytest.raises(InvalidAddressError):
            validate_wallet_address(bad)

    def test_signature_lengths(self):
        validate_tx_signature("2" * 88, exact=True)
        validate_tx_signature("2" * 87)
        with pytest.raises(InvalidSignatureError):
            validate_tx_signature("2" * 87, exact=True)
        with pytest.raises(InvalidSignatureError):
            validate_tx_signature("2" * 89)
        with pytest.raises(InvalidSignatureError):
            validate_tx_signature("2" * 86)

    def test_signature_alphabet(self):
        with pytest.raises(InvalidSignatureError, match="Invalid character '0'"):
            validate_tx_signature("0" + "2" * 87)

    def test_signature_type(self):
        with pytest.raises(InvalidSignatureError):
            validate_tx_signature(None)


# ---- Escrow derivation ----

class TestDerivation:
    def test_deterministic(self):
        a = derive_escrow_address(OWNER_WALLET, "bounty-1")
        b = derive_escrow_address(OWNER_WALLET, "bounty-1")
        assert a == b
        validate_wallet_address(a[0])
        assert 0 <= a[1] <= 255

    def test_distinct_per_bounty_and_owner(self):
        base = derive_escrow_address(OWNER_WALLET, "bounty-1")[0]
        assert derive_escrow_address(OWNER_WALLET, "bounty-2")[0] != base
        assert derive_escrow_address(RESEARCHER_WALLET, "bounty-1")[0] != base

    def test_matches_program_derived_address(self):
        escrow, bump = derive_escrow_address(OWNER_WALLET, "bounty-1")
        expected = Pubkey.create_program_address(
            [b"bounty-escrow", bytes(Pubkey.from_string(OWNER_WALLET)),
             hashlib.sha256(b"bounty-1").digest(), bytes([bump])],
            Pubkey.from_string(PROGRAM_ID),
        )
        assert str(expected) == escrow

    def test_long_bounty_id(self):
        escrow, _ = derive_escrow_address(OWNER_WALLET, "b" * 200)
        validate_wallet_address(escrow)

    def test_off_curve(self):
        escrow, _ = derive_escrow_address(OWNER_WALLET, "bounty-1")
        assert not Pubkey.from_string(escrow).is_on_curve()

    def test_rejects_bad_inputs(self):
        with pytest.raises(InvalidAddressError):
            derive_escrow_address("bad", "bounty-1")
        with pytest.raises(InvalidAddressError):
            derive_escrow_address(OWNER_WALLET, "")


# ---- Instruction descriptors ----

class TestDescriptors:
    def test_initialize(self):
        desc = initialize_descriptor(OWNER_WALLET, "bounty-1", LAMPORTS_PER_SOL)
        escrow, bump = derive_escrow_address(OWNER_WALLET, "bounty-1")
        assert desc["programId"] == PROGRAM_ID
        assert desc["instruction"] == "initialize_bounty"
        assert [a["pubkey"] for a in desc["accounts"]][:2] == [escrow, OWNER_WALLET]
        data = base64.b64decode(desc["data"])
        assert data[:8] == anchor_discriminator("initialize_bounty")
        assert struct.unpack_from("<I", data, 8)[0] == len("bounty-1")
        assert data[12:20] == b"bounty-1"
        assert struct.unpack_from("<Q", data, 20)[0] == LAMPORTS_PER_SOL
        assert data[28] == bump

    def test_deposit(self):
        escrow, _ = derive_escrow_address(OWNER_WALLET, "bounty-1")
        desc = deposit_descriptor(OWNER_WALLET, escrow, "bounty-1", 42)
        assert desc["instruction"] == "deposit"
        owner = desc["accounts"][1]
        assert owner == {"pubkey": OWNER_WALLET, "isSigner": True, "isWritable": True}
        assert struct.unpack("<Q", base64.b64decode(desc["data"])[-8:])[0] == 42


class TestLoadKeypair:
    def test_cli_format(self, tmp_path):
        kp = Keypair()
        path = tmp_path / "id.json"
        path.write_text(json.dumps(list(bytes(kp))))
        assert load_keypair(str(path)).pubkey() == kp.pubkey()

    def test_missing(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_keypair(str(tmp_path / "nope.json"))

    def test_garbage(self, tmp_path):
        path = tmp_path / "id.json"
        path.write_text("not json")
        with pytest.raises(ValueError):
            load_keypair(str(path))


# ---- Simulated chain ----

class TestSimBackend:
    def setup_method(self):
        self.sim = SimBackend()
        self.escrow, _ = derive_escrow_address(OWNER_WALLET, "bounty-1")

    def test_signatures_are_full_length_and_unique(self):
        sigs = {self.sim.record_transaction() for _ in range(50)}
        assert len(sigs) == 50
        for sig in sigs:
            validate_tx_signature(sig, exact=True)

    def test_client_transfer(self):
        self.sim.fund(OWNER_WALLET, LAMPORTS_PER_SOL)
        sig = self.sim.client_transfer(OWNER_WALLET, self.escrow, 400)
        assert self.sim.get_signature_status(sig).confirmed
        assert self.sim.get_escrow_balance(self.escrow) == 400
        assert self.sim.get_balance(OWNER_WALLET) == LAMPORTS_PER_SOL - 400

    def test_overdrawn_transfer_fails_on_chain(self):
        sig = self.sim.client_transfer(OWNER_WALLET, self.escrow, 400)
        status = self.sim.get_signature_status(sig)
        assert status.status == "failed"
        assert status.error == "InsufficientFunds"
        assert self.sim.get_escrow_balance(self.escrow) == 0

    def test_plain_wallet_is_not_escrow(self):
        self.sim.fund(RESEARCHER_WALLET, 999)
        assert self.sim.get_escrow_balance(RESEARCHER_WALLET) == 0

    def test_pending_until_finalized(self):
        self.sim.fund(OWNER_WALLET, 1000)
        sig = self.sim.client_transfer(OWNER_WALLET, self.escrow, 400, finalize=False)
        assert self.sim.get_signature_status(sig).status == "pending"
        assert self.sim.get_transaction(sig) is None
        self.sim.finalize(sig)
        assert self.sim.get_signature_status(sig).confirmed
        assert self.sim.get_transaction(sig)["status"] == "confirmed"

    def test_unknown_signature(self):
        assert self.sim.get_signature_status("2" * 88).status == "not_found"
        assert self.sim.get_transaction("2" * 88) is None

    def test_release_moves_net_and_fee(self):
        self.sim.fund(OWNER_WALLET, 1000)
        self.sim.client_transfer(OWNER_WALLET, self.escrow, 1000)
        signed = self.sim.build_release(self.escrow, OWNER_WALLET, RESEARCHER_WALLET, "b", "s", 980, 20)
        assert self.sim.get_signature_status(signed.signature).status == "not_found"
        self.sim.submit(signed)
        assert self.sim.balances[RESEARCHER_WALLET] == 980
        assert self.sim.balances[PLATFORM_WALLET] == 20
        assert self.sim.get_escrow_balance(self.escrow) == 0

    def test_rpc_failure_knob(self):
        self.sim.fail_rpc(1)
        with pytest.raises(RpcUnavailableError):
            self.sim.get_balance(OWNER_WALLET)
        assert self.sim.get_balance(OWNER_WALLET) == 0
        assert self.sim.calls == ["getBalance", "getBalance"]

    def test_reject_knob(self):
        signed = self.sim.build_withdraw(self.escrow, OWNER_WALLET, "b", 1)
        self.sim.reject_next_submit = "blockhash not found"
        with pytest.raises(TransactionRejectedError):
            self.sim.submit(signed)
        assert signed.signature not in self.sim.transactions

    def test_drop_after_submit_still_lands(self):
        self.sim.fund(OWNER_WALLET, 10)
        self.sim.client_transfer(OWNER_WALLET, self.escrow, 10)
        signed = self.sim.build_withdraw(self.escrow, OWNER_WALLET, "b", 10)
        self.sim.drop_after_submit = True
        with pytest.raises(RpcUnavailableError) as exc:
            self.sim.submit(signed)
        assert exc.value.signature == signed.signature
        assert self.sim.get_signature_status(signed.signature).confirmed

    def test_drop_before_submit_never_lands(self):
        signed = self.sim.build_withdraw(self.escrow, OWNER_WALLET, "b", 10)
        self.sim.drop_before_submit = True
        with pytest.raises(RpcUnavailableError):
            self.sim.submit(signed)
        assert self.sim.get_signature_status(signed.signature).status == "not_found"


# ---- RPC backend ----

def _status(err=None, level=TransactionConfirmationStatus.Finalized, confirmations=None, slot=77):
    return SimpleNamespace(err=err, slot=slot, confirmation_status=level, confirmations=confirmations)


class TestSolanaBackend:
    def setup_method(self):
        self.client = mock.MagicMock()
        self.authority = Keypair()
        self.backend = SolanaBackend(authority=self.authority, client=self.client)
        self.sig = SimBackend().record_transaction()

    def test_unknown_commitment(self):
        with pytest.raises(ValueError):
            SolanaBackend(commitment="eventually", client=self.client)

    def test_get_balance(self):
        self.client.get_balance.return_value = SimpleNamespace(value=1234)
        assert self.backend.get_balance(OWNER_WALLET) == 1234
        self.client.get_balance.assert_called_once_with(Pubkey.from_string(OWNER_WALLET))

    def test_transport_error_is_rpc_unavailable(self):
        self.client.get_balance.side_effect = httpx.ConnectError("connection refused")
        with pytest.raises(RpcUnavailableError):
            self.backend.get_balance(OWNER_WALLET)

    def _account(self, owner, amount, data_len=48):
        data = bytes(8) + bytes(Pubkey.from_string(OWNER_WALLET)) + struct.pack("<Q", amount)
        return SimpleNamespace(owner=owner, data=data[:data_len], lamports=amount + 2_000_000)

    def test_escrow_balance_reads_account_data(self):
        self.client.get_account_info.return_value = SimpleNamespace(
            value=self._account(Pubkey.from_string(PROGRAM_ID), 5 * LAMPORTS_PER_SOL))
        assert self.backend.get_escrow_balance(OWNER_WALLET) == 5 * LAMPORTS_PER_SOL

    def test_escrow_balance_missing_account(self):
        self.client.get_account_info.return_value = SimpleNamespace(value=None)
        assert self.backend.get_escrow_balance(OWNER_WALLET) == 0

    def test_escrow_balance_foreign_owner(self):
        self.client.get_account_info.return_value = SimpleNamespace(
            value=self._account(Pubkey.from_string(PLATFORM_WALLET), 10))
        assert self.backend.get_escrow_balance(OWNER_WALLET) == 0

    def test_escrow_balance_short_data(self):
        self.client.get_account_info.return_value = SimpleNamespace(
            value=self._account(Pubkey.from_string(PROGRAM_ID), 10, data_len=20))
        assert self.backend.get_escrow_balance(OWNER_WALLET) == 0

    def test_signature_status_finalized(self):
        self.client.get_signature_statuses.return_value = SimpleNamespace(value=[_status()])
        status = self.backend.get_signature_status(self.sig)
        assert status.confirmed
        assert status.slot == 77
        assert status.confirmation_status == "finalized"

    def test_signature_status_below_commitment_is_pending(self):
        self.client.get_signature_statuses.return_value = SimpleNamespace(
            value=[_status(level=TransactionConfirmationStatus.Confirmed, confirmations=3)])
        assert self.backend.get_signature_status(self.sig).status == "pending"

        relaxed = SolanaBackend(commitment="confirmed", client=self.client)
        assert relaxed.get_signature_status(self.sig).confirmed

    def test_signature_status_failed(self):
        self.client.get_signature_statuses.return_value = SimpleNamespace(value=[_status(err="InstructionError")])
        status = self.backend.get_signature_status(self.sig)
        assert status.status == "failed"
        assert status.error == "InstructionError"

    def test_signature_status_unknown(self):
        self.client.get_signature_statuses.return_value = SimpleNamespace(value=[None])
        assert self.backend.get_signature_status(self.sig).status == "not_found"

    def test_malformed_signature_makes_no_call(self):
        with pytest.raises(InvalidSignatureError):
            self.backend.get_signature_status("2" * 86)
        self.client.get_signature_statuses.assert_not_called()

    def test_build_release_signs_with_authority(self):
        self.client.get_latest_blockhash.return_value = SimpleNamespace(
            value=SimpleNamespace(blockhash=Hash.new_unique()))
        escrow, _ = derive_escrow_address(OWNER_WALLET, "bounty-1")
        signed = self.backend.build_release(escrow, OWNER_WALLET, RESEARCHER_WALLET, "bounty-1", "sub-1", 980, 20)
        assert signed.kind == "release"
        assert signed.payload
        validate_tx_signature(signed.signature)

    def test_build_without_authority(self):
        backend = SolanaBackend(client=self.client)
        escrow, _ = derive_escrow_address(OWNER_WALLET, "bounty-1")
        with pytest.raises(RuntimeError):
            backend.build_withdraw(escrow, OWNER_WALLET, "bounty-1", 10)

    def test_submit_rejected_by_preflight(self):
        self.client.send_raw_transaction.side_effect = RPCException("Blockhash not found")
        signed = SimpleNamespace(signature=self.sig, payload=b"tx")
        with pytest.raises(TransactionRejectedError):
            self.backend.submit(signed)

    def test_submit_transport_error_keeps_signature(self):
        self.client.send_raw_transaction.side_effect = httpx.ReadTimeout("timed out")
        signed = SimpleNamespace(signature=self.sig, payload=b"tx")
        with pytest.raises(RpcUnavailableError) as exc:
            self.backend.submit(signed)
        assert exc.value.signature == self.sig
