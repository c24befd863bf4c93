"""Solana chain backend for the escrow service.

Escrow accounts are program-derived addresses owned by the escrow program:
seeds = [b"bounty-escrow", owner pubkey, sha256(bounty_id)]. Nothing here holds
a bounty's keys. Deposits and escrow initialization are signed by the funding
wallet on the client; this module only builds the unsigned instruction
descriptors for them.

Release and withdrawal are signed by the platform's release authority. Their
signature is fixed the moment the transaction is signed, before it is sent, so
callers persist it first and can always reconcile what happened.

ChainBackend is the seam the coordinator depends on. SolanaBackend talks to an
RPC node; SimBackend is an in-process ledger for tests and local development.
"""

import base64
import hashlib
import json
import logging
import secrets
import struct
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from pathlib import Path

import httpx
from solana.exceptions import SolanaRpcException
from solana.rpc.api import Client
from solana.rpc.commitment import Confirmed
from solana.rpc.core import RPCException
from solana.rpc.types import TxOpts
from solders.instruction import AccountMeta, Instruction
from solders.keypair import Keypair
from solders.message import Message
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.system_program import ID as SYSTEM_PROGRAM_ID
from solders.transaction import Transaction
from solders.transaction_status import TransactionConfirmationStatus

from vulnera.errors import (
    InvalidAddressError, InvalidSignatureError, RpcUnavailableError,
    TransactionRejectedError,
)
from vulnera.protocol import (
    BASE58_ALPHABET, DEFAULT_CLUSTER, DEFAULT_COMMITMENT, ESCROW_SEED,
    EXPLORER_URL, LAMPORTS_PER_SOL, PLATFORM_WALLET, PROGRAM_ID, RPC_TIMEOUT,
    RPC_URL, SIGNATURE_LENGTH, SIGNATURE_MIN_LENGTH, WALLET_MAX_LENGTH,
    WALLET_MIN_LENGTH,
)

logger = logging.getLogger(__name__)

# Escrow account layout: 8-byte discriminator, 32-byte owner, u64 amount
ESCROW_DATA_LEN = 48

_COMMITMENT_RANK = {"processed": 0, "confirmed": 1, "finalized": 2}


def lamports_to_sol(lamports: int) -> Decimal:
    """Convert lamports to SOL (display only, never used for arithmetic)."""
    return Decimal(lamports) / LAMPORTS_PER_SOL


def explorer_url(signature: str, cluster: str = DEFAULT_CLUSTER) -> str:
    suffix = "" if cluster == "mainnet-beta" else f"?cluster={cluster}"
    return f"{EXPLORER_URL}/tx/{signature}{suffix}"


def validate_wallet_address(address: str) -> Pubkey:
    """Parse a base58 wallet address. Raises InvalidAddressError."""
    if not isinstance(address, str) or not (WALLET_MIN_LENGTH <= len(address) <= WALLET_MAX_LENGTH):
        raise InvalidAddressError(f"Invalid wallet address: expected {WALLET_MIN_LENGTH}-{WALLET_MAX_LENGTH} base58 characters")
    try:
        return Pubkey.from_string(address)
    except ValueError:
        raise InvalidAddressError(f"Invalid wallet address: {address}")


def validate_tx_signature(signature: str, exact: bool = False) -> str:
    """Check a base58 transaction signature.

    exact: require the full 88-character form (the verify-transaction contract).
    Otherwise the 87-character encodings some signatures have are accepted too.
    """
    if not isinstance(signature, str):
        raise InvalidSignatureError("Transaction signature must be a string")
    if exact and len(signature) != SIGNATURE_LENGTH:
        raise InvalidSignatureError(f"Transaction signature must be exactly {SIGNATURE_LENGTH} characters")
    if not (SIGNATURE_MIN_LENGTH <= len(signature) <= SIGNATURE_LENGTH):
        raise InvalidSignatureError("Invalid transaction signature length")
    bad = [c for c in signature if c not in BASE58_ALPHABET]
    if bad:
        raise InvalidSignatureError(f"Invalid character '{bad[0]}' in transaction signature")
    return signature


def _parse_signature(signature: str) -> Signature:
    try:
        return Signature.from_string(validate_tx_signature(signature))
    except ValueError:
        raise InvalidSignatureError("Transaction signature is not valid base58 for 64 bytes")


def _bounty_seed(bounty_id: str) -> bytes:
    # PDA seeds are capped at 32 bytes; hashing keeps arbitrary ids in range
    return hashlib.sha256(bounty_id.encode("utf-8")).digest()


def derive_escrow_address(owner_wallet: str, bounty_id: str,
                          program_id: str = PROGRAM_ID) -> tuple[str, int]:
    """Deterministic escrow PDA for (funder, bounty). No network call."""
    owner = validate_wallet_address(owner_wallet)
    if not bounty_id:
        raise InvalidAddressError("Bounty id required for escrow derivation")
    program = Pubkey.from_string(program_id)
    pda, bump = Pubkey.find_program_address(
        [ESCROW_SEED, bytes(owner), _bounty_seed(bounty_id)], program,
    )
    return str(pda), bump


# --- Anchor instruction encoding ---

def anchor_discriminator(name: str) -> bytes:
    """First 8 bytes of sha256("global:<name>"), Anchor's instruction tag."""
    return hashlib.sha256(f"global:{name}".encode()).digest()[:8]


def _borsh_string(value: str) -> bytes:
    raw = value.encode("utf-8")
    return struct.pack("<I", len(raw)) + raw


def _u64(value: int) -> bytes:
    return struct.pack("<Q", value)


def build_instruction(name: str, accounts: list[AccountMeta], args: bytes,
                      program_id: str = PROGRAM_ID) -> Instruction:
    return Instruction(Pubkey.from_string(program_id), anchor_discriminator(name) + args, accounts)


def describe_instruction(name: str, ix: Instruction) -> dict:
    """Unsigned instruction descriptor the client wallet signs and sends."""
    return {
        "programId": str(ix.program_id),
        "instruction": name,
        "accounts": [
            {"pubkey": str(a.pubkey), "isSigner": a.is_signer, "isWritable": a.is_writable}
            for a in ix.accounts
        ],
        "data": base64.b64encode(bytes(ix.data)).decode("ascii"),
    }


def initialize_descriptor(owner_wallet: str, bounty_id: str, amount: int,
                          program_id: str = PROGRAM_ID) -> dict:
    """initialize_bounty: owner creates the escrow PDA and funds it."""
    escrow, bump = derive_escrow_address(owner_wallet, bounty_id, program_id)
    owner = validate_wallet_address(owner_wallet)
    ix = build_instruction(
        "initialize_bounty",
        [
            AccountMeta(Pubkey.from_string(escrow), is_signer=False, is_writable=True),
            AccountMeta(owner, is_signer=True, is_writable=True),
            AccountMeta(SYSTEM_PROGRAM_ID, is_signer=False, is_writable=False),
        ],
        _borsh_string(bounty_id) + _u64(amount) + bytes([bump]),
        program_id,
    )
    return describe_instruction("initialize_bounty", ix)


def deposit_descriptor(owner_wallet: str, escrow_address: str, bounty_id: str,
                       amount: int, program_id: str = PROGRAM_ID) -> dict:
    owner = validate_wallet_address(owner_wallet)
    ix = build_instruction(
        "deposit",
        [
            AccountMeta(validate_wallet_address(escrow_address), is_signer=False, is_writable=True),
            AccountMeta(owner, is_signer=True, is_writable=True),
            AccountMeta(SYSTEM_PROGRAM_ID, is_signer=False, is_writable=False),
        ],
        _borsh_string(bounty_id) + _u64(amount),
        program_id,
    )
    return describe_instruction("deposit", ix)


def load_keypair(path: str) -> Keypair:
    """Load a Solana CLI keypair file (JSON array of 64 ints)."""
    expanded = Path(path).expanduser()
    if not expanded.exists():
        raise FileNotFoundError(f"Keypair file not found: {expanded}")
    try:
        secret = json.loads(expanded.read_text())
        return Keypair.from_bytes(bytes(secret))
    except (json.JSONDecodeError, ValueError, TypeError) as e:
        raise ValueError(f"Invalid keypair file format: {e}")


# --- Oracle results ---

@dataclass
class TransactionStatus:
    signature: str
    status: str  # "confirmed", "pending", "failed", "not_found"
    slot: int | None = None
    error: str | None = None
    confirmation_status: str | None = None

    @property
    def confirmed(self) -> bool:
        return self.status == "confirmed"

    @property
    def terminal(self) -> bool:
        """True when re-polling cannot change the outcome."""
        return self.status in ("confirmed", "failed")

    def to_dict(self) -> dict:
        return {
            "confirmed": self.confirmed,
            "status": self.status,
            "slot": self.slot,
            "error": self.error,
            "confirmationStatus": self.confirmation_status,
        }


@dataclass
class SignedTransaction:
    """A transaction signed by the release authority but not yet sent."""
    signature: str
    kind: str  # "release" or "withdraw"
    payload: bytes = b""
    transfers: list[tuple[str, str, int]] = field(default_factory=list)  # SimBackend only


class ChainBackend(ABC):
    """Abstract chain backend. Injected into the EscrowCoordinator."""

    @abstractmethod
    def get_balance(self, address: str) -> int:
        """Wallet balance in lamports. Raises RpcUnavailableError."""
        ...

    @abstractmethod
    def get_escrow_balance(self, escrow_address: str) -> int:
        """Lamports held by a program-owned escrow account, 0 if none."""
        ...

    @abstractmethod
    def get_signature_status(self, signature: str) -> TransactionStatus:
        ...

    @abstractmethod
    def get_transaction(self, signature: str) -> dict | None:
        """Transaction details, or None if the chain does not know it."""
        ...

    @abstractmethod
    def build_release(self, escrow_address: str, owner_wallet: str, recipient_wallet: str,
                      bounty_id: str, submission_id: str, net: int, fee: int) -> SignedTransaction:
        """Sign a process_payment transaction: net to recipient, fee to platform."""
        ...

    @abstractmethod
    def build_withdraw(self, escrow_address: str, owner_wallet: str, bounty_id: str,
                       amount: int) -> SignedTransaction:
        """Sign a close_bounty transaction returning the remainder to the owner."""
        ...

    @abstractmethod
    def submit(self, signed: SignedTransaction) -> str:
        """Send a signed transaction. Returns its signature.

        Raises TransactionRejectedError if the node refused it (nothing landed),
        RpcUnavailableError(signature=...) if the outcome is unknown.
        """
        ...


class SolanaBackend(ChainBackend):
    """RPC-backed chain access via solana-py.

    The release authority keypair signs process_payment and close_bounty.
    Without one the backend is read-only: the oracle works, releases raise.
    """

    def __init__(self, rpc_url: str = RPC_URL, program_id: str = PROGRAM_ID,
                 authority: Keypair | None = None, platform_wallet: str = PLATFORM_WALLET,
                 commitment: str = DEFAULT_COMMITMENT, timeout: float = RPC_TIMEOUT,
                 client: Client | None = None):
        if commitment not in _COMMITMENT_RANK:
            raise ValueError(f"Unknown commitment: {commitment}")
        self.rpc_url = rpc_url
        self.program_id = Pubkey.from_string(program_id)
        self.authority = authority
        self.platform_wallet = validate_wallet_address(platform_wallet)
        self.commitment = commitment
        self.client = client or Client(rpc_url, commitment=Confirmed, timeout=timeout)

    def _call(self, what: str, fn, *args, **kwargs):
        """Run an RPC call, mapping transport failures to RpcUnavailableError."""
        try:
            return fn(*args, **kwargs)
        except (SolanaRpcException, httpx.HTTPError) as e:
            raise RpcUnavailableError(f"Solana RPC {what} failed: {e}")

    def get_balance(self, address: str) -> int:
        pubkey = validate_wallet_address(address)
        resp = self._call("getBalance", self.client.get_balance, pubkey)
        if resp.value is None:
            raise RpcUnavailableError("Solana RPC getBalance returned no value")
        return int(resp.value)

    def get_escrow_balance(self, escrow_address: str) -> int:
        pubkey = validate_wallet_address(escrow_address)
        resp = self._call("getAccountInfo", self.client.get_account_info, pubkey)
        account = resp.value
        if account is None:
            return 0
        if account.owner != self.program_id:
            logger.warning("escrow %s is owned by %s, not the escrow program", escrow_address, account.owner)
            return 0
        data = bytes(account.data)
        if len(data) < ESCROW_DATA_LEN:
            logger.warning("escrow %s data too short: %d bytes", escrow_address, len(data))
            return 0
        return struct.unpack_from("<Q", data, 40)[0]

    def get_signature_status(self, signature: str) -> TransactionStatus:
        sig = _parse_signature(signature)
        resp = self._call(
            "getSignatureStatuses", self.client.get_signature_statuses,
            [sig], search_transaction_history=True,
        )
        status = resp.value[0] if resp.value else None
        if status is None:
            return TransactionStatus(signature, "not_found")
        if status.err is not None:
            return TransactionStatus(signature, "failed", slot=status.slot, error=str(status.err))

        level = self._confirmation_level(status)
        if _COMMITMENT_RANK[level] >= _COMMITMENT_RANK[self.commitment]:
            return TransactionStatus(signature, "confirmed", slot=status.slot, confirmation_status=level)
        return TransactionStatus(signature, "pending", slot=status.slot, confirmation_status=level)

    @staticmethod
    def _confirmation_level(status) -> str:
        cs = status.confirmation_status
        if cs == TransactionConfirmationStatus.Finalized:
            return "finalized"
        if cs == TransactionConfirmationStatus.Confirmed:
            return "confirmed"
        if cs == TransactionConfirmationStatus.Processed:
            return "processed"
        # Older nodes omit confirmationStatus; confirmations=None means rooted
        return "finalized" if status.confirmations is None else "confirmed"

    def get_transaction(self, signature: str) -> dict | None:
        sig = _parse_signature(signature)
        resp = self._call(
            "getTransaction", self.client.get_transaction,
            sig, commitment=Confirmed, max_supported_transaction_version=0,
        )
        tx = resp.value
        if tx is None:
            return None
        meta = tx.transaction.meta
        err = meta.err if meta else None
        return {
            "signature": signature,
            "slot": tx.slot,
            "blockTime": tx.block_time,
            "status": "failed" if err else "confirmed",
            "error": str(err) if err else None,
            "fee": meta.fee if meta else 0,
            "logs": list(meta.log_messages or []) if meta else [],
        }

    def _sign(self, kind: str, ix: Instruction) -> SignedTransaction:
        if self.authority is None:
            raise RuntimeError("No release authority configured (set VULNERA_AUTHORITY_KEYPAIR)")
        resp = self._call("getLatestBlockhash", self.client.get_latest_blockhash)
        blockhash = resp.value.blockhash
        msg = Message.new_with_blockhash([ix], self.authority.pubkey(), blockhash)
        tx = Transaction([self.authority], msg, blockhash)
        return SignedTransaction(signature=str(tx.signatures[0]), kind=kind, payload=bytes(tx))

    def build_release(self, escrow_address, owner_wallet, recipient_wallet,
                      bounty_id, submission_id, net, fee):
        ix = build_instruction(
            "process_payment",
            [
                AccountMeta(validate_wallet_address(escrow_address), is_signer=False, is_writable=True),
                AccountMeta(self.authority.pubkey() if self.authority else SYSTEM_PROGRAM_ID,
                            is_signer=True, is_writable=True),
                AccountMeta(validate_wallet_address(owner_wallet), is_signer=False, is_writable=False),
                AccountMeta(validate_wallet_address(recipient_wallet), is_signer=False, is_writable=True),
                AccountMeta(self.platform_wallet, is_signer=False, is_writable=True),
                AccountMeta(SYSTEM_PROGRAM_ID, is_signer=False, is_writable=False),
            ],
            _borsh_string(bounty_id) + _borsh_string(submission_id) + _u64(net) + _u64(fee),
            str(self.program_id),
        )
        return self._sign("release", ix)

    def build_withdraw(self, escrow_address, owner_wallet, bounty_id, amount):
        ix = build_instruction(
            "close_bounty",
            [
                AccountMeta(validate_wallet_address(escrow_address), is_signer=False, is_writable=True),
                AccountMeta(self.authority.pubkey() if self.authority else SYSTEM_PROGRAM_ID,
                            is_signer=True, is_writable=True),
                AccountMeta(validate_wallet_address(owner_wallet), is_signer=False, is_writable=True),
                AccountMeta(SYSTEM_PROGRAM_ID, is_signer=False, is_writable=False),
            ],
            _borsh_string(bounty_id) + _u64(amount),
            str(self.program_id),
        )
        return self._sign("withdraw", ix)

    def submit(self, signed: SignedTransaction) -> str:
        try:
            resp = self.client.send_raw_transaction(
                signed.payload, opts=TxOpts(skip_confirmation=True, preflight_commitment=Confirmed),
            )
        except RPCException as e:
            # Preflight simulation failed: the node never forwarded it
            raise TransactionRejectedError(f"Transaction rejected: {e}", signature=signed.signature)
        except (SolanaRpcException, httpx.HTTPError) as e:
            raise RpcUnavailableError(f"Send failed after signing: {e}", signature=signed.signature)
        return str(resp.value)


class SimBackend(ChainBackend):
    """Simulated chain for tests and local development.

    Keeps lamport balances in memory. Enforces:
    - Escrow balances only change when a transaction finalizes
    - Insufficient-balance transactions fail on-chain, not at submit
    - Unknown signatures report not_found

    Knobs for failure testing:
        sim.fail_rpc(2)               # next two oracle calls raise RpcUnavailableError
        sim.drop_after_submit = True  # submit lands on-chain but the reply is lost
        sim.drop_before_submit = True # submit never reaches the chain, reply lost
        sim.reject_next_submit = "x"  # next submit is refused by preflight
        sim.auto_finalize = False     # submitted transactions stay pending

    Usage:
        sim = SimBackend()
        sim.fund(owner, 5 * LAMPORTS_PER_SOL)
        sig = sim.client_transfer(owner, escrow, LAMPORTS_PER_SOL)  # wallet-signed deposit
    """

    def __init__(self, program_id: str = PROGRAM_ID, platform_wallet: str = PLATFORM_WALLET,
                 auto_finalize: bool = True):
        self.program_id = program_id
        self.platform_wallet = platform_wallet
        self.auto_finalize = auto_finalize
        self.drop_after_submit = False
        self.drop_before_submit = False
        self.reject_next_submit: str | None = None
        self.balances: dict[str, int] = {}
        self.escrow_accounts: set[str] = set()
        self.transactions: dict[str, dict] = {}
        self.calls: list[str] = []  # oracle call log for test assertions
        self._rpc_failures = 0
        self._slot = 1000
        self._counter = 0
        self._salt = secrets.token_bytes(8)
        self._lock = threading.Lock()
        self._sig_lock = threading.Lock()

    # --- ChainBackend interface ---

    def get_balance(self, address: str) -> int:
        self._oracle_call("getBalance")
        with self._lock:
            return self.balances.get(address, 0)

    def get_escrow_balance(self, escrow_address: str) -> int:
        self._oracle_call("getAccountInfo")
        with self._lock:
            if escrow_address not in self.escrow_accounts:
                return 0
            return self.balances.get(escrow_address, 0)

    def get_signature_status(self, signature: str) -> TransactionStatus:
        self._oracle_call("getSignatureStatuses")
        with self._lock:
            tx = self.transactions.get(signature)
            if tx is None:
                return TransactionStatus(signature, "not_found")
            if tx["status"] == "confirmed":
                return TransactionStatus(signature, "confirmed", slot=tx["slot"], confirmation_status="finalized")
            if tx["status"] == "failed":
                return TransactionStatus(signature, "failed", slot=tx["slot"], error=tx["error"])
            return TransactionStatus(signature, "pending", slot=tx["slot"], confirmation_status="processed")

    def get_transaction(self, signature: str) -> dict | None:
        self._oracle_call("getTransaction")
        with self._lock:
            tx = self.transactions.get(signature)
            if tx is None or tx["status"] == "pending":
                return None
            return {
                "signature": signature,
                "slot": tx["slot"],
                "blockTime": int(tx["time"]),
                "status": tx["status"],
                "error": tx["error"],
                "fee": 5000,
                "logs": [f"Program {self.program_id} invoke [1]", f"Program log: Instruction: {tx['kind']}"],
            }

    def build_release(self, escrow_address, owner_wallet, recipient_wallet,
                      bounty_id, submission_id, net, fee):
        transfers = [(escrow_address, recipient_wallet, net)]
        if fee:
            transfers.append((escrow_address, self.platform_wallet, fee))
        return SignedTransaction(signature=self._new_signature(), kind="release", transfers=transfers)

    def build_withdraw(self, escrow_address, owner_wallet, bounty_id, amount):
        return SignedTransaction(
            signature=self._new_signature(), kind="withdraw",
            transfers=[(escrow_address, owner_wallet, amount)],
        )

    def submit(self, signed: SignedTransaction) -> str:
        with self._lock:
            if self.reject_next_submit is not None:
                reason, self.reject_next_submit = self.reject_next_submit, None
                raise TransactionRejectedError(f"Transaction rejected: {reason}", signature=signed.signature)
            if self.drop_before_submit:
                raise RpcUnavailableError("Connection reset before send", signature=signed.signature)
            self._record(signed.signature, signed.kind, signed.transfers)
            if self.auto_finalize:
                self._finalize_locked(signed.signature)
            if self.drop_after_submit:
                raise RpcUnavailableError("Connection reset after send", signature=signed.signature)
        return signed.signature

    # --- Simulation controls ---

    def fail_rpc(self, count: int = 1):
        """Make the next `count` oracle calls raise RpcUnavailableError."""
        with self._lock:
            self._rpc_failures = count

    def fund(self, address: str, lamports: int):
        with self._lock:
            self.balances[address] = self.balances.get(address, 0) + lamports

    def client_transfer(self, from_wallet: str, escrow_address: str, lamports: int,
                        finalize: bool = True) -> str:
        """Simulate a wallet-signed init/deposit into a program-owned escrow."""
        signature = self._new_signature()
        with self._lock:
            self.escrow_accounts.add(escrow_address)
            self._record(signature, "deposit", [(from_wallet, escrow_address, lamports)])
            if finalize:
                self._finalize_locked(signature)
        return signature

    def record_transaction(self, status: str = "confirmed", error: str | None = None,
                           kind: str = "register") -> str:
        """Put an arbitrary transaction on the simulated chain."""
        signature = self._new_signature()
        with self._lock:
            self._record(signature, kind, [])
            self.transactions[signature]["status"] = status
            self.transactions[signature]["error"] = error
        return signature

    def finalize(self, signature: str):
        with self._lock:
            self._finalize_locked(signature)

    def fail(self, signature: str, error: str = "InstructionError"):
        with self._lock:
            tx = self.transactions[signature]
            tx["status"] = "failed"
            tx["error"] = error

    # --- internals ---

    def _oracle_call(self, method: str):
        with self._lock:
            self.calls.append(method)
            if self._rpc_failures > 0:
                self._rpc_failures -= 1
                raise RpcUnavailableError(f"Solana RPC {method} failed: simulated timeout")

    def _record(self, signature: str, kind: str, transfers: list):
        self._slot += 1
        self.transactions[signature] = {
            "kind": kind, "transfers": transfers, "status": "pending",
            "error": None, "slot": self._slot, "time": time.time(),
        }

    def _finalize_locked(self, signature: str):
        tx = self.transactions[signature]
        if tx["status"] != "pending":
            return
        # All-or-nothing, like a real transaction
        needed: dict[str, int] = {}
        for src, _, amount in tx["transfers"]:
            needed[src] = needed.get(src, 0) + amount
        for src, amount in needed.items():
            if self.balances.get(src, 0) < amount:
                tx["status"] = "failed"
                tx["error"] = "InsufficientFunds"
                return
        for src, dst, amount in tx["transfers"]:
            self.balances[src] -= amount
            self.balances[dst] = self.balances.get(dst, 0) + amount
        tx["status"] = "confirmed"

    def _new_signature(self) -> str:
        with self._sig_lock:
            while True:
                self._counter += 1
                raw = hashlib.blake2b(self._salt + str(self._counter).encode(), digest_size=64).digest()
                sig = str(Signature.from_bytes(raw))
                if len(sig) == SIGNATURE_LENGTH:
                    return sig
