"""Shared constants and state machines for the Vulnera escrow service.

All modules import from here to avoid circular dependencies.
Amounts are integer lamports throughout.
"""

import os
from enum import Enum

# --- Chain constants ---

LAMPORTS_PER_SOL = 1_000_000_000

# Minimum escrow funding: 0.1 SOL
MIN_ESCROW_AMOUNT = 100_000_000

# Platform fee in basis points (200 = 2%)
BPS_DENOMINATOR = 10_000
PLATFORM_FEE_BPS = int(os.environ.get("VULNERA_PLATFORM_FEE_BPS", "200"))

# Escrow PDA seed prefix, shared with the on-chain program
ESCROW_SEED = b"bounty-escrow"

DEFAULT_PROGRAM_ID = "8K6AdQyPxjCfVoTZtAZW7TnQjhsJFjEdR5tzVWzESVvB"
PROGRAM_ID = os.environ.get("VULNERA_PROGRAM_ID", DEFAULT_PROGRAM_ID)

# Platform treasury -- receives the fee leg of every release
DEFAULT_PLATFORM_WALLET = "GbLLTkUjCznwRrkLM6tewimmW6ZCC4AP8eF9yAD8e5qT"
PLATFORM_WALLET = os.environ.get("VULNERA_PLATFORM_WALLET", DEFAULT_PLATFORM_WALLET)

DEFAULT_RPC_URL = "https://api.devnet.solana.com"
RPC_URL = os.environ.get("VULNERA_RPC_URL", DEFAULT_RPC_URL)

# Commitment a signature must reach before it counts as proof
DEFAULT_COMMITMENT = os.environ.get("VULNERA_COMMITMENT", "finalized")

# Transaction signatures: 64 bytes, base58. Most encode to 88 chars, a few to 87.
SIGNATURE_LENGTH = 88
SIGNATURE_MIN_LENGTH = 87
BASE58_ALPHABET = "123456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz"

# Wallet addresses: 32 bytes, base58
WALLET_MIN_LENGTH = 32
WALLET_MAX_LENGTH = 44

# --- RPC behaviour ---

RPC_TIMEOUT = float(os.environ.get("VULNERA_RPC_TIMEOUT", "5"))
RPC_MAX_ATTEMPTS = 3
RPC_BACKOFF_BASE = 0.5  # seconds, doubled per attempt
RPC_BACKOFF_MAX = 4.0

# Post-submission confirmation polling (inside one request)
CONFIRM_POLL_ATTEMPTS = 5
CONFIRM_POLL_INTERVAL = 1.0

# A submitted transaction the chain has never seen after this long can no
# longer land (its blockhash has expired)
PENDING_EXPIRY_SECONDS = 180

RECONCILE_INTERVAL = int(os.environ.get("VULNERA_RECONCILE_INTERVAL", "15"))

# --- Web tier ---

RATE_LIMIT = 100  # requests
RATE_WINDOW = 60  # seconds
REQUEST_MAX_AGE = 300  # signed request freshness, seconds

# Explorer links
EXPLORER_URL = "https://explorer.solana.com"
DEFAULT_CLUSTER = "devnet"


# --- State machines ---

class BountyStatus(Enum):
    DRAFT = "DRAFT"
    ACTIVE = "ACTIVE"
    PAUSED = "PAUSED"
    CLOSED = "CLOSED"


BOUNTY_TRANSITIONS = {
    BountyStatus.DRAFT: {BountyStatus.ACTIVE, BountyStatus.CLOSED},
    BountyStatus.ACTIVE: {BountyStatus.PAUSED, BountyStatus.CLOSED},
    BountyStatus.PAUSED: {BountyStatus.ACTIVE, BountyStatus.CLOSED},
    BountyStatus.CLOSED: set(),
}


class EscrowState(Enum):
    UNFUNDED = "UNFUNDED"
    PENDING_INIT = "PENDING_INIT"  # address derived, init tx not yet confirmed
    FUNDED = "FUNDED"
    PAID = "PAID"  # at least one release confirmed
    CLOSING = "CLOSING"  # withdrawal claimed and submitted, not yet confirmed
    CLOSED = "CLOSED"


ESCROW_TRANSITIONS = {
    EscrowState.UNFUNDED: {EscrowState.PENDING_INIT},
    EscrowState.PENDING_INIT: {EscrowState.PENDING_INIT, EscrowState.FUNDED},
    EscrowState.FUNDED: {EscrowState.FUNDED, EscrowState.PAID, EscrowState.CLOSING},
    EscrowState.PAID: {EscrowState.PAID, EscrowState.CLOSING},
    # A failed withdrawal reverts to the state it was claimed from
    EscrowState.CLOSING: {EscrowState.CLOSED, EscrowState.FUNDED, EscrowState.PAID},
    EscrowState.CLOSED: set(),
}

# States in which the escrow holds releasable funds
FUNDED_STATES = {EscrowState.FUNDED, EscrowState.PAID}


class PaymentStatus(Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    FAILED = "FAILED"


class SubmissionStatus(Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class UserRole(Enum):
    USER = "USER"
    ADMIN = "ADMIN"


# Kinds of client-reported signatures recorded as chain receipts
RECEIPT_KINDS = {"init", "deposit", "register"}
