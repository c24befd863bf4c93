"""Bounty, escrow and payment storage for the Vulnera service.

SQLite-backed records with state machine enforcement. Every status change is a
conditional UPDATE (WHERE state IN ...) inside a locked BEGIN IMMEDIATE
transaction, so concurrent requests cannot both make the same transition.
"""

import logging
import sqlite3
import threading
import time
import uuid
from contextlib import contextmanager

from vulnera.errors import ConflictError, NotFoundError, ValidationError
from vulnera.protocol import (
    BOUNTY_TRANSITIONS, ESCROW_TRANSITIONS, RECEIPT_KINDS, BountyStatus,
    EscrowState, PaymentStatus, SubmissionStatus, UserRole,
)

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS users (
    wallet TEXT PRIMARY KEY,
    role TEXT NOT NULL DEFAULT 'USER',
    created_at REAL NOT NULL
);
CREATE TABLE IF NOT EXISTS companies (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    wallet_address TEXT NOT NULL,
    smart_contract_address TEXT,
    is_verified INTEGER NOT NULL DEFAULT 0,
    total_funded INTEGER NOT NULL DEFAULT 0,
    total_paid INTEGER NOT NULL DEFAULT 0,
    created_at REAL NOT NULL,
    updated_at REAL NOT NULL
);
CREATE TABLE IF NOT EXISTS company_members (
    company_id TEXT NOT NULL REFERENCES companies(id),
    wallet TEXT NOT NULL,
    is_active INTEGER NOT NULL DEFAULT 1,
    can_approve_payment INTEGER NOT NULL DEFAULT 0,
    created_at REAL NOT NULL,
    PRIMARY KEY (company_id, wallet)
);
CREATE TABLE IF NOT EXISTS bounties (
    id TEXT PRIMARY KEY,
    company_id TEXT NOT NULL REFERENCES companies(id),
    title TEXT NOT NULL,
    reward_amount INTEGER NOT NULL,
    max_submissions INTEGER,
    status TEXT NOT NULL DEFAULT 'DRAFT',
    escrow_address TEXT UNIQUE,
    escrow_owner TEXT,
    escrow_state TEXT NOT NULL DEFAULT 'UNFUNDED',
    escrow_expected INTEGER NOT NULL DEFAULT 0,
    escrow_funded INTEGER NOT NULL DEFAULT 0,
    paid_out INTEGER NOT NULL DEFAULT 0,
    withdraw_signature TEXT,
    withdraw_amount INTEGER,
    withdraw_prev_state TEXT,
    withdraw_submitted_at REAL,
    created_at REAL NOT NULL,
    updated_at REAL NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_bounty_escrow_state ON bounties(escrow_state);
CREATE TABLE IF NOT EXISTS submissions (
    id TEXT PRIMARY KEY,
    bounty_id TEXT NOT NULL REFERENCES bounties(id),
    researcher_wallet TEXT NOT NULL,
    title TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'PENDING',
    payment_id TEXT,
    created_at REAL NOT NULL,
    updated_at REAL NOT NULL
);
CREATE TABLE IF NOT EXISTS payments (
    id TEXT PRIMARY KEY,
    submission_id TEXT NOT NULL REFERENCES submissions(id),
    bounty_id TEXT NOT NULL REFERENCES bounties(id),
    recipient_wallet TEXT NOT NULL,
    gross INTEGER NOT NULL,
    fee INTEGER NOT NULL,
    net INTEGER NOT NULL,
    tx_signature TEXT UNIQUE,
    status TEXT NOT NULL DEFAULT 'PENDING',
    failure_reason TEXT,
    submitted_at REAL,
    created_at REAL NOT NULL,
    updated_at REAL NOT NULL
);
CREATE UNIQUE INDEX IF NOT EXISTS idx_payment_live_submission
    ON payments(submission_id) WHERE status != 'FAILED';
CREATE INDEX IF NOT EXISTS idx_payment_status ON payments(status);
CREATE TABLE IF NOT EXISTS chain_receipts (
    signature TEXT PRIMARY KEY,
    kind TEXT NOT NULL,
    bounty_id TEXT,
    company_id TEXT,
    amount INTEGER NOT NULL DEFAULT 0,
    created_at REAL NOT NULL
);
"""


def _new_id() -> str:
    return uuid.uuid4().hex[:16]


def _escrow_states(states) -> tuple[str, ...]:
    return tuple(s.value for s in states)


class BountyStore:
    """SQLite-backed storage with state machine enforcement."""

    def __init__(self, db_path: str = ":memory:"):
        # Autocommit mode: transactions are opened explicitly in transaction()
        self.db = sqlite3.connect(db_path, check_same_thread=False, isolation_level=None)
        self.db.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._init_db()

    def _init_db(self):
        self.db.execute("PRAGMA journal_mode=WAL")
        self.db.execute("PRAGMA foreign_keys=ON")
        self.db.executescript(_SCHEMA)

    @contextmanager
    def transaction(self):
        """Serialize a read-check-write sequence. Rolls back on any exception."""
        with self._lock:
            if self.db.in_transaction:
                # Nested: the outer block owns commit/rollback
                yield self.db
                return
            self.db.execute("BEGIN IMMEDIATE")
            try:
                yield self.db
            except BaseException:
                self.db.execute("ROLLBACK")
                raise
            self.db.execute("COMMIT")

    def _one(self, sql: str, params=()) -> dict | None:
        with self._lock:
            row = self.db.execute(sql, params).fetchone()
        return dict(row) if row else None

    def _all(self, sql: str, params=()) -> list[dict]:
        with self._lock:
            rows = self.db.execute(sql, params).fetchall()
        return [dict(r) for r in rows]

    # --- Users ---

    def ensure_user(self, wallet: str, role: UserRole = UserRole.USER) -> dict:
        with self.transaction() as db:
            db.execute(
                "INSERT OR IGNORE INTO users (wallet, role, created_at) VALUES (?, ?, ?)",
                (wallet, role.value, time.time()),
            )
        return self.get_user(wallet)

    def get_user(self, wallet: str) -> dict | None:
        return self._one("SELECT * FROM users WHERE wallet = ?", (wallet,))

    def set_role(self, wallet: str, role: UserRole):
        with self.transaction() as db:
            db.execute(
                "INSERT INTO users (wallet, role, created_at) VALUES (?, ?, ?) "
                "ON CONFLICT(wallet) DO UPDATE SET role = excluded.role",
                (wallet, role.value, time.time()),
            )

    # --- Companies ---

    def create_company(self, name: str, wallet_address: str, owner_wallet: str) -> str:
        """Create a company. The creator becomes an active member who can approve payments."""
        company_id = _new_id()
        now = time.time()
        with self.transaction() as db:
            db.execute(
                "INSERT INTO companies (id, name, wallet_address, created_at, updated_at) VALUES (?, ?, ?, ?, ?)",
                (company_id, name, wallet_address, now, now),
            )
            db.execute(
                "INSERT INTO company_members (company_id, wallet, is_active, can_approve_payment, created_at) "
                "VALUES (?, ?, 1, 1, ?)",
                (company_id, owner_wallet, now),
            )
        return company_id

    def get_company(self, company_id: str) -> dict | None:
        return self._one("SELECT * FROM companies WHERE id = ?", (company_id,))

    def add_member(self, company_id: str, wallet: str, can_approve_payment: bool = False,
                   is_active: bool = True):
        with self.transaction() as db:
            db.execute(
                "INSERT INTO company_members (company_id, wallet, is_active, can_approve_payment, created_at) "
                "VALUES (?, ?, ?, ?, ?) ON CONFLICT(company_id, wallet) DO UPDATE SET "
                "is_active = excluded.is_active, can_approve_payment = excluded.can_approve_payment",
                (company_id, wallet, int(is_active), int(can_approve_payment), time.time()),
            )

    def get_member(self, company_id: str, wallet: str) -> dict | None:
        return self._one(
            "SELECT * FROM company_members WHERE company_id = ? AND wallet = ?",
            (company_id, wallet),
        )

    def list_members(self, company_id: str) -> list[dict]:
        return self._all(
            "SELECT * FROM company_members WHERE company_id = ? ORDER BY created_at", (company_id,),
        )

    def verify_company(self, company_id: str, signature: str, smart_contract_address: str | None) -> bool:
        """Mark a company verified against a confirmed registration transaction."""
        with self.transaction() as db:
            self._add_receipt(db, signature, "register", company_id=company_id)
            cursor = db.execute(
                "UPDATE companies SET is_verified = 1, "
                "smart_contract_address = COALESCE(?, smart_contract_address), updated_at = ? WHERE id = ?",
                (smart_contract_address, time.time(), company_id),
            )
            if cursor.rowcount == 0:
                raise NotFoundError("Company not found")
        return True

    # --- Bounties ---

    def create_bounty(self, company_id: str, title: str, reward_amount: int,
                      max_submissions: int | None = None) -> str:
        bounty_id = _new_id()
        now = time.time()
        with self.transaction() as db:
            db.execute(
                "INSERT INTO bounties (id, company_id, title, reward_amount, max_submissions, created_at, updated_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?)",
                (bounty_id, company_id, title, reward_amount, max_submissions, now, now),
            )
        return bounty_id

    def get_bounty(self, bounty_id: str) -> dict | None:
        return self._one("SELECT * FROM bounties WHERE id = ?", (bounty_id,))

    def get_bounty_by_withdraw_signature(self, signature: str) -> dict | None:
        return self._one("SELECT * FROM bounties WHERE withdraw_signature = ?", (signature,))

    def update_bounty_status(self, bounty_id: str, status: BountyStatus) -> bool:
        """Update bounty status with state machine enforcement."""
        with self.transaction() as db:
            row = db.execute("SELECT status FROM bounties WHERE id = ?", (bounty_id,)).fetchone()
            if not row:
                return False
            current = BountyStatus(row["status"])
            if status not in BOUNTY_TRANSITIONS[current]:
                raise ValueError(f"Invalid state transition: {current.value} -> {status.value}")
            cursor = db.execute(
                "UPDATE bounties SET status = ?, updated_at = ? WHERE id = ? AND status = ?",
                (status.value, time.time(), bounty_id, current.value),
            )
            return cursor.rowcount > 0

    # --- Escrow transitions ---

    def _transition_escrow(self, db, bounty_id: str, from_states, to_state: EscrowState,
                           sets: str = "", params=()) -> bool:
        for state in from_states:
            if to_state not in ESCROW_TRANSITIONS[state]:
                raise ValueError(f"Invalid escrow transition: {state.value} -> {to_state.value}")
        allowed = _escrow_states(from_states)
        placeholders = ", ".join("?" for _ in allowed)
        extra = f", {sets}" if sets else ""
        cursor = db.execute(
            f"UPDATE bounties SET escrow_state = ?, updated_at = ?{extra} "
            f"WHERE id = ? AND escrow_state IN ({placeholders})",
            (to_state.value, time.time(), *params, bounty_id, *allowed),
        )
        return cursor.rowcount > 0

    def record_escrow_address(self, bounty_id: str, escrow_address: str, owner_wallet: str,
                              expected_amount: int) -> bool:
        """UNFUNDED -> PENDING_INIT, setting the derived address once.

        Repeating the call with the same address and owner while still
        PENDING_INIT re-issues the init: the expected amount becomes the latest
        one the client was handed. Returns False if the bounty already has a
        different escrow or is past PENDING_INIT.
        """
        with self.transaction() as db:
            row = db.execute(
                "SELECT escrow_state, escrow_address, escrow_owner FROM bounties WHERE id = ?",
                (bounty_id,),
            ).fetchone()
            if not row:
                raise NotFoundError("Bounty not found")
            if row["escrow_address"] is not None:
                if row["escrow_address"] != escrow_address or row["escrow_owner"] != owner_wallet:
                    return False
                cursor = db.execute(
                    "UPDATE bounties SET escrow_expected = ?, updated_at = ? "
                    "WHERE id = ? AND escrow_state = ?",
                    (expected_amount, time.time(), bounty_id, EscrowState.PENDING_INIT.value),
                )
                return cursor.rowcount > 0
            try:
                return self._transition_escrow(
                    db, bounty_id, [EscrowState.UNFUNDED], EscrowState.PENDING_INIT,
                    "escrow_address = ?, escrow_owner = ?, escrow_expected = ?",
                    (escrow_address, owner_wallet, expected_amount),
                )
            except sqlite3.IntegrityError:
                # Address already bound to another bounty
                return False

    def apply_escrow_init(self, bounty_id: str, signature: str, observed_balance: int) -> bool:
        """PENDING_INIT -> FUNDED after the init transaction confirmed.

        One transaction: receipt, escrow state and balance, bounty DRAFT -> ACTIVE,
        company total_funded.
        """
        with self.transaction() as db:
            self._add_receipt(db, signature, "init", bounty_id=bounty_id, amount=observed_balance)
            if not self._transition_escrow(
                db, bounty_id, [EscrowState.PENDING_INIT], EscrowState.FUNDED,
                "escrow_funded = ?", (observed_balance,),
            ):
                raise ConflictError("Escrow is not awaiting initialization")
            db.execute(
                "UPDATE bounties SET status = ? WHERE id = ? AND status = ?",
                (BountyStatus.ACTIVE.value, bounty_id, BountyStatus.DRAFT.value),
            )
            db.execute(
                "UPDATE companies SET total_funded = total_funded + ?, updated_at = ? "
                "WHERE id = (SELECT company_id FROM bounties WHERE id = ?)",
                (observed_balance, time.time(), bounty_id),
            )
        return True

    def apply_deposit(self, bounty_id: str, signature: str, amount: int) -> bool:
        """Credit a confirmed deposit to the escrow and its company."""
        with self.transaction() as db:
            self._add_receipt(db, signature, "deposit", bounty_id=bounty_id, amount=amount)
            state = self._escrow_state(db, bounty_id)
            # Deposits keep the escrow in its current funded state
            if state not in (EscrowState.FUNDED, EscrowState.PAID) or not self._transition_escrow(
                db, bounty_id, [state], state, "escrow_funded = escrow_funded + ?", (amount,),
            ):
                raise ConflictError("Escrow is not accepting deposits")
            db.execute(
                "UPDATE companies SET total_funded = total_funded + ?, updated_at = ? "
                "WHERE id = (SELECT company_id FROM bounties WHERE id = ?)",
                (amount, time.time(), bounty_id),
            )
        return True

    def _escrow_state(self, db, bounty_id: str) -> EscrowState | None:
        row = db.execute("SELECT escrow_state FROM bounties WHERE id = ?", (bounty_id,)).fetchone()
        return EscrowState(row["escrow_state"]) if row else None

    def _add_receipt(self, db, signature: str, kind: str, bounty_id: str | None = None,
                     company_id: str | None = None, amount: int = 0):
        if kind not in RECEIPT_KINDS:
            raise ValueError(f"Unknown receipt kind: {kind}")
        try:
            db.execute(
                "INSERT INTO chain_receipts (signature, kind, bounty_id, company_id, amount, created_at) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (signature, kind, bounty_id, company_id, amount, time.time()),
            )
        except sqlite3.IntegrityError:
            raise ConflictError("Transaction signature already used", signature=signature)

    def get_receipt(self, signature: str) -> dict | None:
        return self._one("SELECT * FROM chain_receipts WHERE signature = ?", (signature,))

    # --- Withdrawal ---

    def claim_withdrawal(self, bounty_id: str, amount: int) -> bool:
        """FUNDED/PAID -> CLOSING. Fails if any payment is still PENDING."""
        with self.transaction() as db:
            pending = db.execute(
                "SELECT 1 FROM payments WHERE bounty_id = ? AND status = ?",
                (bounty_id, PaymentStatus.PENDING.value),
            ).fetchone()
            if pending:
                return False
            return self._transition_escrow(
                db, bounty_id, [EscrowState.FUNDED, EscrowState.PAID], EscrowState.CLOSING,
                "withdraw_prev_state = escrow_state, withdraw_amount = ?, "
                "withdraw_signature = NULL, withdraw_submitted_at = NULL",
                (amount,),
            )

    def set_withdraw_signature(self, bounty_id: str, signature: str) -> bool:
        with self.transaction() as db:
            cursor = db.execute(
                "UPDATE bounties SET withdraw_signature = ?, withdraw_submitted_at = ?, updated_at = ? "
                "WHERE id = ? AND escrow_state = ?",
                (signature, time.time(), time.time(), bounty_id, EscrowState.CLOSING.value),
            )
            return cursor.rowcount > 0

    def complete_withdrawal(self, bounty_id: str) -> bool:
        with self.transaction() as db:
            return self._transition_escrow(db, bounty_id, [EscrowState.CLOSING], EscrowState.CLOSED)

    def revert_withdrawal(self, bounty_id: str) -> bool:
        """CLOSING -> the state the withdrawal was claimed from."""
        with self.transaction() as db:
            row = db.execute(
                "SELECT withdraw_prev_state FROM bounties WHERE id = ? AND escrow_state = ?",
                (bounty_id, EscrowState.CLOSING.value),
            ).fetchone()
            if not row:
                return False
            previous = EscrowState(row["withdraw_prev_state"] or EscrowState.FUNDED.value)
            return self._transition_escrow(
                db, bounty_id, [EscrowState.CLOSING], previous,
                "withdraw_signature = NULL, withdraw_amount = NULL, withdraw_submitted_at = NULL",
            )

    def list_closing_bounties(self) -> list[dict]:
        return self._all(
            "SELECT * FROM bounties WHERE escrow_state = ? ORDER BY updated_at",
            (EscrowState.CLOSING.value,),
        )

    # --- Submissions ---

    def create_submission(self, bounty_id: str, researcher_wallet: str, title: str) -> str:
        submission_id = _new_id()
        now = time.time()
        with self.transaction() as db:
            db.execute(
                "INSERT INTO submissions (id, bounty_id, researcher_wallet, title, created_at, updated_at) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (submission_id, bounty_id, researcher_wallet, title, now, now),
            )
        return submission_id

    def get_submission(self, submission_id: str) -> dict | None:
        return self._one("SELECT * FROM submissions WHERE id = ?", (submission_id,))

    def review_submission(self, submission_id: str, status: SubmissionStatus) -> bool:
        """PENDING -> APPROVED or REJECTED."""
        if status == SubmissionStatus.PENDING:
            raise ValueError("Submission can only be approved or rejected")
        with self.transaction() as db:
            cursor = db.execute(
                "UPDATE submissions SET status = ?, updated_at = ? WHERE id = ? AND status = ?",
                (status.value, time.time(), submission_id, SubmissionStatus.PENDING.value),
            )
            return cursor.rowcount > 0

    # --- Payments ---

    def claim_payment(self, bounty_id: str, submission_id: str, recipient_wallet: str,
                      gross: int, fee: int, net: int) -> str:
        """Insert a PENDING payment, claiming the submission.

        Raises ConflictError if the submission already has a live payment or
        the escrow stopped accepting releases, ValidationError if the bounty's
        max_submissions is reached.
        """
        payment_id = _new_id()
        now = time.time()
        with self.transaction() as db:
            bounty = db.execute(
                "SELECT escrow_state, max_submissions FROM bounties WHERE id = ?", (bounty_id,),
            ).fetchone()
            if not bounty:
                raise NotFoundError("Bounty not found")
            if bounty["escrow_state"] not in _escrow_states([EscrowState.FUNDED, EscrowState.PAID]):
                raise ConflictError(f"Escrow is {bounty['escrow_state']}, not releasable")
            if bounty["max_submissions"] is not None:
                paid = db.execute(
                    "SELECT COUNT(*) FROM payments WHERE bounty_id = ? AND status != ?",
                    (bounty_id, PaymentStatus.FAILED.value),
                ).fetchone()[0]
                if paid >= bounty["max_submissions"]:
                    raise ValidationError("Maximum submissions reached for this bounty")
            try:
                db.execute(
                    "INSERT INTO payments (id, submission_id, bounty_id, recipient_wallet, gross, fee, net, "
                    "status, created_at, updated_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    (payment_id, submission_id, bounty_id, recipient_wallet, gross, fee, net,
                     PaymentStatus.PENDING.value, now, now),
                )
            except sqlite3.IntegrityError:
                raise ConflictError("Payment already processed for this submission")
        return payment_id

    def set_payment_signature(self, payment_id: str, signature: str) -> bool:
        with self.transaction() as db:
            cursor = db.execute(
                "UPDATE payments SET tx_signature = ?, submitted_at = ?, updated_at = ? "
                "WHERE id = ? AND status = ? AND tx_signature IS NULL",
                (signature, time.time(), time.time(), payment_id, PaymentStatus.PENDING.value),
            )
            return cursor.rowcount > 0

    def confirm_payment(self, payment_id: str) -> bool:
        """PENDING -> CONFIRMED, crediting bounty paid_out and company total_paid.

        Returns False if the payment was already resolved.
        """
        now = time.time()
        with self.transaction() as db:
            payment = db.execute("SELECT * FROM payments WHERE id = ?", (payment_id,)).fetchone()
            if not payment:
                raise NotFoundError("Payment not found")
            cursor = db.execute(
                "UPDATE payments SET status = ?, failure_reason = NULL, updated_at = ? WHERE id = ? AND status = ?",
                (PaymentStatus.CONFIRMED.value, now, payment_id, PaymentStatus.PENDING.value),
            )
            if cursor.rowcount == 0:
                return False
            gross, bounty_id = payment["gross"], payment["bounty_id"]
            db.execute(
                "UPDATE submissions SET payment_id = ?, updated_at = ? WHERE id = ?",
                (payment_id, now, payment["submission_id"]),
            )
            db.execute(
                "UPDATE bounties SET paid_out = paid_out + ? WHERE id = ?", (gross, bounty_id),
            )
            self._transition_escrow(db, bounty_id, [EscrowState.FUNDED, EscrowState.PAID], EscrowState.PAID)
            db.execute(
                "UPDATE companies SET total_paid = total_paid + ?, updated_at = ? "
                "WHERE id = (SELECT company_id FROM bounties WHERE id = ?)",
                (gross, now, bounty_id),
            )
        return True

    def fail_payment(self, payment_id: str, reason: str) -> bool:
        with self.transaction() as db:
            cursor = db.execute(
                "UPDATE payments SET status = ?, failure_reason = ?, updated_at = ? WHERE id = ? AND status = ?",
                (PaymentStatus.FAILED.value, reason, time.time(), payment_id, PaymentStatus.PENDING.value),
            )
            return cursor.rowcount > 0

    def get_payment(self, payment_id: str) -> dict | None:
        return self._one("SELECT * FROM payments WHERE id = ?", (payment_id,))

    def get_payment_by_signature(self, signature: str) -> dict | None:
        return self._one("SELECT * FROM payments WHERE tx_signature = ?", (signature,))

    def list_pending_payments(self, limit: int = 100) -> list[dict]:
        return self._all(
            "SELECT * FROM payments WHERE status = ? ORDER BY created_at LIMIT ?",
            (PaymentStatus.PENDING.value, limit),
        )

    def count_live_payments(self, bounty_id: str) -> int:
        """PENDING plus CONFIRMED payments of a bounty."""
        row = self._one(
            "SELECT COUNT(*) AS n FROM payments WHERE bounty_id = ? AND status != ?",
            (bounty_id, PaymentStatus.FAILED.value),
        )
        return row["n"]

    def has_pending_payments(self, bounty_id: str) -> bool:
        return self._one(
            "SELECT 1 AS x FROM payments WHERE bounty_id = ? AND status = ?",
            (bounty_id, PaymentStatus.PENDING.value),
        ) is not None

    def close(self):
        self.db.close()
