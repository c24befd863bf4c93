"""Escrow payment coordination for the Vulnera platform.

Keeps bounty, company and payment records consistent with the on-chain escrow
program. The chain owns custody; the store only records effects the chain has
confirmed:

- create: derive the escrow address, hand the client an unsigned init
  instruction. No funds move here.
- confirm / deposit: the client reports the signature of what it signed, the
  oracle must report it confirmed before anything is credited.
- release / withdraw: signed by the release authority. The record is claimed
  and the signature persisted before submission, so a crash or timeout leaves
  a PENDING record the reconciler can resolve, never a lost one.
"""

import logging
import time
from dataclasses import dataclass

from vulnera.authz import Authorizer, Caller
from vulnera.crypto import verify_wallet_signature
from vulnera.errors import (
    AuthorizationError, ConflictError, InsufficientFundsError,
    InvalidSignatureError, NotFoundError, RpcUnavailableError,
    TransactionRejectedError, UnconfirmedTransactionError, ValidationError,
)
from vulnera.protocol import (
    BPS_DENOMINATOR, CONFIRM_POLL_ATTEMPTS, CONFIRM_POLL_INTERVAL,
    DEFAULT_CLUSTER, FUNDED_STATES, MIN_ESCROW_AMOUNT, PENDING_EXPIRY_SECONDS,
    PLATFORM_FEE_BPS, PROGRAM_ID, RPC_BACKOFF_BASE, RPC_BACKOFF_MAX,
    RPC_MAX_ATTEMPTS, BountyStatus, EscrowState, PaymentStatus,
    SubmissionStatus,
)
from vulnera.solana import (
    ChainBackend, TransactionStatus, deposit_descriptor, derive_escrow_address,
    explorer_url, initialize_descriptor, validate_tx_signature,
    validate_wallet_address,
)
from vulnera.store import BountyStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Fee:
    fee: int
    net: int


def compute_fee(gross: int, fee_bps: int = PLATFORM_FEE_BPS) -> Fee:
    """Platform fee in integer lamports, rounded down. fee + net == gross."""
    if not isinstance(gross, int) or isinstance(gross, bool) or gross < 0:
        raise ValidationError("Amount must be a non-negative integer number of lamports")
    if not isinstance(fee_bps, int) or not 0 <= fee_bps <= BPS_DENOMINATOR:
        raise ValidationError(f"Fee rate must be between 0 and {BPS_DENOMINATOR} basis points")
    fee = gross * fee_bps // BPS_DENOMINATOR
    return Fee(fee=fee, net=gross - fee)


def _positive_amount(amount, what: str = "Amount") -> int:
    if not isinstance(amount, int) or isinstance(amount, bool) or amount <= 0:
        raise ValidationError(f"{what} must be a positive integer number of lamports")
    return amount


class EscrowCoordinator:
    """Runs the escrow lifecycle against the store and the chain backend."""

    def __init__(
        self,
        store: BountyStore,
        backend: ChainBackend,
        authorizer: Authorizer | None = None,
        fee_bps: int = PLATFORM_FEE_BPS,
        program_id: str = PROGRAM_ID,
        cluster: str = DEFAULT_CLUSTER,
        max_attempts: int = RPC_MAX_ATTEMPTS,
        backoff_base: float = RPC_BACKOFF_BASE,
        backoff_max: float = RPC_BACKOFF_MAX,
        poll_attempts: int = CONFIRM_POLL_ATTEMPTS,
        poll_interval: float = CONFIRM_POLL_INTERVAL,
        pending_expiry: float = PENDING_EXPIRY_SECONDS,
        sleep=time.sleep,
        clock=time.time,
    ):
        compute_fee(0, fee_bps)  # validates the rate
        self.store = store
        self.backend = backend
        self.authorizer = authorizer or Authorizer(store)
        self.fee_bps = fee_bps
        self.program_id = program_id
        self.cluster = cluster
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self.poll_attempts = poll_attempts
        self.poll_interval = poll_interval
        self.pending_expiry = pending_expiry
        self.sleep = sleep
        self.clock = clock

    # --- Oracle access ---

    def _with_retry(self, what: str, fn, *args):
        """Call an idempotent chain read, retrying RpcUnavailableError with capped backoff."""
        delay = self.backoff_base
        for attempt in range(1, self.max_attempts + 1):
            try:
                return fn(*args)
            except RpcUnavailableError as e:
                if attempt == self.max_attempts:
                    logger.warning("%s failed after %d attempts: %s", what, attempt, e.message)
                    raise
                logger.warning("%s failed (attempt %d/%d), retrying in %.1fs: %s",
                               what, attempt, self.max_attempts, delay, e.message)
                self.sleep(delay)
                delay = min(delay * 2, self.backoff_max)

    def _signature_status(self, signature: str) -> TransactionStatus:
        return self._with_retry("getSignatureStatus", self.backend.get_signature_status, signature)

    def _escrow_balance(self, escrow_address: str) -> int:
        return self._with_retry("getEscrowBalance", self.backend.get_escrow_balance, escrow_address)

    def _await_confirmation(self, signature: str) -> TransactionStatus:
        """Poll a just-submitted signature a bounded number of times."""
        status = TransactionStatus(signature, "pending")
        for attempt in range(self.poll_attempts):
            try:
                status = self.backend.get_signature_status(signature)
            except RpcUnavailableError as e:
                logger.warning("status poll for %s failed: %s", signature, e.message)
            else:
                if status.terminal:
                    return status
            if attempt + 1 < self.poll_attempts:
                self.sleep(self.poll_interval)
        return status

    # --- Lookups ---

    def _bounty(self, bounty_id: str) -> dict:
        bounty = self.store.get_bounty(bounty_id)
        if not bounty:
            raise NotFoundError("Bounty not found")
        return bounty

    def _require_confirmed(self, signature: str) -> TransactionStatus:
        status = self._signature_status(signature)
        if not status.confirmed:
            logger.warning("transaction %s not confirmed: %s", signature, status.status)
            raise UnconfirmedTransactionError(
                "Transaction not confirmed", verification={"signature": signature, **status.to_dict()},
            )
        return status

    def _require_unused(self, signature: str):
        if self.store.get_receipt(signature):
            raise ConflictError("Transaction signature already used", signature=signature)

    # --- Escrow creation and funding ---

    def create_escrow(self, caller: Caller, bounty_id: str, owner_wallet: str, amount: int) -> dict:
        """Derive the bounty's escrow and return the unsigned init instruction."""
        if not isinstance(amount, int) or isinstance(amount, bool) or amount < MIN_ESCROW_AMOUNT:
            raise ValidationError(f"Minimum escrow amount is {MIN_ESCROW_AMOUNT} lamports (0.1 SOL)")
        validate_wallet_address(owner_wallet)
        bounty = self._bounty(bounty_id)
        self.authorizer.require_bounty_funds(caller, bounty_id)

        if bounty["escrow_owner"] and bounty["escrow_owner"] != owner_wallet:
            raise ConflictError("Bounty escrow already created by another wallet")
        if EscrowState(bounty["escrow_state"]) not in (EscrowState.UNFUNDED, EscrowState.PENDING_INIT):
            raise ConflictError("Bounty escrow already initialized")

        balance = self._with_retry("getBalance", self.backend.get_balance, owner_wallet)
        if balance < amount:
            raise InsufficientFundsError(
                "Insufficient wallet balance", balance=balance, required=amount,
            )

        escrow_address, bump = derive_escrow_address(owner_wallet, bounty_id, self.program_id)
        if not self.store.record_escrow_address(bounty_id, escrow_address, owner_wallet, amount):
            raise ConflictError("Bounty escrow already created")
        logger.info("escrow %s derived for bounty %s (owner %s, %d lamports)",
                    escrow_address, bounty_id, owner_wallet, amount)
        return {
            "escrowAddress": escrow_address,
            "expectedAmount": amount,
            "bountyId": bounty_id,
            "bump": bump,
            "transaction": initialize_descriptor(owner_wallet, bounty_id, amount, self.program_id),
        }

    def confirm_escrow_init(self, caller: Caller, bounty_id: str, tx_signature: str) -> dict:
        """Credit the escrow once the client's signed init transaction is confirmed."""
        validate_tx_signature(tx_signature)
        bounty = self._bounty(bounty_id)
        self.authorizer.require_bounty_funds(caller, bounty_id)
        if bounty["escrow_state"] != EscrowState.PENDING_INIT.value:
            raise ConflictError(f"Escrow is {bounty['escrow_state']}, not awaiting initialization")
        self._require_unused(tx_signature)

        status = self._require_confirmed(tx_signature)
        balance = self._escrow_balance(bounty["escrow_address"])
        if balance < bounty["escrow_expected"]:
            raise InsufficientFundsError(
                "Escrow balance below expected amount",
                escrowBalance=balance, expectedAmount=bounty["escrow_expected"],
            )

        self.store.apply_escrow_init(bounty_id, tx_signature, balance)
        logger.info("escrow %s funded with %d lamports (bounty %s, tx %s)",
                    bounty["escrow_address"], balance, bounty_id, tx_signature)
        return {
            "bounty": self.store.get_bounty(bounty_id),
            "verification": {"signature": tx_signature, **status.to_dict()},
        }

    def prepare_deposit(self, caller: Caller, bounty_id: str, amount: int) -> dict:
        _positive_amount(amount)
        bounty = self._bounty(bounty_id)
        self.authorizer.require_bounty_funds(caller, bounty_id)
        if not bounty["escrow_address"] or bounty["escrow_state"] not in {s.value for s in FUNDED_STATES}:
            raise ValidationError("Bounty escrow not initialized")
        if bounty["status"] != BountyStatus.ACTIVE.value:
            raise ValidationError("Bounty must be active to accept deposits")
        return {
            "depositParams": {
                "programId": self.program_id,
                "bountyId": bounty_id,
                "escrowAddress": bounty["escrow_address"],
                "ownerWallet": bounty["escrow_owner"],
                "amount": amount,
                "transaction": deposit_descriptor(
                    bounty["escrow_owner"], bounty["escrow_address"], bounty_id, amount, self.program_id,
                ),
            }
        }

    def confirm_deposit(self, caller: Caller, bounty_id: str, tx_signature: str, amount: int) -> dict:
        """Credit a confirmed, client-signed deposit."""
        validate_tx_signature(tx_signature)
        _positive_amount(amount)
        bounty = self._bounty(bounty_id)
        self.authorizer.require_bounty_funds(caller, bounty_id)
        if bounty["escrow_state"] not in {s.value for s in FUNDED_STATES}:
            raise ValidationError("Escrow is not accepting deposits")
        self._require_unused(tx_signature)

        self._require_confirmed(tx_signature)
        balance = self._escrow_balance(bounty["escrow_address"])
        booked = bounty["escrow_funded"] - bounty["paid_out"]
        if balance < booked + amount:
            raise ValidationError(
                "Escrow balance does not reflect the deposit",
                escrowBalance=balance, expectedAtLeast=booked + amount,
            )

        self.store.apply_deposit(bounty_id, tx_signature, amount)
        logger.info("deposit of %d lamports credited to bounty %s (tx %s)", amount, bounty_id, tx_signature)
        return {
            "deposit": {
                "bountyId": bounty_id,
                "txSignature": tx_signature,
                "amount": amount,
                "escrowBalance": balance,
                "explorerUrl": explorer_url(tx_signature, self.cluster),
            }
        }

    # --- Release ---

    def release_payment(self, caller: Caller, bounty_id: str, submission_id: str,
                        escrow_address: str, recipient_wallet: str, amount: int) -> dict:
        _positive_amount(amount)
        validate_wallet_address(escrow_address)
        validate_wallet_address(recipient_wallet)
        split = compute_fee(amount, self.fee_bps)

        bounty = self._bounty(bounty_id)
        self.authorizer.require_bounty_funds(caller, bounty_id)
        submission = self.store.get_submission(submission_id)
        if not submission:
            raise NotFoundError("Submission not found")
        if submission["bounty_id"] != bounty_id:
            raise ValidationError("Submission does not belong to this bounty")
        if submission["status"] != SubmissionStatus.APPROVED.value:
            raise ValidationError("Submission must be approved before payment")
        if submission["payment_id"]:
            raise ConflictError("Payment already processed for this submission")
        if bounty["escrow_address"] != escrow_address:
            raise ValidationError("Escrow address does not match bounty")
        if bounty["escrow_state"] not in {s.value for s in FUNDED_STATES}:
            raise ValidationError("Bounty escrow not funded")
        if bounty["max_submissions"] is not None and \
                self.store.count_live_payments(bounty_id) >= bounty["max_submissions"]:
            raise ValidationError("Maximum submissions reached for this bounty")

        balance = self._escrow_balance(escrow_address)
        if balance < amount:
            raise InsufficientFundsError("Insufficient funds in escrow", escrowBalance=balance, required=amount)

        payment_id = self.store.claim_payment(
            bounty_id, submission_id, recipient_wallet, amount, split.fee, split.net,
        )
        try:
            signed = self._with_retry(
                "buildRelease", self.backend.build_release, escrow_address, bounty["escrow_owner"],
                recipient_wallet, bounty_id, submission_id, split.net, split.fee,
            )
        except Exception as e:
            # Nothing was signed or sent
            self.store.fail_payment(payment_id, f"build failed: {e}")
            raise
        self.store.set_payment_signature(payment_id, signed.signature)

        try:
            self.backend.submit(signed)
        except TransactionRejectedError as e:
            self.store.fail_payment(payment_id, e.message)
            logger.warning("payment %s rejected before landing: %s", payment_id, e.message)
            raise TransactionRejectedError(e.message, paymentId=payment_id, txSignature=signed.signature)
        except RpcUnavailableError as e:
            logger.error("payment %s submit outcome unknown (tx %s), left PENDING: %s",
                         payment_id, signed.signature, e.message)
            raise RpcUnavailableError(
                "Payment submitted but not confirmed; it will be reconciled",
                signature=signed.signature, paymentId=payment_id, txSignature=signed.signature,
            )

        status = self._await_confirmation(signed.signature)
        result_status = self._settle_payment(payment_id, status)
        if result_status == PaymentStatus.FAILED:
            raise TransactionRejectedError(
                f"Payment transaction failed: {status.error}",
                paymentId=payment_id, txSignature=signed.signature,
            )
        return {
            "paymentId": payment_id,
            "txSignature": signed.signature,
            "amount": split.net,
            "platformFee": split.fee,
            "grossAmount": amount,
            "status": result_status.value,
            "explorerUrl": explorer_url(signed.signature, self.cluster),
        }

    def _settle_payment(self, payment_id: str, status: TransactionStatus) -> PaymentStatus:
        if status.confirmed:
            self.store.confirm_payment(payment_id)
            logger.info("payment %s confirmed at slot %s", payment_id, status.slot)
            return PaymentStatus.CONFIRMED
        if status.status == "failed":
            self.store.fail_payment(payment_id, status.error or "transaction failed")
            logger.warning("payment %s failed on-chain: %s", payment_id, status.error)
            return PaymentStatus.FAILED
        return PaymentStatus.PENDING

    # --- Withdrawal ---

    def withdraw_escrow(self, caller: Caller, bounty_id: str, escrow_address: str, owner_wallet: str) -> dict:
        """Return the escrow remainder to its owner once the bounty is closed."""
        validate_wallet_address(escrow_address)
        validate_wallet_address(owner_wallet)
        bounty = self._bounty(bounty_id)
        self.authorizer.require_bounty_funds(caller, bounty_id)
        if bounty["status"] != BountyStatus.CLOSED.value:
            raise ValidationError("Bounty must be closed before withdrawing escrow")
        if bounty["escrow_address"] != escrow_address:
            raise ValidationError("Escrow address does not match bounty")
        if bounty["escrow_owner"] != owner_wallet:
            raise AuthorizationError("Only the escrow owner can withdraw")
        state = EscrowState(bounty["escrow_state"])
        if state in (EscrowState.CLOSING, EscrowState.CLOSED):
            raise ConflictError(f"Escrow is already {state.value}")
        if state not in FUNDED_STATES:
            raise ValidationError("Bounty escrow not funded")
        if self.store.has_pending_payments(bounty_id):
            raise ConflictError("Payments are still pending for this bounty")

        balance = self._escrow_balance(escrow_address)
        if balance <= 0:
            raise ValidationError("No funds remaining in escrow")

        if not self.store.claim_withdrawal(bounty_id, balance):
            raise ConflictError("Escrow withdrawal already in progress")
        try:
            signed = self._with_retry(
                "buildWithdraw", self.backend.build_withdraw, escrow_address, owner_wallet, bounty_id, balance,
            )
        except Exception:
            self.store.revert_withdrawal(bounty_id)
            raise
        self.store.set_withdraw_signature(bounty_id, signed.signature)

        try:
            self.backend.submit(signed)
        except TransactionRejectedError as e:
            self.store.revert_withdrawal(bounty_id)
            logger.warning("withdrawal for bounty %s rejected: %s", bounty_id, e.message)
            raise
        except RpcUnavailableError as e:
            logger.error("withdrawal for bounty %s outcome unknown (tx %s), left CLOSING: %s",
                         bounty_id, signed.signature, e.message)
            raise RpcUnavailableError(
                "Withdrawal submitted but not confirmed; it will be reconciled",
                signature=signed.signature, txSignature=signed.signature,
            )

        status = self._await_confirmation(signed.signature)
        state = self._settle_withdrawal(bounty_id, status)
        if state != EscrowState.CLOSING and state != EscrowState.CLOSED:
            raise TransactionRejectedError(
                f"Withdrawal transaction failed: {status.error}", txSignature=signed.signature,
            )
        return {
            "txSignature": signed.signature,
            "withdrawnAmount": balance,
            "status": state.value,
            "explorerUrl": explorer_url(signed.signature, self.cluster),
        }

    def _settle_withdrawal(self, bounty_id: str, status: TransactionStatus) -> EscrowState:
        if status.confirmed:
            self.store.complete_withdrawal(bounty_id)
            logger.info("escrow for bounty %s closed (tx %s)", bounty_id, status.signature)
        elif status.status == "failed":
            self.store.revert_withdrawal(bounty_id)
            logger.warning("withdrawal for bounty %s failed on-chain: %s", bounty_id, status.error)
        return EscrowState(self.store.get_bounty(bounty_id)["escrow_state"])

    # --- Verification ---

    def verify_transaction(self, signature: str) -> dict:
        validate_tx_signature(signature, exact=True)
        status = self._signature_status(signature)
        return {"signature": signature, **status.to_dict()}

    def get_transaction(self, signature: str) -> dict:
        validate_tx_signature(signature)
        tx = self._with_retry("getTransaction", self.backend.get_transaction, signature)
        if tx is None:
            raise NotFoundError("Transaction not found")
        tx["explorerUrl"] = explorer_url(signature, self.cluster)
        return tx

    def register_on_chain(self, caller: Caller, company_id: str, tx_signature: str,
                          smart_contract_address: str | None = None) -> dict:
        """Mark a company verified once its registration transaction is confirmed."""
        validate_tx_signature(tx_signature)
        if smart_contract_address:
            validate_wallet_address(smart_contract_address)
        if not self.store.get_company(company_id):
            raise NotFoundError("Company not found")
        self.authorizer.require_member(caller, company_id)
        self._require_unused(tx_signature)

        status = self._require_confirmed(tx_signature)
        self.store.verify_company(company_id, tx_signature, smart_contract_address)
        logger.info("company %s registered on-chain (tx %s)", company_id, tx_signature)
        return {
            "company": self.store.get_company(company_id),
            "verification": {"signature": tx_signature, **status.to_dict()},
        }

    def verify_wallet(self, wallet: str, message: str, signature: str) -> dict:
        validate_wallet_address(wallet)
        if not verify_wallet_signature(wallet, message, signature):
            raise InvalidSignatureError("Invalid wallet signature")
        return {"verified": True, "walletAddress": wallet}

    # --- Reconciliation ---

    def _expired(self, since: float | None) -> bool:
        return since is not None and self.clock() - since > self.pending_expiry

    def reconcile_payment(self, payment_id: str) -> dict:
        """Resolve a PENDING payment from the chain's view of its signature."""
        payment = self.store.get_payment(payment_id)
        if not payment:
            raise NotFoundError("Payment not found")
        if payment["status"] != PaymentStatus.PENDING.value:
            return payment

        signature = payment["tx_signature"]
        if signature is None:
            # Claimed but never signed, so never sent
            if self._expired(payment["created_at"]):
                self.store.fail_payment(payment_id, "never submitted")
                logger.warning("payment %s expired before submission", payment_id)
            return self.store.get_payment(payment_id)

        status = self._signature_status(signature)
        if status.status == "not_found":
            if self._expired(payment["submitted_at"]):
                self.store.fail_payment(payment_id, "expired: transaction never landed")
                logger.warning("payment %s expired, tx %s never landed", payment_id, signature)
        else:
            self._settle_payment(payment_id, status)
        return self.store.get_payment(payment_id)

    def reconcile_withdrawal(self, bounty_id: str) -> dict:
        """Resolve a CLOSING escrow from the chain's view of its withdrawal."""
        bounty = self._bounty(bounty_id)
        if bounty["escrow_state"] != EscrowState.CLOSING.value:
            return bounty

        signature = bounty["withdraw_signature"]
        if signature is None:
            if self._expired(bounty["updated_at"]):
                self.store.revert_withdrawal(bounty_id)
                logger.warning("withdrawal for bounty %s expired before submission", bounty_id)
            return self.store.get_bounty(bounty_id)

        status = self._signature_status(signature)
        if status.status == "not_found":
            if self._expired(bounty["withdraw_submitted_at"]):
                self.store.revert_withdrawal(bounty_id)
                logger.warning("withdrawal for bounty %s expired, tx %s never landed", bounty_id, signature)
        else:
            self._settle_withdrawal(bounty_id, status)
        return self.store.get_bounty(bounty_id)

    def handle_webhook(self, signature: str) -> dict:
        """A chain notification for a signature: re-check it, never trust the payload.

        Returns {"payment": ...} for a release or {"bounty": ...} for a withdrawal.
        """
        validate_tx_signature(signature)
        payment = self.store.get_payment_by_signature(signature)
        if payment:
            return {"payment": self.reconcile_payment(payment["id"])}
        bounty = self.store.get_bounty_by_withdraw_signature(signature)
        if bounty:
            return {"bounty": self.reconcile_withdrawal(bounty["id"])}
        raise NotFoundError("No payment or withdrawal for this signature")
