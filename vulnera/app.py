# SPDX-License-Identifier: AGPL-3.0-or-later
# Copyright (c) 2026 Karan Sharma
"""HTTP API for the Vulnera bounty platform (FastAPI).

Endpoints for the escrow lifecycle: create, confirm, deposit, release,
withdraw, plus transaction and wallet verification and the minimal company,
bounty and submission records the escrow flow needs.

Ed25519 authentication: every mutating request must be signed by the
caller's wallet (X-Vulnera-Wallet / -Timestamp / -Signature).
"""

import sys
import os
# Ensure parent directory is importable
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import logging
from typing import Optional

from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from pydantic import BaseModel
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from starlette.responses import JSONResponse

from vulnera.authz import Authorizer, Caller
from vulnera.crypto import (
    SIGNATURE_HEADER, TIMESTAMP_HEADER, WALLET_HEADER, ReplayGuard, verify_request,
)
from vulnera.errors import (
    AuthenticationError, ConflictError, NotFoundError, ValidationError,
    VulneraError,
)
from vulnera.escrow import EscrowCoordinator
from vulnera.protocol import (
    DEFAULT_CLUSTER, LAMPORTS_PER_SOL, MIN_ESCROW_AMOUNT, PLATFORM_WALLET,
    RATE_LIMIT, RATE_WINDOW, BountyStatus, SubmissionStatus, UserRole,
)
from vulnera.ratelimit import DEFAULT_STORAGE_URI, create_limiter, rate_limit_exceeded
from vulnera.solana import ChainBackend, SimBackend, lamports_to_sol, validate_wallet_address
from vulnera.store import BountyStore

logger = logging.getLogger(__name__)


# --- Request models ---

class CreateEscrowRequest(BaseModel):
    bountyId: str
    ownerWallet: str
    amount: int  # lamports

class ConfirmEscrowRequest(BaseModel):
    bountyId: str
    txSignature: str

class PrepareDepositRequest(BaseModel):
    bountyId: str
    amount: int

class DepositRequest(BaseModel):
    bountyId: str
    txSignature: str
    amount: int

class ReleasePaymentRequest(BaseModel):
    bountyId: str
    submissionId: str
    escrowAddress: str
    recipientWallet: str
    amount: int

class WithdrawEscrowRequest(BaseModel):
    bountyId: str
    escrowAddress: str
    ownerWallet: str

class VerifyTransactionRequest(BaseModel):
    signature: str

class RegisterCompanyRequest(BaseModel):
    companyId: str
    txSignature: str
    smartContractAddress: Optional[str] = None

class VerifyWalletRequest(BaseModel):
    walletAddress: str
    signature: str  # base64
    message: str

class WebhookRequest(BaseModel):
    signature: str

class CreateCompanyRequest(BaseModel):
    name: str
    walletAddress: str

class AddMemberRequest(BaseModel):
    wallet: str
    canApprovePayment: bool = False
    isActive: bool = True

class CreateBountyRequest(BaseModel):
    companyId: str
    title: str
    rewardAmount: int  # lamports
    maxSubmissions: Optional[int] = None

class CreateSubmissionRequest(BaseModel):
    title: str


# --- Views ---

_BOOL_FIELDS = {"is_verified", "is_active", "can_approve_payment"}


def _camel(key: str) -> str:
    head, *rest = key.split("_")
    return head + "".join(part.title() for part in rest)


def _view(row: dict) -> dict:
    """Store row -> camelCase API object."""
    return {_camel(k): (bool(v) if k in _BOOL_FIELDS else v) for k, v in row.items()}


# --- App factory ---

def create_app(
    store: BountyStore | None = None,
    backend: ChainBackend | None = None,
    coordinator: EscrowCoordinator | None = None,
    storage_uri: str = DEFAULT_STORAGE_URI,
    admin_wallets: set[str] | None = None,
    rate_limit: int = RATE_LIMIT,
    rate_window: int = RATE_WINDOW,
    cluster: str = DEFAULT_CLUSTER,
) -> FastAPI:
    """Create FastAPI app with injected dependencies.

    Without a backend the app runs against an in-process SimBackend.
    """

    app = FastAPI(title="Vulnera", version="1.0")

    if coordinator is not None:
        _store = coordinator.store
        _backend = coordinator.backend
        _authorizer = coordinator.authorizer
        for wallet in admin_wallets or ():
            _store.set_role(wallet, UserRole.ADMIN)
    else:
        _store = store or BountyStore()
        _backend = backend or SimBackend()
        _authorizer = Authorizer(_store, admin_wallets)
        coordinator = EscrowCoordinator(_store, _backend, _authorizer, cluster=cluster)
    _coordinator = coordinator

    _limiter = create_limiter(rate_limit, rate_window, storage_uri)
    _replay_guard = ReplayGuard(_limiter.limiter)

    # Expose for testing
    app.state.store = _store
    app.state.backend = _backend
    app.state.coordinator = _coordinator
    app.state.authorizer = _authorizer
    app.state.limiter = _limiter
    app.state.replay_guard = _replay_guard

    # --- Errors ---

    @app.exception_handler(VulneraError)
    async def vulnera_error(request: Request, exc: VulneraError):
        if exc.status_code >= 500:
            logger.error("%s %s -> %d: %s", request.method, request.url.path, exc.status_code, exc.message)
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def request_validation_error(request: Request, exc: RequestValidationError):
        details = [
            {"loc": list(err.get("loc", ())), "msg": err.get("msg", ""), "type": err.get("type", "")}
            for err in exc.errors()
        ]
        return JSONResponse(status_code=400, content={"error": "Invalid request data", "details": details})

    # --- Rate limiting ---

    app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded)
    app.add_middleware(SlowAPIMiddleware)

    # --- Auth ---

    async def require_caller(request: Request) -> Caller:
        """Verify the wallet-signed request. Signs: METHOD\\nPATH\\nTIMESTAMP\\nBODY"""
        wallet = request.headers.get(WALLET_HEADER, "")
        timestamp = request.headers.get(TIMESTAMP_HEADER, "")
        signature = request.headers.get(SIGNATURE_HEADER, "")
        if not wallet or not timestamp or not signature:
            raise AuthenticationError(
                f"Signed request required ({WALLET_HEADER} + {TIMESTAMP_HEADER} + {SIGNATURE_HEADER} headers)"
            )

        body = (await request.body()).decode("utf-8", errors="replace")
        ok, err = verify_request(request.method, request.url.path, body, timestamp, signature, wallet)
        if not ok:
            raise AuthenticationError(f"Authentication failed: {err}")

        if not _replay_guard.check_and_record(signature):
            raise AuthenticationError("Replay detected")

        return _authorizer.caller(wallet)

    def _bounty_or_404(bounty_id: str) -> dict:
        bounty = _store.get_bounty(bounty_id)
        if not bounty:
            raise NotFoundError("Bounty not found")
        return bounty

    # --- Service info ---

    @app.get("/health")
    @_limiter.exempt
    async def health():
        return {"status": "ok", "chain": type(_backend).__name__}

    @app.get("/platform_info")
    async def platform_info():
        """Advertised platform rates and minimums."""
        return {
            "currency": "SOL",
            "lamportsPerSol": LAMPORTS_PER_SOL,
            "minEscrowAmount": MIN_ESCROW_AMOUNT,
            "minEscrowSol": str(lamports_to_sol(MIN_ESCROW_AMOUNT)),
            "platformFeeBps": _coordinator.fee_bps,
        }

    @app.get("/blockchain")
    async def blockchain_info():
        return {
            "network": _coordinator.cluster,
            "programId": _coordinator.program_id,
            "platformWallet": PLATFORM_WALLET,
            "platformFeeBps": _coordinator.fee_bps,
            "minEscrowAmount": MIN_ESCROW_AMOUNT,
        }

    # --- Escrow lifecycle ---
    # Plain def: these block on RPC and run in the threadpool

    @app.post("/blockchain/create-escrow")
    def create_escrow(req: CreateEscrowRequest, caller: Caller = Depends(require_caller)):
        return _coordinator.create_escrow(caller, req.bountyId, req.ownerWallet, req.amount)

    @app.post("/blockchain/confirm-escrow")
    def confirm_escrow(req: ConfirmEscrowRequest, caller: Caller = Depends(require_caller)):
        result = _coordinator.confirm_escrow_init(caller, req.bountyId, req.txSignature)
        result["bounty"] = _view(result["bounty"])
        return result

    @app.post("/blockchain/prepare-deposit")
    def prepare_deposit(req: PrepareDepositRequest, caller: Caller = Depends(require_caller)):
        return _coordinator.prepare_deposit(caller, req.bountyId, req.amount)

    @app.post("/blockchain/deposit")
    def deposit(req: DepositRequest, caller: Caller = Depends(require_caller)):
        return _coordinator.confirm_deposit(caller, req.bountyId, req.txSignature, req.amount)

    @app.post("/blockchain/release-payment")
    def release_payment(req: ReleasePaymentRequest, caller: Caller = Depends(require_caller)):
        return _coordinator.release_payment(
            caller, req.bountyId, req.submissionId, req.escrowAddress, req.recipientWallet, req.amount,
        )

    @app.post("/blockchain/withdraw-escrow")
    def withdraw_escrow(req: WithdrawEscrowRequest, caller: Caller = Depends(require_caller)):
        return _coordinator.withdraw_escrow(caller, req.bountyId, req.escrowAddress, req.ownerWallet)

    # --- Verification ---

    @app.post("/blockchain/verify-transaction")
    def verify_transaction(req: VerifyTransactionRequest):
        return _coordinator.verify_transaction(req.signature)

    @app.get("/blockchain/transaction/{signature}")
    def get_transaction(signature: str):
        return {"transaction": _coordinator.get_transaction(signature)}

    @app.post("/blockchain/register-company")
    def register_company(req: RegisterCompanyRequest, caller: Caller = Depends(require_caller)):
        result = _coordinator.register_on_chain(caller, req.companyId, req.txSignature, req.smartContractAddress)
        result["company"] = _view(result["company"])
        return result

    @app.post("/blockchain/verify-wallet")
    def verify_wallet(req: VerifyWalletRequest):
        return _coordinator.verify_wallet(req.walletAddress, req.message, req.signature)

    @app.post("/webhooks/solana")
    def solana_webhook(req: WebhookRequest):
        # The body is only a hint: the record is re-checked against the chain
        return {k: _view(v) for k, v in _coordinator.handle_webhook(req.signature).items()}

    # --- Companies ---

    @app.post("/companies")
    async def create_company(req: CreateCompanyRequest, caller: Caller = Depends(require_caller)):
        validate_wallet_address(req.walletAddress)
        if not req.name.strip():
            raise ValidationError("Company name required")
        company_id = _store.create_company(req.name.strip(), req.walletAddress, caller.wallet)
        logger.info("company %s created by %s", company_id, caller.wallet)
        return _view(_store.get_company(company_id))

    @app.get("/companies/{company_id}")
    async def get_company(company_id: str):
        company = _store.get_company(company_id)
        if not company:
            raise NotFoundError("Company not found")
        data = _view(company)
        data["members"] = [_view(m) for m in _store.list_members(company_id)]
        return data

    @app.post("/companies/{company_id}/members")
    async def add_member(company_id: str, req: AddMemberRequest, caller: Caller = Depends(require_caller)):
        if not _store.get_company(company_id):
            raise NotFoundError("Company not found")
        _authorizer.require_payment_approver(caller, company_id)
        validate_wallet_address(req.wallet)
        _store.add_member(company_id, req.wallet, req.canApprovePayment, req.isActive)
        return _view(_store.get_member(company_id, req.wallet))

    # --- Bounties ---

    @app.post("/bounties")
    async def create_bounty(req: CreateBountyRequest, caller: Caller = Depends(require_caller)):
        if not _store.get_company(req.companyId):
            raise NotFoundError("Company not found")
        _authorizer.require_member(caller, req.companyId)
        if req.rewardAmount <= 0:
            raise ValidationError("Reward amount must be a positive integer number of lamports")
        if req.maxSubmissions is not None and req.maxSubmissions < 1:
            raise ValidationError("maxSubmissions must be at least 1")
        bounty_id = _store.create_bounty(req.companyId, req.title, req.rewardAmount, req.maxSubmissions)
        return _view(_store.get_bounty(bounty_id))

    @app.get("/bounties/{bounty_id}")
    async def get_bounty(bounty_id: str):
        return _view(_bounty_or_404(bounty_id))

    @app.post("/bounties/{bounty_id}/close")
    async def close_bounty(bounty_id: str, caller: Caller = Depends(require_caller)):
        _bounty_or_404(bounty_id)
        _authorizer.require_bounty_funds(caller, bounty_id)
        try:
            _store.update_bounty_status(bounty_id, BountyStatus.CLOSED)
        except ValueError as e:
            raise ConflictError(str(e))
        logger.info("bounty %s closed by %s", bounty_id, caller.wallet)
        return _view(_store.get_bounty(bounty_id))

    @app.post("/bounties/{bounty_id}/submissions")
    async def create_submission(bounty_id: str, req: CreateSubmissionRequest,
                                caller: Caller = Depends(require_caller)):
        bounty = _bounty_or_404(bounty_id)
        if bounty["status"] != BountyStatus.ACTIVE.value:
            raise ValidationError("Bounty is not accepting submissions")
        submission_id = _store.create_submission(bounty_id, caller.wallet, req.title)
        return _view(_store.get_submission(submission_id))

    def _review(submission_id: str, caller: Caller, status: SubmissionStatus) -> dict:
        submission = _store.get_submission(submission_id)
        if not submission:
            raise NotFoundError("Submission not found")
        _authorizer.require_member(caller, _bounty_or_404(submission["bounty_id"])["company_id"])
        if not _store.review_submission(submission_id, status):
            raise ConflictError(f"Submission already {_store.get_submission(submission_id)['status']}")
        return _view(_store.get_submission(submission_id))

    @app.post("/submissions/{submission_id}/approve")
    async def approve_submission(submission_id: str, caller: Caller = Depends(require_caller)):
        return _review(submission_id, caller, SubmissionStatus.APPROVED)

    @app.post("/submissions/{submission_id}/reject")
    async def reject_submission(submission_id: str, caller: Caller = Depends(require_caller)):
        return _review(submission_id, caller, SubmissionStatus.REJECTED)

    # --- Payments ---

    @app.get("/payments/{payment_id}")
    async def get_payment(payment_id: str):
        payment = _store.get_payment(payment_id)
        if not payment:
            raise NotFoundError("Payment not found")
        return _view(payment)

    return app
