import sys
import os
import json

# Ensure the repo root is on the path for all tests
sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from vulnera.authz import Authorizer, Caller
from vulnera.crypto import generate_wallet_keypair, sign_request
from vulnera.escrow import EscrowCoordinator
from vulnera.protocol import LAMPORTS_PER_SOL, SubmissionStatus, UserRole
from vulnera.solana import SimBackend
from vulnera.store import BountyStore


# Pre-generated test wallets
OWNER_PRIV, OWNER_WALLET = generate_wallet_keypair()
MEMBER_PRIV, MEMBER_WALLET = generate_wallet_keypair()  # active member, cannot approve payments
OUTSIDER_PRIV, OUTSIDER_WALLET = generate_wallet_keypair()
RESEARCHER_PRIV, RESEARCHER_WALLET = generate_wallet_keypair()
ADMIN_PRIV, ADMIN_WALLET = generate_wallet_keypair()

OWNER = Caller(OWNER_WALLET)
MEMBER = Caller(MEMBER_WALLET)
OUTSIDER = Caller(OUTSIDER_WALLET)
ADMIN = Caller(ADMIN_WALLET, UserRole.ADMIN)

ESCROW_AMOUNT = 5 * LAMPORTS_PER_SOL


def make_coordinator(store=None, backend=None, **kwargs) -> EscrowCoordinator:
    """Coordinator over in-memory store + SimBackend that never really sleeps."""
    store = store or BountyStore(":memory:")
    backend = backend or SimBackend()
    kwargs.setdefault("sleep", lambda seconds: None)
    kwargs.setdefault("poll_interval", 0)
    authorizer = kwargs.pop("authorizer", None) or Authorizer(store, {ADMIN_WALLET})
    return EscrowCoordinator(store, backend, authorizer, **kwargs)


def setup_company(store, name="Acme Security"):
    """Company owned by OWNER_WALLET, with MEMBER_WALLET as a non-approving member."""
    company_id = store.create_company(name, OWNER_WALLET, OWNER_WALLET)
    store.add_member(company_id, MEMBER_WALLET, can_approve_payment=False)
    return company_id


def fund_bounty(coord, amount=ESCROW_AMOUNT, max_submissions=None, company_id=None):
    """Create a bounty and run escrow init end to end. Returns the bounty row."""
    store, sim = coord.store, coord.backend
    company_id = company_id or setup_company(store)
    bounty_id = store.create_bounty(company_id, "RCE in upload handler", LAMPORTS_PER_SOL, max_submissions)
    sim.fund(OWNER_WALLET, amount + LAMPORTS_PER_SOL)
    created = coord.create_escrow(OWNER, bounty_id, OWNER_WALLET, amount)
    sig = sim.client_transfer(OWNER_WALLET, created["escrowAddress"], amount)
    coord.confirm_escrow_init(OWNER, bounty_id, sig)
    return store.get_bounty(bounty_id)


def approved_submission(store, bounty_id, researcher=RESEARCHER_WALLET):
    submission_id = store.create_submission(bounty_id, researcher, "Path traversal in /upload")
    store.review_submission(submission_id, SubmissionStatus.APPROVED)
    return submission_id


# Monotonic counter so repeated identical requests still get distinct signatures
_nonce_counter = 0


def signed_post(client, path, data, privkey_bytes):
    """Make a wallet-signed POST request for tests.

    Embeds a nonce in the body so the same endpoint+body can be called
    several times in the same second without tripping the replay guard.
    """
    global _nonce_counter
    _nonce_counter += 1
    body = json.dumps({**data, "_nonce": _nonce_counter})
    auth_headers = sign_request(privkey_bytes, "POST", path, body)
    return client.post(path, content=body, headers={
        "Content-Type": "application/json",
        **auth_headers,
    })


def signed_headers(privkey_bytes, method, path, body=""):
    """Generate wallet auth headers for a request."""
    return sign_request(privkey_bytes, method, path, body)
