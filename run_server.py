#!/usr/bin/env python3
"""Vulnera escrow server with background reconciler.

Release authority keypair from VULNERA_AUTHORITY_KEYPAIR (path, never in code).
"""

import os, sys, logging
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

import uvicorn
from vulnera.app import create_app
from vulnera.authz import Authorizer
from vulnera.escrow import EscrowCoordinator
from vulnera.protocol import (
    DEFAULT_CLUSTER, DEFAULT_COMMITMENT, PLATFORM_FEE_BPS, PLATFORM_WALLET,
    PROGRAM_ID, RECONCILE_INTERVAL, RPC_TIMEOUT, RPC_URL,
)
from vulnera.reconcile import Reconciler
from vulnera.solana import SimBackend, SolanaBackend, load_keypair
from vulnera.store import BountyStore

DB_PATH = os.environ.get("VULNERA_DB", "/var/lib/vulnera/vulnera.db")
PORT = int(os.environ.get("VULNERA_PORT", "8000"))
CHAIN = os.environ.get("VULNERA_CHAIN", "solana")
CLUSTER = os.environ.get("VULNERA_CLUSTER", DEFAULT_CLUSTER)
AUTHORITY_KEYPAIR = os.environ.get("VULNERA_AUTHORITY_KEYPAIR", "")
ADMIN_WALLETS = {w.strip() for w in os.environ.get("VULNERA_ADMIN_WALLETS", "").split(",") if w.strip()}
REDIS_URL = os.environ.get("VULNERA_REDIS_URL", "")
# limits storage URI shared by the rate limiter and the replay guard
RATELIMIT_STORAGE = os.environ.get("VULNERA_RATELIMIT_STORAGE", REDIS_URL or "memory://")
LOG_LEVEL = os.environ.get("VULNERA_LOG_LEVEL", "INFO")

logging.basicConfig(
    level=getattr(logging, LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("vulnera.server")


def build_backend():
    if CHAIN == "sim":
        logger.warning("running against the simulated chain, no real funds move")
        return SimBackend()
    if CHAIN != "solana":
        logger.error("VULNERA_CHAIN must be 'solana' or 'sim', got %r", CHAIN)
        sys.exit(1)
    authority = None
    if AUTHORITY_KEYPAIR:
        authority = load_keypair(AUTHORITY_KEYPAIR)
        logger.info("release authority %s", authority.pubkey())
    else:
        logger.warning("VULNERA_AUTHORITY_KEYPAIR not set, releases and withdrawals will fail")
    return SolanaBackend(
        rpc_url=RPC_URL, program_id=PROGRAM_ID, authority=authority,
        platform_wallet=PLATFORM_WALLET, commitment=DEFAULT_COMMITMENT, timeout=RPC_TIMEOUT,
    )


# --- Main ---
if os.path.dirname(DB_PATH):
    os.makedirs(os.path.dirname(DB_PATH), exist_ok=True)

store = BountyStore(DB_PATH)
authorizer = Authorizer(store, ADMIN_WALLETS)
coordinator = EscrowCoordinator(
    store, build_backend(), authorizer, fee_bps=PLATFORM_FEE_BPS, program_id=PROGRAM_ID, cluster=CLUSTER,
)
if RATELIMIT_STORAGE.startswith("memory:"):
    logger.warning("rate limits and replay protection are per-process, set VULNERA_REDIS_URL to share them")
app = create_app(coordinator=coordinator, storage_uri=RATELIMIT_STORAGE)

if __name__ == "__main__":
    # Resolve in-flight payments and withdrawals in the background
    reconciler = Reconciler(coordinator, interval=RECONCILE_INTERVAL)
    reconciler.start()
    logger.info("reconciler running every %ss", RECONCILE_INTERVAL)
    logger.info("program %s on %s (%s, commitment %s)", PROGRAM_ID, CLUSTER, RPC_URL, DEFAULT_COMMITMENT)
    logger.info("listening on :%d", PORT)

    uvicorn.run(app, host="0.0.0.0", port=PORT)
