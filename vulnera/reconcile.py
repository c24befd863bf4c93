"""Background resolution of payments and withdrawals left in flight.

A release or withdrawal whose confirmation did not arrive within its request
stays PENDING / CLOSING. The reconciler polls the chain for those signatures
and applies the outcome through the coordinator.
"""

import logging
import threading

from vulnera.errors import VulneraError
from vulnera.escrow import EscrowCoordinator
from vulnera.protocol import RECONCILE_INTERVAL

logger = logging.getLogger(__name__)


class Reconciler:
    def __init__(self, coordinator: EscrowCoordinator, interval: float = RECONCILE_INTERVAL):
        self.coordinator = coordinator
        self.store = coordinator.store
        self.interval = interval
        self._stop = threading.Event()

    def run_once(self) -> dict:
        """One pass over every in-flight record. Returns outcome counts."""
        counts = {"checked": 0, "confirmed": 0, "failed": 0, "closed": 0, "reverted": 0, "errors": 0}

        for payment in self.store.list_pending_payments():
            counts["checked"] += 1
            try:
                result = self.coordinator.reconcile_payment(payment["id"])
            except VulneraError as e:
                counts["errors"] += 1
                logger.warning("reconcile payment %s: %s", payment["id"], e.message)
                continue
            if result["status"] == "CONFIRMED":
                counts["confirmed"] += 1
            elif result["status"] == "FAILED":
                counts["failed"] += 1

        for bounty in self.store.list_closing_bounties():
            counts["checked"] += 1
            try:
                result = self.coordinator.reconcile_withdrawal(bounty["id"])
            except VulneraError as e:
                counts["errors"] += 1
                logger.warning("reconcile withdrawal for bounty %s: %s", bounty["id"], e.message)
                continue
            if result["escrow_state"] == "CLOSED":
                counts["closed"] += 1
            elif result["escrow_state"] != "CLOSING":
                counts["reverted"] += 1

        if counts["checked"]:
            logger.info("reconcile pass: %s", counts)
        return counts

    def run_forever(self):
        """Loop until stop(). Meant for a daemon thread."""
        while not self._stop.wait(self.interval):
            try:
                self.run_once()
            except Exception:
                logger.exception("reconcile pass failed")

    def start(self) -> threading.Thread:
        thread = threading.Thread(target=self.run_forever, name="reconciler", daemon=True)
        thread.start()
        return thread

    def stop(self):
        self._stop.set()
