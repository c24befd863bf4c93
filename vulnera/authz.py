"""Who may move which funds.

Platform ADMINs may do anything. Otherwise the caller must be an active member
of the company that owns the bounty, and money movements (fund, release,
withdraw) additionally need can_approve_payment.
"""

from dataclasses import dataclass

from vulnera.errors import AuthorizationError, NotFoundError
from vulnera.protocol import UserRole
from vulnera.store import BountyStore


@dataclass(frozen=True)
class Caller:
    wallet: str
    role: UserRole = UserRole.USER

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN


class Authorizer:
    def __init__(self, store: BountyStore, admin_wallets: set[str] | None = None):
        self.store = store
        for wallet in admin_wallets or ():
            store.set_role(wallet, UserRole.ADMIN)

    def caller(self, wallet: str) -> Caller:
        """Resolve an authenticated wallet to a Caller, registering new wallets."""
        user = self.store.ensure_user(wallet)
        return Caller(wallet=wallet, role=UserRole(user["role"]))

    def _company_of(self, bounty_id: str) -> str:
        bounty = self.store.get_bounty(bounty_id)
        if not bounty:
            raise NotFoundError("Bounty not found")
        return bounty["company_id"]

    def require_member(self, caller: Caller, company_id: str):
        if caller.is_admin:
            return
        member = self.store.get_member(company_id, caller.wallet)
        if not member or not member["is_active"]:
            raise AuthorizationError("Insufficient permissions")

    def require_payment_approver(self, caller: Caller, company_id: str):
        if caller.is_admin:
            return
        member = self.store.get_member(company_id, caller.wallet)
        if not member or not member["is_active"] or not member["can_approve_payment"]:
            raise AuthorizationError("Insufficient permissions")

    def require_bounty_funds(self, caller: Caller, bounty_id: str):
        """Caller may fund, release from, or withdraw this bounty's escrow."""
        self.require_payment_approver(caller, self._company_of(bounty_id))
