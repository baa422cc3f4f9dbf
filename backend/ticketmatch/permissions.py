"""
Capability checks for transaction operations.

An actor's parties on a transaction (buyer, seller, admin, system) are
resolved once and checked against a single table, so the escrow state machine
never branches on roles itself.
"""
from enum import Enum
from typing import FrozenSet, Optional

from .exceptions import AuthorizationError

# Reserved actor id used by the expiry sweep and internal follow-ups
SYSTEM_ACTOR = "system"


class UserRole(str, Enum):
    """Platform role of an authenticated user."""
    BUYER = "BUYER"
    SELLER = "SELLER"
    BROKER = "BROKER"
    ADMIN = "ADMIN"


class Party(str, Enum):
    BUYER = "buyer"
    SELLER = "seller"
    ADMIN = "admin"
    SYSTEM = "system"


class Action(str, Enum):
    VIEW = "view"
    CAPTURE_PAYMENT = "capture_payment"
    MARK_DELIVERED = "mark_delivered"
    CONFIRM_RECEIPT = "confirm_receipt"
    AUTO_RELEASE = "auto_release"
    RELEASE_PAYOUT = "release_payout"
    CANCEL = "cancel"
    REFUND = "refund"


PERMISSIONS = {
    Party.BUYER: frozenset({Action.VIEW, Action.CAPTURE_PAYMENT, Action.CONFIRM_RECEIPT, Action.CANCEL, Action.REFUND}),
    Party.SELLER: frozenset({Action.VIEW, Action.MARK_DELIVERED, Action.CANCEL}),
    Party.ADMIN: frozenset({Action.VIEW, Action.CANCEL, Action.REFUND}),
    Party.SYSTEM: frozenset({Action.CAPTURE_PAYMENT, Action.AUTO_RELEASE, Action.RELEASE_PAYOUT, Action.CANCEL}),
}


def resolve_parties(
    buyer_id: str,
    seller_id: str,
    actor_id: str,
    role: Optional[UserRole] = None
) -> FrozenSet[Party]:
    """Parties the actor plays on a transaction between buyer_id and seller_id."""
    if actor_id == SYSTEM_ACTOR:
        return frozenset({Party.SYSTEM})

    parties = set()
    if actor_id == buyer_id:
        parties.add(Party.BUYER)
    if actor_id == seller_id:
        parties.add(Party.SELLER)
    if role == UserRole.ADMIN:
        parties.add(Party.ADMIN)
    return frozenset(parties)


def permitted_actions(parties: FrozenSet[Party]) -> FrozenSet[Action]:
    allowed = frozenset()
    for party in parties:
        allowed = allowed | PERMISSIONS[party]
    return allowed


def require(
    action: Action,
    buyer_id: str,
    seller_id: str,
    actor_id: str,
    role: Optional[UserRole] = None
) -> FrozenSet[Party]:
    """
    Raise AuthorizationError unless the actor may perform action.

    Returns:
        The actor's parties, for attribution in logs and audit fields
    """
    parties = resolve_parties(buyer_id, seller_id, actor_id, role)
    if action not in permitted_actions(parties):
        raise AuthorizationError(
            f"Not permitted to {action.value.replace('_', ' ')}",
            {"action": action.value, "actor_id": actor_id}
        )
    return parties
