"""
Mock Payment Processor

Simulates the external payment gateway for local runs and tests.
Every operation is recorded under its idempotency key: repeating a key
returns the stored result without moving money again.

Mock Behavior:
- Special tokens (tok_decline*) trigger specific decline scenarios
- Outside demo mode, other tokens have ~90% approval based on a deterministic hash
- Latency and one-off failures can be injected for timeout and retry tests
"""
import asyncio
import hashlib
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, List, Optional, Set

from ..services.payment_gateway import GatewayResult


# Test tokens that trigger specific behaviors
DECLINE_TOKENS = {
    "tok_decline": "insufficient_funds",
    "tok_decline_fraud": "fraud_suspected",
    "tok_decline_expired": "card_expired",
    "tok_decline_invalid": "invalid_card",
}

# Payout accounts the mock refuses to pay
REJECTED_ACCOUNTS = {
    "acct_closed": "account_closed",
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class MockPaymentGateway:
    """
    In-memory payment gateway.

    Attributes:
        calls: Every call received, as (operation, idempotency_key)
        executed: Keys whose operation actually moved money
    """

    def __init__(self, approve_all: bool = True, latency_seconds: float = 0.0):
        self.approve_all = approve_all
        self.latency_seconds = latency_seconds
        self.calls: List[tuple] = []
        self.executed: List[str] = []
        self._results: Dict[str, GatewayResult] = {}
        self._fail_next: Dict[str, str] = {}
        self._hang_next: Set[str] = set()

    # ------------------------------------------------------------------
    # Test controls
    # ------------------------------------------------------------------

    def fail_next(self, operation: str, reason: str = "processor_unavailable") -> None:
        """Decline the next call of operation without recording it."""
        self._fail_next[operation] = reason

    def hang_next(self, operation: str) -> None:
        """Stall the next call of operation before the gateway records anything."""
        self._hang_next.add(operation)

    def count(self, operation: str) -> int:
        return sum(1 for op, _ in self.calls if op == operation)

    def executed_count(self, operation: str) -> int:
        return sum(1 for key in self.executed if self._results[key].operation == operation)

    # ------------------------------------------------------------------
    # PaymentGateway protocol
    # ------------------------------------------------------------------

    async def authorize_and_capture(
        self, amount: Decimal, buyer_payment_method: str, idempotency_key: str
    ) -> GatewayResult:
        self.calls.append(("capture", idempotency_key))
        return await self._process("capture", idempotency_key, amount, self._capture_decision(buyer_payment_method, amount))

    async def transfer(
        self, amount: Decimal, seller_payout_account: str, idempotency_key: str
    ) -> GatewayResult:
        self.calls.append(("transfer", idempotency_key))
        return await self._process("transfer", idempotency_key, amount, REJECTED_ACCOUNTS.get(seller_payout_account))

    async def refund(
        self, gateway_ref: str, amount: Decimal, idempotency_key: str
    ) -> GatewayResult:
        self.calls.append(("refund", idempotency_key))
        known_ref = any(r.gateway_ref == gateway_ref and r.operation == "capture" for r in self._results.values())
        return await self._process("refund", idempotency_key, amount, None if known_ref else "unknown_charge")

    async def lookup(self, idempotency_key: str) -> Optional[GatewayResult]:
        self.calls.append(("lookup", idempotency_key))
        return self._results.get(idempotency_key)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _capture_decision(self, payment_token: str, amount: Decimal) -> Optional[str]:
        if payment_token in DECLINE_TOKENS:
            return DECLINE_TOKENS[payment_token]
        if self.approve_all:
            return None

        # Deterministic approval/decline based on token + amount hash
        hash_input = f"{payment_token}:{amount}"
        hash_value = int(hashlib.sha256(hash_input.encode()).hexdigest()[:8], 16)
        if hash_value % 10 == 0:
            decline_reasons = ["insufficient_funds", "do_not_honor", "generic_decline"]
            return decline_reasons[hash_value % len(decline_reasons)]
        return None

    async def _process(
        self, operation: str, key: str, amount: Decimal, decline_reason: Optional[str]
    ) -> GatewayResult:
        if operation in self._hang_next:
            self._hang_next.discard(operation)
            await asyncio.sleep(max(self.latency_seconds, 1.0))

        if key in self._results:
            return self._results[key]

        injected = self._fail_next.pop(operation, None)
        if injected:
            return GatewayResult(
                success=False, operation=operation, idempotency_key=key,
                amount=amount, decline_reason=injected, processed_at=_utcnow()
            )

        prefix = {"capture": "ch", "transfer": "tr", "refund": "re"}[operation]
        result = GatewayResult(
            success=decline_reason is None,
            operation=operation,
            idempotency_key=key,
            amount=amount,
            gateway_ref=None if decline_reason else f"{prefix}_{hashlib.sha256(key.encode()).hexdigest()[:12]}",
            decline_reason=decline_reason,
            processed_at=_utcnow(),
        )
        self._results[key] = result
        if result.success:
            self.executed.append(key)

        if self.latency_seconds:
            # Recorded but answered late: the caller may time out after the money moved
            await asyncio.sleep(self.latency_seconds)

        return result


def get_processor_status() -> Dict[str, object]:
    """
    Check payment processor availability.

    Mock Behavior: Always returns operational.
    """
    return {
        "status": "operational",
        "supported_currencies": ["USD"],
        "operations": ["capture", "transfer", "refund", "lookup"],
    }
