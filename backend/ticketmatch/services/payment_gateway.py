"""
Payment Gateway Interface

Contract for the external payment provider plus GatewayClient, the wrapper
the escrow engine uses for every call. The client enforces a bounded timeout
and, when it fires, reads the gateway's record for the idempotency key before
reporting GatewayTimeoutError, so a charge that actually went through is
never retried into a duplicate.
"""
import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Awaitable, Callable, Optional, Protocol

from ..exceptions import GatewayError, GatewayTimeoutError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GatewayResult:
    """Outcome of one gateway operation, keyed by its idempotency key."""
    success: bool
    operation: str  # "capture", "transfer", "refund"
    idempotency_key: str
    amount: Decimal
    gateway_ref: Optional[str] = None
    decline_reason: Optional[str] = None
    processed_at: Optional[datetime] = None


class PaymentGateway(Protocol):
    async def authorize_and_capture(
        self, amount: Decimal, buyer_payment_method: str, idempotency_key: str
    ) -> GatewayResult:
        ...

    async def transfer(
        self, amount: Decimal, seller_payout_account: str, idempotency_key: str
    ) -> GatewayResult:
        ...

    async def refund(
        self, gateway_ref: str, amount: Decimal, idempotency_key: str
    ) -> GatewayResult:
        ...

    async def lookup(self, idempotency_key: str) -> Optional[GatewayResult]:
        """Return the recorded result for a key, or None if the gateway never saw it."""
        ...


def idempotency_key(transaction_id: str, operation: str) -> str:
    return f"{transaction_id}:{operation}"


class GatewayClient:
    """
    Timeout and reconciliation wrapper around a PaymentGateway.

    Declines surface as GatewayError. A timeout triggers a lookup of the
    idempotency key: a recorded success is returned as if the call had
    completed, anything else raises GatewayTimeoutError.
    """

    def __init__(self, gateway: PaymentGateway, timeout_seconds: float):
        self._gateway = gateway
        self._timeout = timeout_seconds

    async def capture(self, amount: Decimal, payment_method: str, key: str) -> GatewayResult:
        return await self._call(
            "capture", key, lambda: self._gateway.authorize_and_capture(amount, payment_method, key)
        )

    async def transfer(self, amount: Decimal, payout_account: str, key: str) -> GatewayResult:
        return await self._call(
            "transfer", key, lambda: self._gateway.transfer(amount, payout_account, key)
        )

    async def refund(self, gateway_ref: str, amount: Decimal, key: str) -> GatewayResult:
        return await self._call(
            "refund", key, lambda: self._gateway.refund(gateway_ref, amount, key)
        )

    async def reconcile(self, key: str) -> Optional[GatewayResult]:
        """Gateway-side record for key, used before retrying after a timeout."""
        return await asyncio.wait_for(self._gateway.lookup(key), timeout=self._timeout)

    async def _call(
        self,
        operation: str,
        key: str,
        call: Callable[[], Awaitable[GatewayResult]]
    ) -> GatewayResult:
        try:
            result = await asyncio.wait_for(call(), timeout=self._timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Gateway {operation} timed out for {key}, reconciling")
            return await self._after_timeout(operation, key)

        if not result.success:
            logger.warning(f"Gateway {operation} declined for {key}: {result.decline_reason}")
            raise GatewayError(
                f"Payment gateway declined {operation}",
                {"idempotency_key": key, "reason": result.decline_reason}
            )

        logger.info(f"Gateway {operation} succeeded for {key}: ref={result.gateway_ref}")
        return result

    async def _after_timeout(self, operation: str, key: str) -> GatewayResult:
        try:
            recorded = await self.reconcile(key)
        except asyncio.TimeoutError:
            recorded = None

        if recorded is not None and recorded.success:
            logger.info(f"Reconciled {operation} for {key}: gateway recorded success")
            return recorded
        if recorded is not None:
            raise GatewayError(
                f"Payment gateway declined {operation}",
                {"idempotency_key": key, "reason": recorded.decline_reason}
            )

        raise GatewayTimeoutError(
            f"Payment gateway did not answer {operation} in time",
            {"idempotency_key": key, "operation": operation}
        )
