"""
Mock Credentials Provider

Resolves the payment instruments the escrow engine needs: a buyer's default
tokenized card for captures and a seller's payout account for transfers.
Only tokens and account ids are exposed, never raw card data.
"""
from typing import List, Dict, Optional
from dataclasses import dataclass, replace


@dataclass
class PaymentMethod:
    """Tokenized payment method data structure."""
    token: str
    type: str  # "visa", "mastercard", "amex"
    last_four: str
    expiry_month: int
    expiry_year: int
    cardholder_name: str
    is_default: bool


@dataclass
class PayoutAccount:
    """Connected account receiving seller payouts."""
    account_id: str
    holder_name: str
    payouts_enabled: bool = True


# Demo registries - maps user_id to instruments
DEMO_PAYMENT_METHODS: Dict[str, List[PaymentMethod]] = {
    "user_demo_buyer": [
        PaymentMethod(
            token="tok_visa_4242",
            type="visa",
            last_four="4242",
            expiry_month=12,
            expiry_year=2028,
            cardholder_name="Jane Smith",
            is_default=True
        ),
        PaymentMethod(
            token="tok_mc_5555",
            type="mastercard",
            last_four="5555",
            expiry_month=8,
            expiry_year=2027,
            cardholder_name="Jane Smith",
            is_default=False
        ),
    ],
}

DEMO_PAYOUT_ACCOUNTS: Dict[str, PayoutAccount] = {
    "user_demo_seller": PayoutAccount(account_id="acct_demo_seller", holder_name="Alex Johnson"),
}


class CredentialsProvider:
    """
    Registry of buyer payment methods and seller payout accounts.

    Starts from the demo registries; tests register their own users.
    """

    def __init__(
        self,
        payment_methods: Optional[Dict[str, List[PaymentMethod]]] = None,
        payout_accounts: Optional[Dict[str, PayoutAccount]] = None
    ):
        if payment_methods is None:
            payment_methods = DEMO_PAYMENT_METHODS
        if payout_accounts is None:
            payout_accounts = DEMO_PAYOUT_ACCOUNTS

        # Each provider owns its records; registering never touches the demo data
        self._payment_methods = {
            user_id: [replace(pm) for pm in methods]
            for user_id, methods in payment_methods.items()
        }
        self._payout_accounts = {
            user_id: replace(account) for user_id, account in payout_accounts.items()
        }

    def register_payment_method(self, user_id: str, token: str, last_four: str = "4242") -> None:
        methods = self._payment_methods.setdefault(user_id, [])
        for pm in methods:
            pm.is_default = False
        methods.append(PaymentMethod(
            token=token,
            type="visa",
            last_four=last_four,
            expiry_month=12,
            expiry_year=2030,
            cardholder_name=user_id,
            is_default=True
        ))

    def register_payout_account(self, user_id: str, account_id: str, payouts_enabled: bool = True) -> None:
        self._payout_accounts[user_id] = PayoutAccount(
            account_id=account_id, holder_name=user_id, payouts_enabled=payouts_enabled
        )

    def default_payment_token(self, user_id: str) -> str:
        """
        Token of the buyer's default payment method.

        Raises:
            ValueError: If the user has no default payment method
        """
        for pm in self._payment_methods.get(user_id, []):
            if pm.is_default:
                return pm.token
        raise ValueError(f"No default payment method for user {user_id}")

    def payout_account_id(self, user_id: str) -> str:
        """
        Account id for seller payouts.

        Raises:
            ValueError: If the seller has no payout-enabled account
        """
        account = self._payout_accounts.get(user_id)
        if account is None or not account.payouts_enabled:
            raise ValueError(f"No payout account enabled for user {user_id}")
        return account.account_id
