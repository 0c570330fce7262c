import asyncio
import logging
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Callable, Dict, Optional, Tuple, Union

from pydantic import BaseModel

from paywall.core.exceptions import (
    ERRORS_BY_CODE,
    ApiError,
    NetworkUnsupported,
    ValidationError,
)
from paywall.models.payment import Network, PaymentStatus, VerificationMethod
from paywall.services.subscription_manager import (
    PaymentData,
    SubscriptionManager,
    SubscriptionView,
)
from paywall.verifiers.base import VerificationResult
from paywall.verifiers.dispatcher import VerificationDispatcher

logger = logging.getLogger(__name__)


class PaymentOutcome(BaseModel):
    success: bool
    subscription: Optional[SubscriptionView] = None
    verification: Optional[VerificationResult] = None
    error: Optional[Dict] = None
    already_applied: bool = False


class PaymentVerificationService:
    """
    Verify a claimed on-chain payment and credit it to the user's subscription.

    Verification completes before the manager is called, so an abandoned
    request never reaches the mutation path.
    """

    def __init__(
        self,
        dispatcher: VerificationDispatcher,
        manager: SubscriptionManager,
        deposit_addresses: Dict[Network, Optional[str]],
        subscription_price: Decimal = Decimal("100"),
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.dispatcher = dispatcher
        self.manager = manager
        self.deposit_addresses = deposit_addresses
        self.subscription_price = subscription_price
        self.clock = clock or datetime.utcnow
        self.logger = logging.getLogger(__name__)

    async def verify_and_apply(
        self,
        user_id: str,
        network: Union[Network, str],
        expected_amount: Union[Decimal, str, float],
        transaction_id: Optional[str],
    ) -> PaymentOutcome:
        """
        Verify a transaction and extend (or create) the user's subscription.

        Raises ValidationError / NetworkUnsupported for bad input and the
        verification failure's error class when the payment is not confirmed.
        """
        self.logger.info(f"verify_and_apply: Entry - user: {user_id}, network: {network}, tx: {transaction_id}")
        payment, verification = await self._verify(network, expected_amount, transaction_id)
        result = await asyncio.to_thread(self.manager.create_or_extend_subscription, user_id, payment)
        self.logger.info(f"verify_and_apply: Success - user: {user_id}, already_applied: {result.already_applied}")
        return PaymentOutcome(
            success=True,
            subscription=result.subscription,
            verification=verification,
            already_applied=result.already_applied,
        )

    async def reactivate(
        self,
        user_id: str,
        network: Union[Network, str],
        expected_amount: Union[Decimal, str, float],
        transaction_id: Optional[str],
    ) -> PaymentOutcome:
        """Verify a transaction and reactivate the user's subscription with it."""
        self.logger.info(f"reactivate: Entry - user: {user_id}, network: {network}, tx: {transaction_id}")
        payment, verification = await self._verify(network, expected_amount, transaction_id)
        result = await asyncio.to_thread(self.manager.reactivate_subscription, user_id, payment)
        self.logger.info(f"reactivate: Success - user: {user_id}, already_applied: {result.already_applied}")
        return PaymentOutcome(
            success=True,
            subscription=result.subscription,
            verification=verification,
            already_applied=result.already_applied,
        )

    async def _verify(
        self,
        network: Union[Network, str],
        expected_amount: Union[Decimal, str, float],
        transaction_id: Optional[str],
    ) -> Tuple[PaymentData, VerificationResult]:
        parsed = self._parse_network(network)
        amount = self._parse_amount(expected_amount)
        if transaction_id is None or not str(transaction_id).strip():
            raise ValidationError("Transaction id is required", details={"field": "transaction_id"})

        address = self.deposit_addresses.get(parsed)
        if not address:
            raise NetworkUnsupported(f"No deposit address is configured for {parsed.value}",
                                     details={"network": parsed.value})

        verification = await self.dispatcher.verify_payment(
            parsed, address, amount, transaction_id.strip(), now=self.clock())

        if not verification.success:
            error_cls = ERRORS_BY_CODE.get(verification.error, ApiError)
            raise error_cls(
                verification.message or "Payment could not be verified",
                details={
                    "reason": verification.reason.value if verification.reason else None,
                    "network": parsed.value,
                    "transaction_id": transaction_id.strip(),
                    "verification": verification.model_dump(mode="json"),
                },
            )

        payment = PaymentData(
            transaction_hash=verification.transaction_hash or transaction_id.strip(),
            amount=verification.amount,
            network=parsed,
            payment_date=verification.timestamp or self.clock(),
            status=PaymentStatus.CONFIRMED,
            verification_method=verification.verification_method or VerificationMethod.TRANSACTION_ID,
            confirmations=verification.confirmations,
        )
        return payment, verification

    def _parse_network(self, network: Union[Network, str]) -> Network:
        if isinstance(network, Network):
            return network
        if network is None or not str(network).strip():
            raise ValidationError("Network is required", details={"field": "network"})
        try:
            return Network.parse(network)
        except ValueError as e:
            raise NetworkUnsupported(str(e), details={"network": network}) from None

    def _parse_amount(self, expected_amount: Union[Decimal, str, float]) -> Decimal:
        try:
            amount = Decimal(str(expected_amount))
        except (InvalidOperation, ValueError):
            raise ValidationError("Expected amount must be a number",
                                  details={"field": "expected_amount"}) from None
        if not amount.is_finite() or amount <= 0:
            raise ValidationError("Expected amount must be positive", details={"field": "expected_amount"})
        if amount < self.subscription_price:
            raise ValidationError(
                f"Expected amount must be at least {self.subscription_price} USDT",
                details={"field": "expected_amount", "minimum": str(self.subscription_price)},
            )
        return amount
