import logging
from decimal import Decimal

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel

from paywall.api.dependencies import get_payment_service
from paywall.core.exceptions import PaywallError
from paywall.core.middleware import get_current_user
from paywall.services.payment_service import PaymentVerificationService

router = APIRouter()
logger = logging.getLogger(__name__)


class VerifyPaymentRequest(BaseModel):
    network: str  # 'trc20', 'erc20' or 'bep20'
    expected_amount: Decimal
    transaction_id: str


@router.post("/verify")
async def verify_payment(
    request: VerifyPaymentRequest,
    current_user: dict = Depends(get_current_user),
    payment_service: PaymentVerificationService = Depends(get_payment_service)
):
    """
    Verify an on-chain USDT payment and apply it to the caller's subscription.
    Resubmitting an already credited transaction succeeds with already_applied=true.
    Requires authentication.
    """
    user_id = current_user['uid']
    logger.info(
        f"verify_payment: Entry - user: {user_id}, network: {request.network}, tx: {request.transaction_id}")

    try:
        outcome = await payment_service.verify_and_apply(
            user_id, request.network, request.expected_amount, request.transaction_id)
        logger.info(f"verify_payment: Success - user: {user_id}, already_applied: {outcome.already_applied}")
        return outcome
    except PaywallError as e:
        logger.warning(f"verify_payment: {e.error_code} - user: {user_id}, {e.message}")
        raise e.to_http_exception()
    except Exception as e:
        logger.error(f"verify_payment: Failure - {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=str(e)
        )


@router.post("/reactivate")
async def reactivate_subscription(
    request: VerifyPaymentRequest,
    current_user: dict = Depends(get_current_user),
    payment_service: PaymentVerificationService = Depends(get_payment_service)
):
    """
    Reactivate a cancelled or lapsed subscription with a new on-chain payment.
    Requires authentication.
    """
    user_id = current_user['uid']
    logger.info(
        f"reactivate_subscription: Entry - user: {user_id}, network: {request.network}, tx: {request.transaction_id}")

    try:
        outcome = await payment_service.reactivate(
            user_id, request.network, request.expected_amount, request.transaction_id)
        logger.info(f"reactivate_subscription: Success - user: {user_id}")
        return outcome
    except PaywallError as e:
        logger.warning(f"reactivate_subscription: {e.error_code} - user: {user_id}, {e.message}")
        raise e.to_http_exception()
    except Exception as e:
        logger.error(f"reactivate_subscription: Failure - {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=str(e)
        )
