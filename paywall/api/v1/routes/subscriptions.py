import asyncio
import logging

from fastapi import APIRouter, Depends, HTTPException, status

from paywall.api.dependencies import get_subscription_manager
from paywall.core.exceptions import PaywallError
from paywall.core.middleware import get_current_user
from paywall.services.subscription_manager import SubscriptionManager

router = APIRouter()
logger = logging.getLogger(__name__)


@router.get("/status")
async def get_subscription_status(
    current_user: dict = Depends(get_current_user),
    manager: SubscriptionManager = Depends(get_subscription_manager)
):
    """
    Get the caller's entitlement: status, is_active, days_remaining,
    grace_period_remaining and next_payment_due.
    Applies any due expiry / grace / cancellation first.
    Requires authentication.
    """
    user_id = current_user['uid']
    logger.info(f"get_subscription_status: Entry - user: {user_id}")

    try:
        entitlement = await asyncio.to_thread(manager.check_subscription_status, user_id)
        logger.info(f"get_subscription_status: Success - user: {user_id}, status: {entitlement.status}")
        return entitlement
    except PaywallError as e:
        logger.warning(f"get_subscription_status: {e.error_code} - user: {user_id}, {e.message}")
        raise e.to_http_exception()
    except Exception as e:
        logger.error(f"get_subscription_status: Failure - {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=str(e)
        )


@router.get("/current")
async def get_current_subscription(
    current_user: dict = Depends(get_current_user),
    manager: SubscriptionManager = Depends(get_subscription_manager)
):
    """
    Get the caller's subscription with its payment history.
    Requires authentication.
    """
    user_id = current_user['uid']
    logger.info(f"get_current_subscription: Entry - user: {user_id}")

    try:
        subscription = await asyncio.to_thread(manager.get_user_subscription, user_id)
        if subscription is None:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail="No subscription found"
            )
        logger.info(f"get_current_subscription: Success - user: {user_id}")
        return subscription
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"get_current_subscription: Failure - {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=str(e)
        )


@router.get("/history")
async def get_subscription_history(
    current_user: dict = Depends(get_current_user),
    manager: SubscriptionManager = Depends(get_subscription_manager)
):
    """
    Get the caller's subscription audit trail.
    Requires authentication.
    """
    user_id = current_user['uid']
    logger.info(f"get_subscription_history: Entry - user: {user_id}")

    try:
        history = await asyncio.to_thread(manager.get_subscription_history, user_id)
        logger.info(f"get_subscription_history: Success - user: {user_id}, count: {len(history)}")
        return {"history": history}
    except Exception as e:
        logger.error(f"get_subscription_history: Failure - {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=str(e)
        )


@router.post("/cancel")
async def cancel_subscription(
    current_user: dict = Depends(get_current_user),
    manager: SubscriptionManager = Depends(get_subscription_manager)
):
    """
    Cancel the caller's subscription. Cancelling twice is a no-op.
    Requires authentication.
    """
    user_id = current_user['uid']
    logger.info(f"cancel_subscription: Entry - user: {user_id}")

    try:
        subscription = await asyncio.to_thread(manager.cancel_subscription, user_id)
        logger.info(f"cancel_subscription: Success - user: {user_id}")
        return {"success": True, "subscription": subscription}
    except PaywallError as e:
        logger.warning(f"cancel_subscription: {e.error_code} - user: {user_id}, {e.message}")
        raise e.to_http_exception()
    except Exception as e:
        logger.error(f"cancel_subscription: Failure - {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=str(e)
        )
