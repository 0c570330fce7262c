import asyncio
import logging

from fastapi import APIRouter, Depends, HTTPException, status

from paywall.api.dependencies import get_subscription_manager
from paywall.core.middleware import require_admin
from paywall.services.subscription_manager import SubscriptionManager

router = APIRouter()
logger = logging.getLogger(__name__)


@router.get("/subscription-stats")
async def get_subscription_stats(
    current_user: dict = Depends(require_admin),
    manager: SubscriptionManager = Depends(get_subscription_manager)
):
    """
    Aggregate subscription counts by status and total confirmed revenue.
    Only admins can use this endpoint.
    """
    logger.info(f"get_subscription_stats: Entry - admin: {current_user.get('email')}")

    try:
        stats = await asyncio.to_thread(manager.get_subscription_stats)
        logger.info(f"get_subscription_stats: Success - total: {stats['total']}")
        return {"stats": stats}
    except Exception as e:
        logger.error(f"get_subscription_stats: Failure - {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=str(e)
        )


@router.post("/run-monthly-check")
async def run_monthly_check(
    current_user: dict = Depends(require_admin),
    manager: SubscriptionManager = Depends(get_subscription_manager)
):
    """
    Run the subscription sweep now and return its report with fresh stats.
    Only admins can use this endpoint.
    """
    logger.info(f"run_monthly_check: Entry - admin: {current_user.get('email')}")

    try:
        report = await asyncio.to_thread(manager.process_monthly_checks)
        stats = await asyncio.to_thread(manager.get_subscription_stats)
        logger.info(f"run_monthly_check: Success - processed: {report.processed}, failed: {report.failed}")
        return {
            "message": "Subscription checks completed",
            "report": report,
            "stats": stats,
        }
    except Exception as e:
        logger.error(f"run_monthly_check: Failure - {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=str(e)
        )
