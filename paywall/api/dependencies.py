from fastapi import Request

from paywall.services.payment_service import PaymentVerificationService
from paywall.services.subscription_manager import SubscriptionManager


def get_subscription_manager(request: Request) -> SubscriptionManager:
    """Dependency returning the manager built at startup"""
    return request.app.state.subscription_manager


def get_payment_service(request: Request) -> PaymentVerificationService:
    """Dependency returning the verify-and-apply service built at startup"""
    return request.app.state.payment_service
