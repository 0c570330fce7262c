from paywall.models.subscription import Subscription, SubscriptionStatus
from paywall.models.payment import Payment, PaymentStatus, Network, VerificationMethod, payment_key
from paywall.models.subscription_history import SubscriptionHistory

__all__ = ["Subscription", "SubscriptionStatus", "Payment", "PaymentStatus", "Network", "VerificationMethod", "payment_key", "SubscriptionHistory"]
