import json
import logging
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Callable, List, Optional

from pydantic import BaseModel
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.orm.exc import StaleDataError
from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from paywall.core.exceptions import (
    AlreadyApplied,
    ConcurrentModification,
    PaymentAlreadyClaimed,
    PaywallError,
    PersistenceError,
    SubscriptionNotFound,
)
from paywall.core.locks import SubscriptionLockManager
from paywall.models.payment import (
    Network,
    Payment,
    PaymentStatus,
    VerificationMethod,
    payment_key,
)
from paywall.models.subscription import Subscription, SubscriptionStatus
from paywall.models.subscription_history import SubscriptionHistory
from paywall.services import state_machine
from paywall.services.entitlements import Entitlement, project
from paywall.services.state_machine import (
    CancelRequested,
    PaymentConfirmed,
    PeriodElapsed,
    Policy,
    ReactivateRequested,
    SubscriptionState,
    Transition,
    apply_event,
)

logger = logging.getLogger(__name__)

# Status a history row lands in for each action
ACTION_STATUS = {
    state_machine.CREATED: SubscriptionStatus.ACTIVE,
    state_machine.EXTENDED: SubscriptionStatus.ACTIVE,
    state_machine.REACTIVATED: SubscriptionStatus.ACTIVE,
    state_machine.EXPIRED: SubscriptionStatus.EXPIRED,
    state_machine.GRACE_STARTED: SubscriptionStatus.GRACE,
    state_machine.CANCELLED: SubscriptionStatus.CANCELLED,
}


class PaymentData(BaseModel):
    """A verified on-chain payment about to be credited."""
    transaction_hash: str
    amount: Decimal
    network: Network
    payment_date: datetime
    status: PaymentStatus = PaymentStatus.CONFIRMED
    verification_method: VerificationMethod = VerificationMethod.TRANSACTION_ID
    confirmations: Optional[int] = None

    @property
    def key(self) -> str:
        return payment_key(self.network, self.transaction_hash)


class PaymentView(BaseModel):
    payment_key: str
    transaction_hash: str
    amount: Decimal
    network: Network
    payment_date: datetime
    status: PaymentStatus
    verification_method: VerificationMethod
    confirmations: Optional[int] = None

    class Config:
        from_attributes = True


class SubscriptionView(BaseModel):
    """Detached, read-only snapshot of a subscription and its payment history."""
    id: str
    user_id: str
    status: SubscriptionStatus
    start_date: datetime
    end_date: datetime
    next_payment_due: datetime
    grace_period_end: Optional[datetime] = None
    auto_renewal: bool
    cancellation_date: Optional[datetime] = None
    monthly_price: Decimal
    version: int
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    payments: List[PaymentView] = []

    class Config:
        from_attributes = True


class ApplyResult(BaseModel):
    subscription: SubscriptionView
    already_applied: bool = False
    actions: List[str] = []


class SweepReport(BaseModel):
    processed: int = 0
    expired: int = 0
    grace_started: int = 0
    cancelled: int = 0
    failed: int = 0


class SubscriptionManager:
    """
    The only writer of subscription state.

    Every mutation runs under the per-user lock, inside one database
    transaction: the subscription row, the appended payment and the history
    rows commit together or not at all.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        lock_manager: Optional[SubscriptionLockManager] = None,
        policy: Optional[Policy] = None,
        clock: Optional[Callable[[], datetime]] = None,
        monthly_price: Decimal = Decimal("100"),
        persist_attempts: int = 3,
        retry_wait=None,
    ):
        self.session_factory = session_factory
        self.lock_manager = lock_manager or SubscriptionLockManager()
        self.policy = policy or Policy()
        self.clock = clock or datetime.utcnow
        self.monthly_price = monthly_price
        self.persist_attempts = persist_attempts
        self.retry_wait = retry_wait or wait_exponential(multiplier=0.5, min=0.5, max=5)
        self.logger = logging.getLogger(__name__)

    @classmethod
    def from_settings(
        cls,
        settings,
        session_factory: sessionmaker,
        lock_manager: Optional[SubscriptionLockManager] = None,
    ) -> "SubscriptionManager":
        return cls(
            session_factory,
            lock_manager=lock_manager,
            policy=Policy.from_settings(settings),
            monthly_price=settings.subscription_price_usdt,
            persist_attempts=settings.sweep_persist_attempts,
        )

    # ------------------------------------------------------------------
    # Payments
    # ------------------------------------------------------------------

    def create_or_extend_subscription(self, user_id: str, payment: PaymentData) -> ApplyResult:
        """
        Credit a verified payment to the user's subscription.

        A payment key already credited to this user is reported as
        already applied with the subscription unchanged; one credited to a
        different user raises PaymentAlreadyClaimed.
        """
        self.logger.info(f"create_or_extend_subscription: Entry - user: {user_id}, payment: {payment.key}")
        with self.lock_manager.hold(user_id):
            result = self._apply_payment(user_id, payment, reactivate=False)
        self.logger.info(
            f"create_or_extend_subscription: Success - user: {user_id}, already_applied: {result.already_applied}, "
            f"end_date: {result.subscription.end_date}")
        return result

    def reactivate_subscription(self, user_id: str, payment: PaymentData) -> ApplyResult:
        """Bring a subscription back to active with a new payment."""
        self.logger.info(f"reactivate_subscription: Entry - user: {user_id}, payment: {payment.key}")
        with self.lock_manager.hold(user_id):
            result = self._apply_payment(user_id, payment, reactivate=True)
        self.logger.info(f"reactivate_subscription: Success - user: {user_id}, status: {result.subscription.status.value}")
        return result

    def _apply_payment(self, user_id: str, payment: PaymentData, reactivate: bool) -> ApplyResult:
        key = payment.key
        db = self.session_factory()
        try:
            try:
                self._check_payment_key(db, user_id, key)

                subscription = self._load(db, user_id)
                if reactivate and subscription is None:
                    raise SubscriptionNotFound("No subscription to reactivate", details={"user_id": user_id})

                now = self.clock()
                # A payment on a cancelled record is a reactivation
                if reactivate or (subscription is not None and subscription.status == SubscriptionStatus.CANCELLED):
                    event = ReactivateRequested(key)
                else:
                    event = PaymentConfirmed(key)
                transition = apply_event(self._state(subscription), event, now, self.policy)

                from_status = subscription.status if subscription is not None else None
                if subscription is None:
                    subscription = Subscription(
                        id=str(uuid.uuid4()),
                        user_id=user_id,
                        monthly_price=self.monthly_price,
                        created_at=now,
                    )
                    db.add(subscription)

                self._write_state(subscription, transition.state, now)
                subscription.payments.append(Payment(
                    id=str(uuid.uuid4()),
                    subscription_id=subscription.id,
                    user_id=user_id,
                    payment_key=key,
                    transaction_hash=payment.transaction_hash,
                    amount=payment.amount,
                    network=payment.network,
                    payment_date=payment.payment_date,
                    status=payment.status,
                    verification_method=payment.verification_method,
                    confirmations=payment.confirmations,
                    created_at=now,
                ))
                self._record_history(db, subscription, from_status, transition, now, {
                    'payment_key': key,
                    'amount': str(payment.amount),
                    'network': payment.network.value,
                    'end_date': subscription.end_date.isoformat(),
                })
                self._commit(db)
                return ApplyResult(subscription=self._view(subscription), actions=transition.actions)
            except IntegrityError as e:
                db.rollback()
                # Another writer inserted this payment key or subscription first
                self._check_payment_key(db, user_id, key)
                raise ConcurrentModification(
                    "Subscription was created concurrently, please retry",
                    details={"user_id": user_id},
                ) from e
        except AlreadyApplied:
            db.rollback()
            subscription = self._load(db, user_id)
            return ApplyResult(subscription=self._view(subscription), already_applied=True)
        except PaywallError:
            db.rollback()
            raise
        except StaleDataError as e:
            db.rollback()
            self.logger.warning(f"_apply_payment: Stale subscription - user: {user_id}")
            raise ConcurrentModification("Subscription changed concurrently, please retry",
                                         details={"user_id": user_id}) from e
        except SQLAlchemyError as e:
            db.rollback()
            self.logger.error(f"_apply_payment: Failure - user: {user_id}, {e}")
            raise PersistenceError("Could not save the payment, please retry", details={"user_id": user_id}) from e
        finally:
            db.close()

    def _check_payment_key(self, db: Session, user_id: str, key: str):
        existing = db.query(Payment).filter(Payment.payment_key == key).first()
        if existing is None:
            return
        if existing.user_id != user_id:
            self.logger.warning(f"_check_payment_key: Payment already claimed - key: {key}, user: {user_id}")
            raise PaymentAlreadyClaimed(
                "This transaction has already been used for another account",
                details={"payment_key": key},
            )
        raise AlreadyApplied("Payment already applied", details={"payment_key": key})

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_user_subscription(self, user_id: str) -> Optional[SubscriptionView]:
        """Read-only fetch of the user's subscription."""
        self.logger.info(f"get_user_subscription: Entry - user: {user_id}")
        db = self.session_factory()
        try:
            subscription = self._load(db, user_id)
            return self._view(subscription) if subscription is not None else None
        finally:
            db.close()

    def get_entitlement(self, user_id: str) -> Entitlement:
        """Project the stored subscription as-is; applies no transitions."""
        return project(self.get_user_subscription(user_id), self.clock())

    def check_subscription_status(self, user_id: str) -> Entitlement:
        """Apply any due time-based transition, then project the result."""
        self.logger.info(f"check_subscription_status: Entry - user: {user_id}")
        now = self.clock()
        with self.lock_manager.hold(user_id):
            view, _ = self._advance(user_id, now)
        entitlement = project(view, now)
        self.logger.info(f"check_subscription_status: Success - user: {user_id}, status: {entitlement.status}")
        return entitlement

    def get_subscription_history(self, user_id: str) -> List[dict]:
        """Audit trail of the user's subscription transitions, newest first"""
        self.logger.info(f"get_subscription_history: Entry - user: {user_id}")
        db = self.session_factory()
        try:
            entries = db.query(SubscriptionHistory).filter(
                SubscriptionHistory.user_id == user_id
            ).order_by(SubscriptionHistory.created_at.desc()).all()

            result = [{
                'id': entry.id,
                'action': entry.action,
                'from_status': entry.from_status,
                'to_status': entry.to_status,
                'created_at': entry.created_at.isoformat() if entry.created_at else None,
                'details': json.loads(entry.details) if entry.details else None,
            } for entry in entries]
            self.logger.info(f"get_subscription_history: Success - user: {user_id}, count: {len(result)}")
            return result
        finally:
            db.close()

    def get_subscription_stats(self) -> dict:
        """Counts per status and total confirmed revenue."""
        self.logger.info("get_subscription_stats: Entry")
        db = self.session_factory()
        try:
            counts = {status.value: 0 for status in SubscriptionStatus}
            rows = db.query(Subscription.status, func.count(Subscription.id)).group_by(Subscription.status).all()
            for status, count in rows:
                counts[SubscriptionStatus(status).value] = count

            revenue = db.query(func.coalesce(func.sum(Payment.amount), 0)).filter(
                Payment.status == PaymentStatus.CONFIRMED
            ).scalar()

            stats = {
                'total': sum(counts.values()),
                **counts,
                'grace_period': counts[SubscriptionStatus.GRACE.value],
                'revenue': Decimal(str(revenue or 0)),
            }
            self.logger.info(f"get_subscription_stats: Success - total: {stats['total']}")
            return stats
        finally:
            db.close()

    # ------------------------------------------------------------------
    # Time-driven and user-driven transitions
    # ------------------------------------------------------------------

    def cancel_subscription(self, user_id: str) -> SubscriptionView:
        self.logger.info(f"cancel_subscription: Entry - user: {user_id}")
        with self.lock_manager.hold(user_id):
            db = self.session_factory()
            try:
                subscription = self._load(db, user_id)
                if subscription is None:
                    raise SubscriptionNotFound("No subscription found", details={"user_id": user_id})
                now = self.clock()
                transition = apply_event(self._state(subscription), CancelRequested(), now, self.policy)
                if transition.changed:
                    from_status = subscription.status
                    self._write_state(subscription, transition.state, now)
                    self._record_history(db, subscription, from_status, transition, now, {
                        'cancelled_at': now.isoformat(),
                        'end_date': subscription.end_date.isoformat(),
                    })
                    self._commit(db)
                view = self._view(subscription)
            except PaywallError:
                db.rollback()
                raise
            except SQLAlchemyError as e:
                db.rollback()
                self.logger.error(f"cancel_subscription: Failure - user: {user_id}, {e}")
                raise PersistenceError("Could not cancel the subscription, please retry",
                                       details={"user_id": user_id}) from e
            finally:
                db.close()
        self.logger.info(f"cancel_subscription: Success - user: {user_id}")
        return view

    def process_monthly_checks(self) -> SweepReport:
        """
        Sweep every lapsable subscription and apply due transitions.

        Each user is handled under its own lock and transaction; persistence
        failures are retried with backoff and counted as failed after the
        last attempt. Safe to re-run.
        """
        self.logger.info("process_monthly_checks: Entry")
        now = self.clock()
        report = SweepReport()

        db = self.session_factory()
        try:
            user_ids = [row[0] for row in db.query(Subscription.user_id).filter(
                Subscription.status.in_(state_machine.LAPSABLE)
            ).all()]
        finally:
            db.close()

        for user_id in user_ids:
            try:
                actions = self._advance_with_retry(user_id, now)
            except PersistenceError as e:
                report.failed += 1
                self.logger.error(f"process_monthly_checks: Failure - user: {user_id}, {e}")
                continue

            report.processed += 1
            report.expired += actions.count(state_machine.EXPIRED)
            report.grace_started += actions.count(state_machine.GRACE_STARTED)
            report.cancelled += actions.count(state_machine.CANCELLED)

        self.logger.info(f"process_monthly_checks: Success - {report.model_dump()}")
        return report

    def _advance_with_retry(self, user_id: str, now: datetime) -> List[str]:
        for attempt in Retrying(
            stop=stop_after_attempt(self.persist_attempts),
            wait=self.retry_wait,
            retry=retry_if_exception_type(PersistenceError),
            before_sleep=before_sleep_log(self.logger, logging.WARNING),
            reraise=True,
        ):
            with attempt:
                with self.lock_manager.hold(user_id):
                    _, actions = self._advance(user_id, now)
        return actions

    def _advance(self, user_id: str, now: datetime):
        """Apply PeriodElapsed at ``now``; returns (snapshot or None, actions)."""
        db = self.session_factory()
        try:
            subscription = self._load(db, user_id)
            if subscription is None:
                return None, []
            transition = apply_event(self._state(subscription), PeriodElapsed(), now, self.policy)
            if transition.changed:
                from_status = subscription.status
                self._write_state(subscription, transition.state, now)
                self._record_history(db, subscription, from_status, transition, now, {
                    'end_date': subscription.end_date.isoformat(),
                    'grace_period_end': subscription.grace_period_end.isoformat()
                    if subscription.grace_period_end else None,
                })
                self._commit(db)
                self.logger.info(f"_advance: Transitioned - user: {user_id}, actions: {transition.actions}")
            return self._view(subscription), transition.actions
        except PaywallError:
            db.rollback()
            raise
        except SQLAlchemyError as e:
            db.rollback()
            raise PersistenceError("Could not save the subscription transition",
                                   details={"user_id": user_id}) from e
        finally:
            db.close()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _load(self, db: Session, user_id: str) -> Optional[Subscription]:
        return db.query(Subscription).filter(Subscription.user_id == user_id).first()

    def _state(self, subscription: Optional[Subscription]) -> Optional[SubscriptionState]:
        if subscription is None:
            return None
        return SubscriptionState(
            status=SubscriptionStatus(subscription.status),
            start_date=subscription.start_date,
            end_date=subscription.end_date,
            next_payment_due=subscription.next_payment_due,
            grace_period_end=subscription.grace_period_end,
            auto_renewal=subscription.auto_renewal,
            cancellation_date=subscription.cancellation_date,
        )

    def _write_state(self, subscription: Subscription, state: SubscriptionState, now: datetime):
        subscription.status = state.status
        subscription.start_date = state.start_date
        subscription.end_date = state.end_date
        subscription.next_payment_due = state.next_payment_due
        subscription.grace_period_end = state.grace_period_end
        subscription.auto_renewal = state.auto_renewal
        subscription.cancellation_date = state.cancellation_date
        subscription.updated_at = now

    def _record_history(
        self,
        db: Session,
        subscription: Subscription,
        from_status: Optional[SubscriptionStatus],
        transition: Transition,
        now: datetime,
        details: dict,
    ):
        previous = from_status
        for action in transition.actions:
            to_status = ACTION_STATUS[action]
            db.add(SubscriptionHistory(
                id=str(uuid.uuid4()),
                user_id=subscription.user_id,
                subscription_id=subscription.id,
                action=action,
                from_status=previous.value if previous is not None else None,
                to_status=to_status.value,
                details=json.dumps(details),
                created_at=now,
            ))
            previous = to_status

    def _commit(self, db: Session):
        try:
            db.commit()
        except StaleDataError as e:
            db.rollback()
            raise ConcurrentModification("Subscription changed concurrently, please retry") from e

    def _view(self, subscription: Subscription) -> SubscriptionView:
        return SubscriptionView.model_validate(subscription)
