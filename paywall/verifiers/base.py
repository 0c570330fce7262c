"""
Shared pieces of the per-network payment verifiers.

A verifier answers one question: does a USDT transfer matching the request
exist on chain? Every outcome, including explorer failures, comes back as a
VerificationResult; nothing is raised to the caller.
"""
import enum
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

import httpx
from pydantic import BaseModel

from paywall.core.exceptions import ApiError, VerificationNotFound
from paywall.core.redis_cache import RedisCache
from paywall.models.payment import Network, VerificationMethod

logger = logging.getLogger(__name__)


class VerificationReason(str, enum.Enum):
    NOT_FOUND = "not_found"
    INSUFFICIENT_AMOUNT = "insufficient_amount"
    WRONG_DESTINATION = "wrong_destination"
    WRONG_ASSET = "wrong_asset"
    TRANSACTION_FAILED = "transaction_failed"
    STALE = "stale"
    RATE_LIMITED = "rate_limited"
    UNREACHABLE = "unreachable"
    MALFORMED_RESPONSE = "malformed_response"
    BLANK_TRANSACTION_ID = "blank_transaction_id"
    UNSUPPORTED_NETWORK = "unsupported_network"


class VerificationResult(BaseModel):
    success: bool
    network: Optional[Network] = None
    transaction_hash: Optional[str] = None
    amount: Optional[Decimal] = None
    confirmations: Optional[int] = None
    timestamp: Optional[datetime] = None
    from_address: Optional[str] = None
    to_address: Optional[str] = None
    verification_method: Optional[VerificationMethod] = None
    error: Optional[str] = None
    reason: Optional[VerificationReason] = None
    message: Optional[str] = None

    @classmethod
    def failure(
        cls,
        error: str,
        reason: VerificationReason,
        message: str,
        network: Optional[Network] = None,
        transaction_hash: Optional[str] = None,
    ) -> "VerificationResult":
        return cls(
            success=False,
            error=error,
            reason=reason,
            message=message,
            network=network,
            transaction_hash=transaction_hash,
        )


@dataclass
class ExplorerConfig:
    base_url: str
    contract: str
    decimals: int
    api_key: Optional[str] = None
    # TronScan serves single transactions, TronGrid serves account history
    secondary_url: Optional[str] = None
    timeout_seconds: float = 10.0
    scan_limit: int = 50
    freshness_minutes: int = 10


@dataclass
class Transfer:
    """A token transfer normalized from any explorer's payload."""
    transaction_hash: str
    from_address: Optional[str]
    to_address: str
    contract: Optional[str]
    amount: Decimal
    timestamp: Optional[datetime]
    confirmations: Optional[int] = None
    symbol: Optional[str] = None


class ExplorerError(Exception):
    """Internal signal that the explorer could not give a usable answer."""

    def __init__(self, reason: VerificationReason, message: str):
        self.reason = reason
        super().__init__(message)


class ExplorerRateLimiter:
    """
    Per-explorer outbound request budget, counted per minute in Redis.
    Allows the call when Redis is unavailable.
    """

    def __init__(self, cache: Optional[RedisCache], name: str, requests_per_minute: int):
        self.cache = cache
        self.name = name
        self.requests_per_minute = requests_per_minute

    def allow(self) -> bool:
        if self.cache is None or self.requests_per_minute <= 0:
            return True
        window = datetime.utcnow().strftime('%Y%m%d%H%M')
        count = self.cache.incr(f"explorer_rate:{self.name}:{window}", ttl_seconds=60)
        if count is None:
            return True
        return count <= self.requests_per_minute


def to_token_units(raw: Any, decimals: int) -> Decimal:
    """Convert an integer amount in base units into human-readable token units."""
    if isinstance(raw, str) and raw.lower().startswith("0x"):
        raw = int(raw, 16)
    return Decimal(str(raw)) / (Decimal(10) ** int(decimals))


def from_epoch(value: Any, milliseconds: bool = False) -> datetime:
    """Explorer epoch timestamp to naive UTC datetime."""
    seconds = int(value) / 1000 if milliseconds else int(value)
    return datetime.fromtimestamp(seconds, tz=timezone.utc).replace(tzinfo=None)


class NetworkVerifier(ABC):
    network: Network

    def __init__(
        self,
        client: httpx.AsyncClient,
        config: ExplorerConfig,
        rate_limiter: Optional[ExplorerRateLimiter] = None,
    ):
        self.client = client
        self.config = config
        self.rate_limiter = rate_limiter
        self.logger = logging.getLogger(f"{__name__}.{self.network.value}")

    async def verify(
        self,
        address: str,
        min_amount: Decimal,
        tx_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> VerificationResult:
        """
        Verify a USDT transfer to ``address`` of at least ``min_amount``.

        With ``tx_id`` the named transaction is checked; without it the most
        recent transfers to ``address`` are scanned for a fresh match.
        """
        now = now or datetime.utcnow()
        tx_id = tx_id.strip() if tx_id else None
        self.logger.info(
            f"verify: Entry - network: {self.network.value}, tx: {tx_id}, min_amount: {min_amount}")

        try:
            if tx_id:
                result = await self.verify_transaction(address, min_amount, tx_id)
            else:
                result = await self.scan_address(address, min_amount, now)
        except ExplorerError as e:
            self.logger.warning(f"verify: Explorer error - network: {self.network.value}, reason: {e.reason.value}, {e}")
            return VerificationResult.failure(
                ApiError.error_code, e.reason, str(e), network=self.network, transaction_hash=tx_id)
        except (KeyError, IndexError, TypeError, ValueError, InvalidOperation) as e:
            self.logger.error(f"verify: Malformed explorer response - network: {self.network.value}, {e!r}")
            return VerificationResult.failure(
                ApiError.error_code,
                VerificationReason.MALFORMED_RESPONSE,
                "Block explorer returned an unexpected response",
                network=self.network,
                transaction_hash=tx_id,
            )

        if result.success:
            self.logger.info(f"verify: Success - network: {self.network.value}, tx: {result.transaction_hash}, amount: {result.amount}")
        else:
            self.logger.info(f"verify: Not verified - network: {self.network.value}, reason: {result.reason.value}")
        return result

    @abstractmethod
    async def verify_transaction(self, address: str, min_amount: Decimal, tx_id: str) -> VerificationResult:
        """Check one transaction by hash."""

    @abstractmethod
    async def scan_address(self, address: str, min_amount: Decimal, now: datetime) -> VerificationResult:
        """Find the most recent fresh qualifying transfer to ``address``."""

    def same_address(self, a: Optional[str], b: Optional[str]) -> bool:
        return a is not None and b is not None and a == b

    def is_usdt(self, transfer: Transfer) -> bool:
        if transfer.contract:
            return self.same_address(transfer.contract, self.config.contract)
        return (transfer.symbol or "").upper() == "USDT"

    async def get_json(
        self,
        url: str,
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> Any:
        """GET a JSON document from the explorer, translating transport failures into ExplorerError."""
        if self.rate_limiter is not None and not self.rate_limiter.allow():
            raise ExplorerError(VerificationReason.RATE_LIMITED,
                                "Outbound request budget for this explorer is exhausted, please retry shortly")

        try:
            response = await self.client.get(
                url, params=params, headers=headers, timeout=self.config.timeout_seconds)
        except httpx.TimeoutException:
            raise ExplorerError(VerificationReason.UNREACHABLE, "Block explorer timed out") from None
        except httpx.HTTPError as e:
            raise ExplorerError(VerificationReason.UNREACHABLE, f"Block explorer unreachable: {e}") from None

        if response.status_code == 429:
            raise ExplorerError(VerificationReason.RATE_LIMITED, "Block explorer rate limit reached, please retry shortly")
        if response.status_code >= 400:
            raise ExplorerError(VerificationReason.UNREACHABLE,
                                f"Block explorer returned HTTP {response.status_code}")

        try:
            return response.json()
        except ValueError:
            raise ExplorerError(VerificationReason.MALFORMED_RESPONSE, "Block explorer returned invalid JSON") from None

    def match_transaction(
        self,
        transfers: List[Transfer],
        address: str,
        min_amount: Decimal,
        tx_id: str,
    ) -> VerificationResult:
        """Pick the qualifying transfer out of one transaction's token transfers."""
        usdt = [t for t in transfers if self.is_usdt(t)]
        if not usdt:
            return self.not_found(VerificationReason.WRONG_ASSET,
                                  "Transaction is not a USDT transfer", tx_id)

        to_us = [t for t in usdt if self.same_address(t.to_address, address)]
        if not to_us:
            return self.not_found(VerificationReason.WRONG_DESTINATION,
                                  "Transaction did not send USDT to the deposit address", tx_id)

        best = max(to_us, key=lambda t: t.amount)
        if best.amount < min_amount:
            return self.not_found(
                VerificationReason.INSUFFICIENT_AMOUNT,
                f"Transferred amount {best.amount} USDT is below the required {min_amount} USDT",
                tx_id,
            )
        return self.success(best, VerificationMethod.TRANSACTION_ID)

    def select_recent(
        self,
        transfers: List[Transfer],
        address: str,
        min_amount: Decimal,
        now: datetime,
    ) -> VerificationResult:
        """Most recent qualifying transfer within the freshness window."""
        window = timedelta(minutes=self.config.freshness_minutes)
        candidates = [
            t for t in transfers
            if self.is_usdt(t)
            and self.same_address(t.to_address, address)
            and t.amount >= min_amount
            and t.timestamp is not None
        ]
        fresh = [t for t in candidates if now - t.timestamp <= window]
        if fresh:
            return self.success(max(fresh, key=lambda t: t.timestamp), VerificationMethod.ADDRESS_SCAN)
        if candidates:
            return self.not_found(
                VerificationReason.STALE,
                f"No matching transfer in the last {self.config.freshness_minutes} minutes",
            )
        return self.not_found(VerificationReason.NOT_FOUND,
                              "No matching USDT transfer to the deposit address was found")

    def success(self, transfer: Transfer, method: VerificationMethod) -> VerificationResult:
        return VerificationResult(
            success=True,
            network=self.network,
            transaction_hash=transfer.transaction_hash,
            amount=transfer.amount,
            confirmations=transfer.confirmations,
            timestamp=transfer.timestamp,
            from_address=transfer.from_address,
            to_address=transfer.to_address,
            verification_method=method,
        )

    def not_found(
        self,
        reason: VerificationReason,
        message: str,
        tx_id: Optional[str] = None,
    ) -> VerificationResult:
        return VerificationResult.failure(
            VerificationNotFound.error_code, reason, message, network=self.network, transaction_hash=tx_id)
