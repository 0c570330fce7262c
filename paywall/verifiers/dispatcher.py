import logging
from datetime import datetime
from decimal import Decimal
from typing import Dict, Optional, Union

import httpx

from paywall.core.config import Settings
from paywall.core.exceptions import ApiError, NetworkUnsupported, ValidationError
from paywall.core.redis_cache import RedisCache
from paywall.models.payment import Network
from paywall.verifiers.base import (
    ExplorerConfig,
    ExplorerRateLimiter,
    NetworkVerifier,
    VerificationReason,
    VerificationResult,
)
from paywall.verifiers.evm import Bep20Verifier, Erc20Verifier
from paywall.verifiers.tron import TronVerifier

logger = logging.getLogger(__name__)


class VerificationDispatcher:
    """Routes a verification request to the verifier registered for its network."""

    def __init__(self, verifiers: Dict[Network, NetworkVerifier]):
        self.verifiers = verifiers
        self.logger = logging.getLogger(__name__)

    async def verify_payment(
        self,
        network: Union[Network, str],
        address: str,
        min_amount: Decimal,
        tx_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> VerificationResult:
        """
        Verify a payment on the requested network.

        Input problems are reported without touching the network; any
        unexpected verifier failure comes back as an API_ERROR result.
        """
        self.logger.info(f"verify_payment: Entry - network: {network}, tx: {tx_id}")

        try:
            parsed = network if isinstance(network, Network) else Network.parse(network)
        except ValueError:
            self.logger.warning(f"verify_payment: Unsupported network - {network!r}")
            return VerificationResult.failure(
                NetworkUnsupported.error_code,
                VerificationReason.UNSUPPORTED_NETWORK,
                f"Unsupported network: {network}. Use one of: {', '.join(n.value for n in Network)}",
            )

        if tx_id is not None and not tx_id.strip():
            self.logger.warning("verify_payment: Blank transaction id rejected")
            return VerificationResult.failure(
                ValidationError.error_code,
                VerificationReason.BLANK_TRANSACTION_ID,
                "Transaction id must not be blank",
                network=parsed,
            )

        verifier = self.verifiers.get(parsed)
        if verifier is None:
            return VerificationResult.failure(
                NetworkUnsupported.error_code,
                VerificationReason.UNSUPPORTED_NETWORK,
                f"Network {parsed.value} is not configured",
                network=parsed,
            )

        try:
            result = await verifier.verify(address, min_amount, tx_id.strip() if tx_id else None, now=now)
        except Exception as e:
            self.logger.error(f"verify_payment: Failure - network: {parsed.value}, {e!r}")
            return VerificationResult.failure(
                ApiError.error_code,
                VerificationReason.UNREACHABLE,
                "Payment verification is temporarily unavailable, please retry",
                network=parsed,
                transaction_hash=tx_id,
            )

        self.logger.info(f"verify_payment: Success - network: {parsed.value}, verified: {result.success}")
        return result


def build_verifiers(
    settings: Settings,
    client: httpx.AsyncClient,
    cache: Optional[RedisCache] = None,
) -> Dict[Network, NetworkVerifier]:
    """Build one verifier per network from configuration, sharing one HTTP client."""

    def limiter(name: str) -> ExplorerRateLimiter:
        return ExplorerRateLimiter(cache, name, settings.explorer_requests_per_minute)

    common = dict(
        timeout_seconds=settings.explorer_timeout_seconds,
        scan_limit=settings.address_scan_limit,
        freshness_minutes=settings.scan_freshness_minutes,
    )
    return {
        Network.TRC20: TronVerifier(
            client,
            ExplorerConfig(
                base_url=settings.trongrid_api_url,
                secondary_url=settings.tronscan_api_url,
                api_key=settings.tron_api_key,
                contract=settings.usdt_trc20_contract,
                decimals=settings.usdt_trc20_decimals,
                **common,
            ),
            limiter("tron"),
        ),
        Network.ERC20: Erc20Verifier(
            client,
            ExplorerConfig(
                base_url=settings.etherscan_api_url,
                api_key=settings.etherscan_api_key,
                contract=settings.usdt_erc20_contract,
                decimals=settings.usdt_erc20_decimals,
                **common,
            ),
            limiter("etherscan"),
        ),
        Network.BEP20: Bep20Verifier(
            client,
            ExplorerConfig(
                base_url=settings.bscscan_api_url,
                api_key=settings.bscscan_api_key,
                contract=settings.usdt_bep20_contract,
                decimals=settings.usdt_bep20_decimals,
                **common,
            ),
            limiter("bscscan"),
        ),
    }
