from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional

from paywall.models.payment import Network
from paywall.verifiers.base import (
    ExplorerError,
    NetworkVerifier,
    Transfer,
    VerificationReason,
    VerificationResult,
    from_epoch,
    to_token_units,
)


class TronVerifier(NetworkVerifier):
    """
    TRC20 USDT verification.

    Single transactions come from TronScan (``/api/transaction-info``); address
    history comes from TronGrid (``/v1/accounts/{address}/transactions/trc20``).
    TRON base58 addresses are compared exactly.
    """

    network = Network.TRC20

    def _headers(self) -> Optional[Dict[str, str]]:
        if self.config.api_key:
            return {"TRON-PRO-API-KEY": self.config.api_key}
        return None

    async def verify_transaction(self, address: str, min_amount: Decimal, tx_id: str) -> VerificationResult:
        base_url = (self.config.secondary_url or self.config.base_url).rstrip("/")
        info = await self.get_json(
            f"{base_url}/api/transaction-info",
            params={"hash": tx_id},
            headers=self._headers(),
        )
        if not isinstance(info, dict):
            raise ExplorerError(VerificationReason.MALFORMED_RESPONSE, "TronScan returned an unexpected payload")

        # TronScan answers unknown hashes with an empty object
        if not info or not info.get("hash"):
            return self.not_found(VerificationReason.NOT_FOUND, "Transaction not found on TRON", tx_id)

        contract_ret = info.get("contractRet")
        if contract_ret and contract_ret != "SUCCESS":
            return self.not_found(VerificationReason.TRANSACTION_FAILED,
                                  f"Transaction failed on chain ({contract_ret})", tx_id)

        timestamp = from_epoch(info["timestamp"], milliseconds=True) if info.get("timestamp") else None
        confirmations = info.get("confirmations")
        if confirmations is None and "confirmed" in info:
            confirmations = 1 if info["confirmed"] else 0

        transfers = [
            self._transfer_from_tronscan(raw, info["hash"], timestamp, confirmations)
            for raw in self._transfer_infos(info)
        ]
        return self.match_transaction(transfers, address, min_amount, tx_id)

    async def scan_address(self, address: str, min_amount: Decimal, now: datetime) -> VerificationResult:
        payload = await self.get_json(
            f"{self.config.base_url.rstrip('/')}/v1/accounts/{address}/transactions/trc20",
            params={
                "limit": self.config.scan_limit,
                "only_to": "true",
                "contract_address": self.config.contract,
            },
            headers=self._headers(),
        )
        if not isinstance(payload, dict) or not isinstance(payload.get("data"), list):
            raise ExplorerError(VerificationReason.MALFORMED_RESPONSE, "TronGrid returned an unexpected payload")
        if payload.get("success") is False:
            raise ExplorerError(VerificationReason.UNREACHABLE,
                                f"TronGrid error: {payload.get('error', 'unknown error')}")

        transfers = [self._transfer_from_trongrid(raw) for raw in payload["data"]]
        return self.select_recent(transfers, address, min_amount, now)

    def _transfer_infos(self, info: dict) -> List[dict]:
        transfers = info.get("trc20TransferInfo")
        if transfers:
            return transfers
        # Older TronScan payloads carry a single tokenTransferInfo object
        single = info.get("tokenTransferInfo")
        return [single] if single else []

    def _transfer_from_tronscan(
        self,
        raw: dict,
        tx_hash: str,
        timestamp: Optional[datetime],
        confirmations: Optional[int],
    ) -> Transfer:
        decimals = raw.get("decimals", self.config.decimals)
        return Transfer(
            transaction_hash=tx_hash,
            from_address=raw.get("from_address"),
            to_address=raw["to_address"],
            contract=raw.get("contract_address"),
            amount=to_token_units(raw.get("amount_str", raw.get("amount")), decimals),
            timestamp=timestamp,
            confirmations=confirmations,
            symbol=raw.get("symbol"),
        )

    def _transfer_from_trongrid(self, raw: dict) -> Transfer:
        token_info = raw.get("token_info") or {}
        return Transfer(
            transaction_hash=raw["transaction_id"],
            from_address=raw.get("from"),
            to_address=raw["to"],
            contract=token_info.get("address"),
            amount=to_token_units(raw["value"], token_info.get("decimals", self.config.decimals)),
            timestamp=from_epoch(raw["block_timestamp"], milliseconds=True),
            symbol=token_info.get("symbol"),
        )
