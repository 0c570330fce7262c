from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

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

# keccak256("Transfer(address,address,uint256)")
TRANSFER_TOPIC = "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"

SCAN_PAGE_SIZE = 100

# JSON-RPC "invalid params", returned for a malformed transaction hash
INVALID_PARAMS = -32602


class InvalidArgument(ExplorerError):
    """The explorer rejected a request parameter as malformed."""

    def __init__(self, message: str):
        super().__init__(VerificationReason.MALFORMED_RESPONSE, message)


class EvmScanVerifier(NetworkVerifier):
    """
    USDT verification against an Etherscan-compatible explorer API.

    Transaction mode reads the receipt through the ``proxy`` module and
    decodes the token contract's Transfer logs; scan mode lists
    ``account/tokentx``. EVM addresses are compared case-insensitively.
    """

    def same_address(self, a: Optional[str], b: Optional[str]) -> bool:
        return a is not None and b is not None and a.lower() == b.lower()

    def _params(self, **params: Any) -> Dict[str, Any]:
        if self.config.api_key:
            params["apikey"] = self.config.api_key
        return params

    async def _call(self, **params: Any) -> Any:
        """Call the explorer and return its ``result`` field."""
        payload = await self.get_json(self.config.base_url, params=self._params(**params))
        if not isinstance(payload, dict):
            raise ExplorerError(VerificationReason.MALFORMED_RESPONSE, "Explorer returned an unexpected payload")

        result = payload.get("result")
        error = payload.get("error")
        if isinstance(error, dict) and (
            error.get("code") == INVALID_PARAMS or "invalid argument" in str(error.get("message", "")).lower()
        ):
            raise InvalidArgument(str(error.get("message") or "Invalid argument"))
        if payload.get("status") == "0" or "error" in payload:
            message = str(payload.get("message") or "")
            detail = str(result or payload.get("error") or "")
            if "rate limit" in detail.lower() or "rate limit" in message.lower():
                raise ExplorerError(VerificationReason.RATE_LIMITED, "Explorer rate limit reached, please retry shortly")
            if "no transactions found" in message.lower():
                return []
            raise ExplorerError(VerificationReason.UNREACHABLE, f"Explorer error: {message or detail}")
        return result

    async def verify_transaction(self, address: str, min_amount: Decimal, tx_id: str) -> VerificationResult:
        try:
            receipt = await self._call(module="proxy", action="eth_getTransactionReceipt", txhash=tx_id)
        except InvalidArgument:
            return self.not_found(VerificationReason.NOT_FOUND,
                                  f"{tx_id} is not a valid {self.network.value} transaction hash", tx_id)
        if not receipt:
            return self.not_found(VerificationReason.NOT_FOUND,
                                  f"Transaction not found on {self.network.value}", tx_id)
        if not isinstance(receipt, dict):
            raise ExplorerError(VerificationReason.MALFORMED_RESPONSE, "Explorer returned an unexpected receipt")

        if receipt.get("status") != "0x1":
            return self.not_found(VerificationReason.TRANSACTION_FAILED, "Transaction reverted on chain", tx_id)

        block_number = int(receipt["blockNumber"], 16)
        block = await self._call(module="proxy", action="eth_getBlockByNumber",
                                 tag=hex(block_number), boolean="false")
        timestamp = from_epoch(int(block["timestamp"], 16)) if isinstance(block, dict) else None

        latest = await self._call(module="proxy", action="eth_blockNumber")
        confirmations = max(0, int(latest, 16) - block_number + 1)

        transfers = self._decode_logs(receipt.get("logs") or [], receipt.get("transactionHash") or tx_id,
                                      timestamp, confirmations)
        return self.match_transaction(transfers, address, min_amount, tx_id)

    async def scan_address(self, address: str, min_amount: Decimal, now: datetime) -> VerificationResult:
        rows = await self._call(
            module="account",
            action="tokentx",
            contractaddress=self.config.contract,
            address=address,
            page=1,
            offset=SCAN_PAGE_SIZE,
            sort="desc",
        )
        if not isinstance(rows, list):
            raise ExplorerError(VerificationReason.MALFORMED_RESPONSE, "Explorer returned an unexpected transfer list")

        transfers = [
            Transfer(
                transaction_hash=row["hash"],
                from_address=row.get("from"),
                to_address=row["to"],
                contract=row.get("contractAddress"),
                amount=to_token_units(row["value"], row.get("tokenDecimal") or self.config.decimals),
                timestamp=from_epoch(row["timeStamp"]),
                confirmations=int(row["confirmations"]) if row.get("confirmations") else None,
                symbol=row.get("tokenSymbol"),
            )
            for row in rows
        ]
        return self.select_recent(transfers, address, min_amount, now)

    def _decode_logs(
        self,
        logs: List[dict],
        tx_hash: str,
        timestamp: Optional[datetime],
        confirmations: int,
    ) -> List[Transfer]:
        transfers = []
        for log in logs:
            topics = log.get("topics") or []
            if len(topics) < 3 or topics[0].lower() != TRANSFER_TOPIC:
                continue
            transfers.append(Transfer(
                transaction_hash=tx_hash,
                from_address="0x" + topics[1][-40:],
                to_address="0x" + topics[2][-40:],
                contract=log.get("address"),
                amount=to_token_units(int(log["data"], 16), self.config.decimals),
                timestamp=timestamp,
                confirmations=confirmations,
            ))
        return transfers


class Erc20Verifier(EvmScanVerifier):
    network = Network.ERC20


class Bep20Verifier(EvmScanVerifier):
    network = Network.BEP20
