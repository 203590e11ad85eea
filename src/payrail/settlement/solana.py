"""Solana JSON-RPC settlement network client."""

import asyncio
import base64
import logging
from decimal import Decimal
from typing import Any, Optional

import httpx

from payrail.errors import ConfirmationTimeoutError, SettlementError, SubmissionError
from payrail.settlement.base import BlockhashInfo, OnChainTransaction, SettlementNetwork
from payrail.utils.amounts import lamports_to_sol

logger = logging.getLogger(__name__)

CONFIRMED_STATUSES = ("confirmed", "finalized")


class SolanaRPCClient(SettlementNetwork):
    """Settlement network backed by a Solana RPC endpoint."""

    name = "solana"

    def __init__(
        self,
        rpc_url: str,
        commitment: str = "confirmed",
        poll_interval: float = 0.5,
        request_timeout: float = 15.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.rpc_url = rpc_url
        self.commitment = commitment
        self.poll_interval = poll_interval
        self._client = client or httpx.AsyncClient(timeout=request_timeout)
        self._request_id = 0

    async def _rpc(self, method: str, params: list) -> Any:
        """Call an RPC method and return its `result`.

        Raises SettlementError for anything other than a well-formed result.
        """
        self._request_id += 1
        payload = {"jsonrpc": "2.0", "id": self._request_id, "method": method, "params": params}
        try:
            response = await self._client.post(self.rpc_url, json=payload)
        except httpx.HTTPError as e:
            logger.error(f"Solana RPC {method} transport error: {e}")
            raise SettlementError(f"Settlement network unavailable: {e}")

        if response.status_code != 200:
            logger.error(f"Solana RPC {method} HTTP {response.status_code}")
            raise SettlementError(
                f"Settlement network returned HTTP {response.status_code}",
                details=response.text[:200],
            )

        try:
            data = response.json()
        except ValueError:
            logger.error(f"Solana RPC {method} returned a non-JSON body")
            raise SettlementError(
                f"Solana RPC {method} returned malformed response",
                details=response.text[:200],
            )
        if not isinstance(data, dict):
            logger.error(f"Solana RPC {method} returned {type(data).__name__}, expected object")
            raise SettlementError(f"Solana RPC {method} returned malformed response")

        if data.get("error"):
            error = data["error"]
            message = error.get("message", "unknown error") if isinstance(error, dict) else str(error)
            raise SettlementError(f"Solana RPC {method} failed: {message}", details=error)
        return data.get("result")

    async def get_balance(self, address: str) -> Decimal:
        result = await self._rpc("getBalance", [address, {"commitment": self.commitment}])
        lamports = result.get("value", 0) if isinstance(result, dict) else 0
        return lamports_to_sol(lamports)

    async def get_latest_blockhash(self) -> BlockhashInfo:
        result = await self._rpc("getLatestBlockhash", [{"commitment": self.commitment}])
        try:
            value = result["value"]
            return BlockhashInfo(
                blockhash=value["blockhash"],
                last_valid_block_height=value["lastValidBlockHeight"],
            )
        except (KeyError, TypeError):
            raise SettlementError("Solana RPC getLatestBlockhash returned malformed response")

    async def send_raw_transaction(self, tx_bytes: bytes) -> str:
        encoded = base64.b64encode(tx_bytes).decode()
        try:
            signature = await self._rpc(
                "sendTransaction",
                [
                    encoded,
                    {
                        "encoding": "base64",
                        "skipPreflight": False,
                        "preflightCommitment": self.commitment,
                    },
                ],
            )
        except SettlementError as e:
            raise SubmissionError(f"Transaction rejected: {e.message}", details=e.details)
        if not isinstance(signature, str) or not signature:
            raise SubmissionError("Transaction submission returned no signature")

        logger.info(f"Solana transaction submitted: {signature}")
        return signature

    async def confirm_transaction(self, signature: str, timeout: float) -> None:
        async def _poll() -> None:
            while True:
                result = await self._rpc(
                    "getSignatureStatuses",
                    [[signature], {"searchTransactionHistory": True}],
                )
                if result is not None and not isinstance(result, dict):
                    raise SettlementError("Solana RPC getSignatureStatuses returned malformed response")
                statuses = (result or {}).get("value") or [None]
                status = statuses[0]
                if isinstance(status, dict):
                    if status.get("err") is not None:
                        raise SubmissionError(
                            f"Transaction failed on chain: {status['err']}",
                            details={"transactionId": signature},
                        )
                    if status.get("confirmationStatus") in CONFIRMED_STATUSES:
                        return
                await asyncio.sleep(self.poll_interval)

        try:
            await asyncio.wait_for(_poll(), timeout=timeout)
        except asyncio.TimeoutError:
            raise ConfirmationTimeoutError(
                f"Transaction confirmation timed out after {timeout:g}s",
                details={"transactionId": signature},
            )

    async def get_transaction(self, signature: str) -> OnChainTransaction:
        result = await self._rpc(
            "getTransaction",
            [
                signature,
                {
                    "encoding": "jsonParsed",
                    "commitment": self.commitment,
                    "maxSupportedTransactionVersion": 0,
                },
            ],
        )
        if result is None:
            return OnChainTransaction(signature=signature, found=False)
        if not isinstance(result, dict):
            raise SettlementError("Solana RPC getTransaction returned malformed response")

        meta = result.get("meta") or {}
        tx = OnChainTransaction(
            signature=signature,
            found=True,
            err=meta.get("err"),
            slot=result.get("slot"),
        )

        # First System transfer, if any
        message = (result.get("transaction") or {}).get("message") or {}
        for instruction in message.get("instructions", []):
            parsed = instruction.get("parsed")
            if (
                instruction.get("program") == "system"
                and isinstance(parsed, dict)
                and parsed.get("type") == "transfer"
            ):
                info = parsed.get("info", {})
                tx.source = info.get("source")
                tx.destination = info.get("destination")
                tx.lamports = info.get("lamports")
                break
        return tx

    async def close(self) -> None:
        await self._client.aclose()
