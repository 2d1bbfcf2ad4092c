"""
Chain data from a Bitcoin Core node over JSON-RPC.

Only node-level calls are used (scantxoutset, getblockchaininfo,
sendrawtransaction), so the node needs no wallet loaded.
"""

from __future__ import annotations

import asyncio
import os
import random
from collections.abc import Sequence
from typing import Any

import httpx
from loguru import logger

from cjwallet.backends.base import UTXO, ChainBackend

DEFAULT_RPC_TIMEOUT = 30.0  # seconds

# A full UTXO set scan on mainnet takes minutes
SCAN_RPC_TIMEOUT = 300.0  # seconds

RPC_MAX_RETRIES = 3
RPC_BASE_DELAY = 0.5  # seconds, doubled per retry

SCAN_MAX_RETRIES = 30
SCAN_BASE_DELAY = 0.5  # seconds
SCAN_STATUS_POLL_INTERVAL = 10.0  # seconds

# Set SENSITIVE_LOGGING=1 to log scanned addresses and descriptors
SENSITIVE_LOGGING = os.environ.get("SENSITIVE_LOGGING", "").lower() in ("1", "true", "yes")


class BitcoinCoreBackend(ChainBackend):
    """UTXO lookups and broadcast against a Bitcoin Core node."""

    def __init__(
        self,
        rpc_url: str = "http://127.0.0.1:18443",
        rpc_user: str = "rpcuser",
        rpc_password: str = "rpcpassword",
        scan_timeout: float = SCAN_RPC_TIMEOUT,
        max_retries: int = RPC_MAX_RETRIES,
    ):
        self.rpc_url = rpc_url.rstrip("/")
        self.rpc_user = rpc_user
        self.rpc_password = rpc_password
        self.scan_timeout = scan_timeout
        self.max_retries = max_retries
        # Client for regular RPC calls
        self.client = httpx.AsyncClient(timeout=DEFAULT_RPC_TIMEOUT, auth=(rpc_user, rpc_password))
        # Separate client for long-running scans
        self._scan_client = httpx.AsyncClient(timeout=scan_timeout, auth=(rpc_user, rpc_password))
        self._request_id = 0

    async def _rpc_call(
        self,
        method: str,
        params: list | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> Any:
        """
        Make an RPC call to Bitcoin Core.

        Transport errors are retried up to max_retries times with
        exponential backoff. RPC errors are never retried.

        Raises:
            ValueError: On RPC errors
            httpx.HTTPError: On connection/timeout errors after all retries
        """
        use_client = client or self.client
        attempt = 0

        while True:
            self._request_id += 1
            payload = {
                "jsonrpc": "2.0",
                "id": self._request_id,
                "method": method,
                "params": params or [],
            }

            try:
                response = await use_client.post(self.rpc_url, json=payload)
                break
            except httpx.TransportError as e:
                if attempt >= self.max_retries:
                    logger.error(f"RPC call failed: {method} - {e}")
                    raise
                delay = RPC_BASE_DELAY * (2**attempt) + random.uniform(0, 0.1)
                attempt += 1
                logger.warning(
                    f"RPC call {method} failed ({type(e).__name__}), retrying in "
                    f"{delay:.2f}s (attempt {attempt}/{self.max_retries})"
                )
                await asyncio.sleep(delay)

        # Bitcoin Core reports RPC errors as JSON bodies on HTTP 500
        try:
            data = response.json()
        except ValueError:
            response.raise_for_status()
            raise

        if "error" in data and data["error"]:
            error_info = data["error"]
            error_code = error_info.get("code", "unknown")
            error_msg = error_info.get("message", str(error_info))
            raise ValueError(f"RPC error {error_code}: {error_msg}")

        response.raise_for_status()
        return data.get("result")

    async def _scan_in_progress(self) -> bool:
        status = await self._rpc_call("scantxoutset", ["status"])
        if status is None:
            return False
        logger.debug(f"Node is busy with another UTXO set scan ({status.get('progress', 0)}%)")
        return True

    async def _scantxoutset_with_retry(self, descriptors: Sequence[str]) -> dict[str, Any] | None:
        """
        Run scantxoutset over descriptors.

        Bitcoin Core runs a single UTXO set scan at a time, so a busy node is
        polled until it is free. Returns None if it never frees up or the
        scan itself times out.
        """
        for attempt in range(1, SCAN_MAX_RETRIES + 1):
            if await self._scan_in_progress():
                await asyncio.sleep(SCAN_STATUS_POLL_INTERVAL)
                continue

            if SENSITIVE_LOGGING:
                logger.debug(f"scantxoutset descriptors: {list(descriptors)}")
            try:
                return await self._rpc_call(
                    "scantxoutset", ["start", list(descriptors)], client=self._scan_client
                )
            except ValueError as e:
                # -8: another client started a scan between status and start
                if "RPC error -8:" not in str(e):
                    raise
                delay = SCAN_BASE_DELAY * 2 ** min(attempt, 6) + random.uniform(0, 0.5)
                logger.debug(
                    f"Scan slot taken, attempt {attempt}/{SCAN_MAX_RETRIES}, next in {delay:.2f}s"
                )
                await asyncio.sleep(delay)
            except httpx.TimeoutException:
                logger.error(
                    f"scantxoutset over {len(descriptors)} descriptors "
                    f"exceeded {self.scan_timeout}s"
                )
                return None

        logger.warning(f"Node still scanning after {SCAN_MAX_RETRIES} attempts, skipping batch")
        return None

    async def get_utxos(self, addresses: list[str]) -> list[UTXO]:
        utxos: list[UTXO] = []
        if not addresses:
            return utxos

        tip_height = await self.get_block_height()

        # Process in batches to avoid huge RPC requests
        batch_size = 100
        for i in range(0, len(addresses), batch_size):
            chunk = addresses[i : i + batch_size]
            descriptors = [f"addr({addr})" for addr in chunk]
            if SENSITIVE_LOGGING:
                logger.debug(f"Scanning addresses batch {i // batch_size + 1}: {chunk}")

            result = await self._scantxoutset_with_retry(descriptors)
            if not result or "unspents" not in result:
                continue

            for utxo_data in result["unspents"]:
                confirmations = 0
                if utxo_data.get("height", 0) > 0:
                    confirmations = tip_height - utxo_data["height"] + 1

                # Extract address from descriptor "addr(ADDRESS)#checksum"
                desc = utxo_data.get("desc", "").split("#")[0]
                address = ""
                if desc.startswith("addr(") and desc.endswith(")"):
                    address = desc[5:-1]
                elif desc:
                    logger.warning(f"Failed to parse address from descriptor: '{desc}'")

                utxos.append(
                    UTXO(
                        txid=utxo_data["txid"],
                        vout=utxo_data["vout"],
                        value=round(utxo_data["amount"] * 100_000_000),
                        address=address,
                        confirmations=confirmations,
                        scriptpubkey=utxo_data.get("scriptPubKey", ""),
                        height=utxo_data.get("height"),
                    )
                )

            logger.debug(f"Scanned {len(chunk)} addresses, found {len(result['unspents'])} UTXOs")

        return utxos

    async def broadcast_transaction(self, tx_hex: str) -> str:
        try:
            txid = await self._rpc_call("sendrawtransaction", [tx_hex])
        except (ValueError, httpx.HTTPError) as e:
            logger.error(f"Failed to broadcast transaction: {e}")
            raise ValueError(f"Broadcast failed: {e}") from e
        logger.info(f"Broadcast transaction: {txid}")
        return txid

    async def get_block_height(self) -> int:
        info = await self._rpc_call("getblockchaininfo", [])
        height = info.get("blocks", 0)
        logger.debug(f"Current block height: {height}")
        return height

    async def close(self) -> None:
        await self.client.aclose()
        await self._scan_client.aclose()
