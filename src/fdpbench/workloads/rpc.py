"""Minimal execution-client JSON-RPC calls used while a node pair is running."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import httpx

logger = logging.getLogger(__name__)

BATCH_SIZE = 200


class RpcClient:
    def __init__(self, url: str, *, timeout: float = 30.0, transport: Optional[httpx.BaseTransport] = None) -> None:
        self._url = url
        self._timeout = timeout
        self._transport = transport

    def _client(self) -> httpx.Client:
        return httpx.Client(timeout=self._timeout, transport=self._transport)

    def block_number(self) -> int:
        """Current head; 0 when the node is unreachable."""
        payload = {"jsonrpc": "2.0", "method": "eth_blockNumber", "params": [], "id": 1}
        try:
            with self._client() as client:
                response = client.post(self._url, json=payload)
                response.raise_for_status()
                return int(response.json()["result"], 16)
        except (httpx.HTTPError, KeyError, TypeError, ValueError) as exc:
            logger.debug("eth_blockNumber failed: %s", exc)
            return 0

    def count_transactions(self, start_block: int, end_block: int) -> int:
        """Transactions included in blocks ``start_block+1 .. end_block``.

        Requests are batched; a failed batch contributes nothing.
        """
        total = 0
        blocks = list(range(start_block + 1, end_block + 1))
        with self._client() as client:
            for offset in range(0, len(blocks), BATCH_SIZE):
                batch = [
                    {
                        "jsonrpc": "2.0",
                        "method": "eth_getBlockTransactionCountByNumber",
                        "params": [hex(number)],
                        "id": number,
                    }
                    for number in blocks[offset : offset + BATCH_SIZE]
                ]
                total += self._batch_total(client, batch)
        return total

    def _batch_total(self, client: httpx.Client, batch: List[Dict[str, Any]]) -> int:
        try:
            response = client.post(self._url, json=batch)
            response.raise_for_status()
            replies = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning(
                "Transaction count batch %s..%s failed: %s",
                batch[0]["params"][0],
                batch[-1]["params"][0],
                exc,
            )
            return 0
        count = 0
        for reply in replies if isinstance(replies, list) else []:
            result = reply.get("result") if isinstance(reply, dict) else None
            if result:
                count += int(result, 16)
        return count
