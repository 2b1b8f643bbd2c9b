"""
Read-only access to the source chain over JSON-RPC.
"""

from typing import Optional

import requests
from web3 import Web3
from web3.exceptions import BlockNotFound, TransactionNotFound, Web3Exception

from .errors import ChainLookupError, RpcError
from .models import Block, PreStateSnapshot, TargetTransaction

PRESTATE_TRACER_CONFIG = {"tracer": "prestateTracer", "tracerConfig": {"diffMode": False}}

# Transport and node-side failures, as raised by web3 and its HTTP provider
RPC_ERRORS = (Web3Exception, ValueError, requests.exceptions.RequestException)


class Web3ChainDataSource:
    """Transactions, blocks and prestate traces from an archive node."""

    def __init__(self, rpc_url: str, timeout: float = 120.0, w3: Optional[Web3] = None):
        self.rpc_url = rpc_url
        self.w3 = w3 or Web3(Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": timeout}))

    def get_transaction(self, tx_hash: str) -> TargetTransaction:
        try:
            tx = self.w3.eth.get_transaction(tx_hash)
        except TransactionNotFound:
            raise ChainLookupError(f"Transaction {tx_hash} not found")
        except RPC_ERRORS as e:
            raise RpcError(f"Failed to fetch transaction {tx_hash}: {e}") from e

        if tx.get("blockNumber") is None:
            raise ChainLookupError(f"Transaction {tx_hash} is pending")
        return TargetTransaction.from_rpc(tx)

    def get_block_with_transactions(self, block_number: int) -> Block:
        try:
            block = self.w3.eth.get_block(block_number, full_transactions=True)
        except BlockNotFound:
            raise ChainLookupError(f"Block {block_number} not found")
        except RPC_ERRORS as e:
            raise RpcError(f"Failed to fetch block {block_number}: {e}") from e
        return Block.from_rpc(block)

    def debug_trace_prestate(self, tx_hash: str) -> PreStateSnapshot:
        """State of every account the transaction touches, just before it ran."""
        try:
            trace = self.w3.manager.request_blocking(
                "debug_traceTransaction",
                [tx_hash, PRESTATE_TRACER_CONFIG]
            )
        except RPC_ERRORS as e:
            raise RpcError(f"debug_traceTransaction failed for {tx_hash}: {e}") from e
        return PreStateSnapshot.from_trace(trace)
