"""
Forked execution backends.

A backend is a mutable EVM state forked from a remote chain at a fixed
height. The reconstruction, override and dispatch steps only talk to the
``ForkableExecutionBackend`` interface; ``AnvilBackend`` implements it on
top of a local ``anvil`` fork driven over JSON-RPC.
"""

import socket
import subprocess
import sys
import time
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Sequence

import requests
from web3 import Web3
from web3.exceptions import Web3Exception

from .colors import info
from .console import CONSOLE_ADDRESS
from .errors import BackendSpawnError, ExecutionError
from .models import (
    AccountInfo,
    BlockContext,
    ChainReference,
    ExecutionEnv,
    ExecutionResult,
    LogEntry,
    to_bytes,
    to_int,
)

RPC_ERRORS = (Web3Exception, ValueError, requests.exceptions.RequestException)

CALL_TRACER_CONFIG = {"tracer": "callTracer", "tracerConfig": {"withLog": True}}


class ForkableExecutionBackend(ABC):
    """EVM state forked at a chain height, with direct account access."""

    @abstractmethod
    def basic(self, address: str) -> Optional[AccountInfo]:
        """Account fields, or None if the account does not exist."""

    @abstractmethod
    def insert_account_info(self, address: str, info: AccountInfo) -> None:
        pass

    @abstractmethod
    def replace_storage(self, address: str, storage: Dict[int, int]) -> None:
        """Make ``storage`` the entire storage of ``address``; other slots read as zero."""

    @abstractmethod
    def insert_storage_slot(self, address: str, slot: int, value: int) -> None:
        pass

    @abstractmethod
    def storage(self, address: str, slot: int) -> int:
        pass

    @abstractmethod
    def execute_call(self, env: ExecutionEnv, commit: bool = True) -> ExecutionResult:
        pass

    @abstractmethod
    def execute_create(self, env: ExecutionEnv, commit: bool = True) -> ExecutionResult:
        pass

    def execute_block(self, envs: Sequence[ExecutionEnv]) -> List[ExecutionResult]:
        """
        Execute and commit ``envs``, in order, as the transactions of a single
        block. Each runs as a call or a creation depending on its recipient.
        """
        return [
            self.execute_call(env) if env.tx.to is not None else self.execute_create(env)
            for env in envs
        ]

    def close(self) -> None:
        pass

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False


def find_free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


def _quantity(value: int) -> str:
    return hex(value)


def _word(value: int) -> str:
    return "0x" + value.to_bytes(32, "big").hex()


def _data(value: bytes) -> str:
    return "0x" + bytes(value).hex()


def _log_entry(raw: Dict[str, Any]) -> LogEntry:
    return LogEntry(
        address=Web3.to_checksum_address(raw["address"]),
        topics=tuple(to_bytes(topic) for topic in raw.get("topics") or []),
        data=to_bytes(raw.get("data")),
    )


def _is_console_call(frame: Dict[str, Any]) -> bool:
    return str(frame.get("to") or "").lower() == CONSOLE_ADDRESS.lower()


def _console_entry(frame: Dict[str, Any]) -> LogEntry:
    """A console staticcall as a topic-less entry carrying the raw payload."""
    return LogEntry(address=CONSOLE_ADDRESS, topics=(), data=to_bytes(frame.get("input")))


def flatten_call_logs(frame: Dict[str, Any]) -> List[LogEntry]:
    """
    Collect the logs of a callTracer frame tree in emission order.

    ``position`` on a log is the number of child calls made before it was
    emitted; a log without one is placed after all child calls of its frame.
    Child calls to ``CONSOLE_ADDRESS`` are diagnostics and become entries in
    place instead of being descended into.
    """
    calls = list(frame.get("calls") or [])
    logs = sorted(
        frame.get("logs") or [],
        key=lambda log: to_int(log.get("position"), default=len(calls)),
    )

    ordered: List[LogEntry] = []
    pending = 0
    for index, call in enumerate(calls):
        while pending < len(logs) and to_int(logs[pending].get("position"), default=len(calls)) <= index:
            ordered.append(_log_entry(logs[pending]))
            pending += 1
        if _is_console_call(call):
            ordered.append(_console_entry(call))
        else:
            ordered.extend(flatten_call_logs(call))
    ordered.extend(_log_entry(log) for log in logs[pending:])
    return ordered


class AnvilBackend(ForkableExecutionBackend):
    """
    A local anvil fork.

    Committed executions are sent as impersonated transactions; a batch from
    ``execute_block`` is mined as one block under the requested block
    context. Uncommitted executions are traced with ``debug_traceCall`` and
    leave no trace on the fork.
    """

    def __init__(self, w3: Web3, process: Optional[subprocess.Popen] = None, quiet: bool = False):
        self.w3 = w3
        self.process = process
        self.quiet_mode = quiet
        # Accounts whose whole storage was replaced; anvil cannot wipe storage,
        # so these are also sent as state overrides on uncommitted executions.
        self._replaced_storage: Dict[str, Dict[int, int]] = {}
        self._last_timestamp = 0

    @classmethod
    def spawn(cls, chain_ref: ChainReference, hardfork: str = "cancun", anvil_path: str = "anvil",
              port: int = 0, startup_timeout: float = 30.0, rpc_timeout: float = 120.0,
              quiet: bool = False) -> "AnvilBackend":
        """Start ``anvil`` forked at ``chain_ref`` and wait until it answers."""
        port = port or find_free_port()
        args = [
            anvil_path,
            "--fork-url", chain_ref.fork_url,
            "--fork-block-number", str(chain_ref.fork_block_number),
            "--port", str(port),
            "--hardfork", hardfork,
            "--auto-impersonate",
            "--disable-code-size-limit",
            "--disable-block-gas-limit",
            "--order", "fifo",
            "--silent",
        ]
        if not quiet:
            print(info(f"[FORK] starting anvil fork @ block {chain_ref.fork_block_number}"), file=sys.stderr)
        try:
            process = subprocess.Popen(args, stdout=subprocess.DEVNULL, stderr=subprocess.PIPE)
        except OSError as e:
            raise BackendSpawnError(f"Could not start {anvil_path}: {e}") from e

        rpc_url = f"http://127.0.0.1:{port}"
        deadline = time.monotonic() + startup_timeout
        while True:
            if process.poll() is not None:
                stderr = process.stderr.read().decode(errors="replace") if process.stderr else ""
                raise BackendSpawnError(f"anvil exited with code {process.returncode}: {stderr.strip()}")
            probe = Web3(Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": 0.2}))
            if probe.is_connected():
                break
            if time.monotonic() > deadline:
                process.terminate()
                process.wait()
                raise BackendSpawnError(f"anvil did not become ready within {startup_timeout}s")
            time.sleep(0.1)

        w3 = Web3(Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": rpc_timeout}))
        return cls(w3, process=process, quiet=quiet)

    def _log(self, message: str):
        if not self.quiet_mode:
            print(message, file=sys.stderr)

    def _request(self, method: str, params: list) -> Any:
        try:
            response = self.w3.provider.make_request(method, params)
        except RPC_ERRORS as e:
            raise ExecutionError(f"{method} failed: {e}") from e
        if "error" in response:
            err = response["error"]
            message = err.get("message", err) if isinstance(err, dict) else err
            raise ExecutionError(f"{method} failed: {message}")
        return response.get("result")

    # Account access

    def basic(self, address: str) -> Optional[AccountInfo]:
        balance = to_int(self._request("eth_getBalance", [address, "latest"]))
        nonce = to_int(self._request("eth_getTransactionCount", [address, "latest"]))
        code = to_bytes(self._request("eth_getCode", [address, "latest"]))
        if balance == 0 and nonce == 0 and not code:
            return None
        return AccountInfo(balance=balance, nonce=nonce).with_code(code)

    def insert_account_info(self, address: str, info: AccountInfo) -> None:
        self._request("anvil_setBalance", [address, _quantity(info.balance)])
        self._request("anvil_setNonce", [address, _quantity(info.nonce)])
        self._request("anvil_setCode", [address, _data(info.code)])

    def replace_storage(self, address: str, storage: Dict[int, int]) -> None:
        self._replaced_storage[address] = dict(storage)
        for slot, value in storage.items():
            self._request("anvil_setStorageAt", [address, _word(slot), _word(value)])

    def insert_storage_slot(self, address: str, slot: int, value: int) -> None:
        if address in self._replaced_storage:
            self._replaced_storage[address][slot] = value
        self._request("anvil_setStorageAt", [address, _word(slot), _word(value)])

    def storage(self, address: str, slot: int) -> int:
        if address in self._replaced_storage:
            return self._replaced_storage[address].get(slot, 0)
        return to_int(self._request("eth_getStorageAt", [address, _word(slot), "latest"]))

    # Execution

    def execute_call(self, env: ExecutionEnv, commit: bool = True) -> ExecutionResult:
        if env.tx.to is None:
            raise ExecutionError("execute_call needs a destination address", tx_hash=env.tx.tx_hash)
        return self._execute(env, commit)

    def execute_create(self, env: ExecutionEnv, commit: bool = True) -> ExecutionResult:
        if env.tx.to is not None:
            raise ExecutionError("execute_create must not have a destination address", tx_hash=env.tx.tx_hash)
        return self._execute(env, commit)

    def _execute(self, env: ExecutionEnv, commit: bool) -> ExecutionResult:
        if commit:
            return self.execute_block([env])[0]
        return self._trace_call(env)

    def _transaction_object(self, env: ExecutionEnv) -> Dict[str, Any]:
        tx = env.tx
        obj: Dict[str, Any] = {
            "from": tx.caller,
            "data": _data(tx.data),
            "value": _quantity(tx.value),
            "gas": _quantity(tx.gas_limit),
        }
        if tx.to is not None:
            obj["to"] = tx.to
        if tx.max_fee_per_gas is not None:
            obj["maxFeePerGas"] = _quantity(tx.max_fee_per_gas)
            obj["maxPriorityFeePerGas"] = _quantity(tx.max_priority_fee_per_gas or 0)
        elif tx.gas_price is not None:
            obj["gasPrice"] = _quantity(tx.gas_price)
        if tx.access_list:
            obj["accessList"] = list(tx.access_list)
        return obj

    def _prepare_next_block(self, block: BlockContext):
        self._request("anvil_setNextBlockBaseFeePerGas", [_quantity(block.base_fee)])
        self._request("evm_setBlockGasLimit", [_quantity(block.gas_limit)])
        self._request("anvil_setCoinbase", [block.coinbase])
        # Mined timestamps must increase; a second block at the same time gets +1s
        if block.timestamp > self._last_timestamp:
            self._request("evm_setNextBlockTimestamp", [block.timestamp])
            self._last_timestamp = block.timestamp

    def _submit(self, env: ExecutionEnv) -> str:
        tx = self._transaction_object(env)
        if env.tx.nonce is not None:
            tx["nonce"] = _quantity(env.tx.nonce)
        try:
            return self._request("eth_sendTransaction", [tx])
        except ExecutionError as e:
            raise ExecutionError(str(e), tx_hash=env.tx.tx_hash) from e

    def _receipt_result(self, env: ExecutionEnv, sent_hash: str) -> ExecutionResult:
        receipt = self._request("eth_getTransactionReceipt", [sent_hash])
        if receipt is None:
            raise ExecutionError(
                f"Transaction {env.tx.tx_hash or sent_hash} was not mined in the replayed block",
                tx_hash=env.tx.tx_hash,
            )
        success = to_int(receipt.get("status")) == 1
        return ExecutionResult(
            logs=tuple(_log_entry(log) for log in receipt.get("logs") or []),
            success=success,
            gas_used=to_int(receipt.get("gasUsed")),
            contract_address=(
                Web3.to_checksum_address(receipt["contractAddress"]) if receipt.get("contractAddress") else None
            ),
            error=None if success else "execution reverted",
        )

    def execute_block(self, envs: Sequence[ExecutionEnv]) -> List[ExecutionResult]:
        """
        Queue every transaction with automining off, then mine them together
        in one block under the block context of the first, in submission
        order (anvil runs with ``--order fifo``).
        """
        if not envs:
            return []
        if self._replaced_storage:
            raise ExecutionError(
                "Cannot commit an execution after account storage was replaced",
                tx_hash=envs[0].tx.tx_hash,
            )
        self._prepare_next_block(envs[0].block)

        self._request("evm_setAutomine", [False])
        try:
            sent = [(env, self._submit(env)) for env in envs]
            self._request("evm_mine", [])
        finally:
            self._request("evm_setAutomine", [True])
        return [self._receipt_result(env, sent_hash) for env, sent_hash in sent]

    def block_overrides(self, block: BlockContext) -> Dict[str, Any]:
        overrides = {
            "number": _quantity(block.number),
            "time": _quantity(block.timestamp),
            "gasLimit": _quantity(block.gas_limit),
            "feeRecipient": block.coinbase,
            "baseFeePerGas": _quantity(block.base_fee),
            "difficulty": _quantity(block.difficulty),
        }
        if block.prevrandao:
            overrides["prevRandao"] = block.prevrandao
        return overrides

    def state_overrides(self) -> Dict[str, Any]:
        return {
            address: {"state": {_word(slot): _word(value) for slot, value in storage.items()}}
            for address, storage in self._replaced_storage.items()
        }

    def _trace_call(self, env: ExecutionEnv) -> ExecutionResult:
        config = dict(CALL_TRACER_CONFIG)
        config["blockOverrides"] = self.block_overrides(env.block)
        state_overrides = self.state_overrides()
        if state_overrides:
            config["stateOverrides"] = state_overrides

        frame = self._request("debug_traceCall", [self._transaction_object(env), "latest", config])
        if not isinstance(frame, dict):
            raise ExecutionError(f"Unexpected debug_traceCall result: {frame!r}", tx_hash=env.tx.tx_hash)

        error = frame.get("error")
        created = frame.get("to") if env.tx.to is None and not error else None
        return ExecutionResult(
            logs=tuple(flatten_call_logs(frame)),
            success=error is None,
            gas_used=to_int(frame.get("gasUsed")),
            output=to_bytes(frame.get("output")),
            contract_address=Web3.to_checksum_address(created) if created else None,
            error=error,
        )

    def close(self) -> None:
        process, self.process = self.process, None
        if process is None or process.poll() is not None:
            return
        process.terminate()
        try:
            process.wait(timeout=5)
        except subprocess.TimeoutExpired:
            process.kill()
            process.wait()
        self._log(info("[FORK] stopped anvil fork"))
