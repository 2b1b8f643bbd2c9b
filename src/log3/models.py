"""
Data model for log3.

Records fetched from the chain (transactions, blocks, prestate traces) are
normalised here into plain dataclasses so the rest of the code never touches
web3's AttributeDict/HexBytes shapes directly.
"""

import re
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from enum import IntEnum
from typing import Any, Dict, List, Optional, Union

from eth_utils import is_address, keccak, to_checksum_address
from hexbytes import HexBytes

from .errors import ConflictingOverrideError, InvalidInputError, UnsupportedTraceFormat

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"
KECCAK_EMPTY = keccak(b"")


def to_int(value: Any, default: int = 0) -> int:
    """Convert an RPC quantity (int, hex string, decimal string, bytes) to int."""
    if value is None:
        return default
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, (bytes, bytearray)):
        return int.from_bytes(value, "big") if value else default
    text = str(value).strip()
    if not text:
        return default
    if text.startswith(("0x", "0X")):
        return int(text, 16) if len(text) > 2 else default
    return int(text)


def to_bytes(value: Any) -> bytes:
    """Convert hex strings / HexBytes / None to raw bytes."""
    if value is None or value == "":
        return b""
    return bytes(HexBytes(value))


def to_hash(value: Any) -> Optional[str]:
    """Normalise a 32-byte hash to a lowercase 0x-prefixed string."""
    if value is None:
        return None
    return "0x" + to_bytes(value).hex()


def normalize_address(value: Any) -> str:
    """Checksum an address, raising InvalidInputError on malformed input."""
    if isinstance(value, (bytes, bytearray)):
        value = "0x" + bytes(value).hex()
    if not isinstance(value, str) or not is_address(value):
        raise InvalidInputError(f"Invalid address: {value!r}")
    return to_checksum_address(value)


def normalize_tx_hash(value: Any) -> str:
    """Lowercase a 0x-prefixed 32-byte transaction hash, raising InvalidInputError otherwise."""
    if not isinstance(value, str) or not re.fullmatch(r"0x[0-9a-fA-F]{64}", value.strip()):
        raise InvalidInputError(f"Invalid transaction hash: {value!r}")
    return value.strip().lower()


class MethodType(IntEnum):
    """State reconstruction strategy."""
    PLAIN = 0
    PRESTATE = 1

    @classmethod
    def parse(cls, value: Union[str, int, "MethodType", None]) -> "MethodType":
        if value is None:
            return cls.PRESTATE
        if isinstance(value, cls):
            return value
        if isinstance(value, int):
            try:
                return cls(value)
            except ValueError:
                raise InvalidInputError(f"Unknown method type: {value}")
        text = str(value).strip().lower()
        if text.isdigit():
            return cls.parse(int(text))
        for member in cls:
            if member.name.lower() == text:
                return member
        raise InvalidInputError(f"Unknown method type: {value!r} (expected plain or prestate)")


@dataclass(frozen=True)
class TargetTransaction:
    """A mined transaction, as returned by eth_getTransactionByHash."""
    hash: str
    block_hash: Optional[str]
    block_number: Optional[int]
    transaction_index: Optional[int]
    sender: str
    to: Optional[str]
    input: bytes
    value: int
    gas: int
    nonce: int
    gas_price: Optional[int] = None
    max_fee_per_gas: Optional[int] = None
    max_priority_fee_per_gas: Optional[int] = None
    tx_type: int = 0
    access_list: tuple = ()
    chain_id: Optional[int] = None

    @property
    def is_create(self) -> bool:
        return self.to is None

    @classmethod
    def from_rpc(cls, tx: Mapping) -> "TargetTransaction":
        to = tx.get("to")
        access_list = tuple(
            {
                "address": to_checksum_address(item["address"]),
                "storageKeys": [to_hash(key) for key in item.get("storageKeys", [])],
            }
            for item in (tx.get("accessList") or [])
        )
        block_number = tx.get("blockNumber")
        index = tx.get("transactionIndex")
        return cls(
            hash=to_hash(tx["hash"]),
            block_hash=to_hash(tx.get("blockHash")),
            block_number=to_int(block_number) if block_number is not None else None,
            transaction_index=to_int(index) if index is not None else None,
            sender=to_checksum_address(tx["from"]),
            to=to_checksum_address(to) if to else None,
            input=to_bytes(tx.get("input", tx.get("data"))),
            value=to_int(tx.get("value")),
            gas=to_int(tx.get("gas")),
            nonce=to_int(tx.get("nonce")),
            gas_price=to_int(tx["gasPrice"]) if tx.get("gasPrice") is not None else None,
            max_fee_per_gas=to_int(tx["maxFeePerGas"]) if tx.get("maxFeePerGas") is not None else None,
            max_priority_fee_per_gas=(
                to_int(tx["maxPriorityFeePerGas"]) if tx.get("maxPriorityFeePerGas") is not None else None
            ),
            tx_type=to_int(tx.get("type")),
            access_list=access_list,
            chain_id=to_int(tx["chainId"]) if tx.get("chainId") is not None else None,
        )


@dataclass(frozen=True)
class Block:
    """Block header fields used for the execution environment, plus its transactions."""
    number: int
    hash: str
    timestamp: int
    miner: str
    difficulty: int
    mix_hash: Optional[str]
    base_fee_per_gas: Optional[int]
    gas_limit: int
    transactions: tuple = ()

    @classmethod
    def from_rpc(cls, block: Mapping) -> "Block":
        transactions = []
        for tx in block.get("transactions") or []:
            if not isinstance(tx, Mapping):
                raise InvalidInputError("Block was fetched without full transaction objects")
            transactions.append(TargetTransaction.from_rpc(tx))
        miner = block.get("miner")
        return cls(
            number=to_int(block["number"]),
            hash=to_hash(block["hash"]),
            timestamp=to_int(block["timestamp"]),
            miner=to_checksum_address(miner) if miner else ZERO_ADDRESS,
            difficulty=to_int(block.get("difficulty")),
            mix_hash=to_hash(block.get("mixHash")),
            base_fee_per_gas=(
                to_int(block["baseFeePerGas"]) if block.get("baseFeePerGas") is not None else None
            ),
            gas_limit=to_int(block["gasLimit"]),
            transactions=tuple(sorted(transactions, key=lambda t: t.transaction_index or 0)),
        )


@dataclass(frozen=True)
class ChainReference:
    """Which chain, and at which height, the forked backend is pinned."""
    chain_id: int
    fork_url: str
    fork_block_number: int

    @classmethod
    def for_transaction(cls, chain_id: int, fork_url: str, tx: TargetTransaction) -> "ChainReference":
        """Fork at the block before the one containing ``tx``."""
        if tx.block_number is None:
            raise InvalidInputError(f"Transaction {tx.hash} is not mined yet")
        if tx.block_number < 1:
            raise InvalidInputError("Cannot fork before the genesis block")
        return cls(chain_id=chain_id, fork_url=fork_url, fork_block_number=tx.block_number - 1)


@dataclass(frozen=True)
class BlockContext:
    """Block environment the replayed and target transactions execute in."""
    number: int
    timestamp: int
    coinbase: str
    difficulty: int
    prevrandao: Optional[str]
    base_fee: int
    gas_limit: int


@dataclass(frozen=True)
class TxEnv:
    """Transaction fields handed to the backend for a single execution."""
    caller: str
    to: Optional[str]
    data: bytes
    value: int
    gas_limit: int
    nonce: Optional[int] = None
    gas_price: Optional[int] = None
    max_fee_per_gas: Optional[int] = None
    max_priority_fee_per_gas: Optional[int] = None
    access_list: tuple = ()
    chain_id: Optional[int] = None
    tx_hash: Optional[str] = None


@dataclass(frozen=True)
class ExecutionEnv:
    block: BlockContext
    tx: TxEnv

    def with_tx(self, **changes) -> "ExecutionEnv":
        return replace(self, tx=replace(self.tx, **changes))


@dataclass(frozen=True)
class AccountInfo:
    """Basic account fields as stored by the backend."""
    balance: int = 0
    nonce: int = 0
    code: bytes = b""
    code_hash: bytes = KECCAK_EMPTY

    def with_code(self, code: bytes) -> "AccountInfo":
        """Replace the bytecode, recomputing the code hash."""
        code = bytes(code)
        return replace(self, code=code, code_hash=keccak(code) if code else KECCAK_EMPTY)


def _slot_map(raw: Optional[Mapping]) -> Optional[Dict[int, int]]:
    if raw is None:
        return None
    return {to_int(key): to_int(value) for key, value in raw.items()}


@dataclass
class AccountOverride:
    """
    Forced substitution of an account's fields on the fork.

    ``state`` replaces the whole storage of the account (it is treated as
    freshly created), ``state_diff`` patches only the named slots. The two
    are mutually exclusive; see ``validate``.
    """
    nonce: Optional[int] = None
    code: Optional[bytes] = None
    balance: Optional[int] = None
    state: Optional[Dict[int, int]] = None
    state_diff: Optional[Dict[int, int]] = None

    def validate(self, address: str) -> None:
        if self.state is not None and self.state_diff is not None:
            raise ConflictingOverrideError(address)

    @classmethod
    def from_dict(cls, data: Mapping) -> "AccountOverride":
        """Parse a geth-style override object (``stateDiff``, hex quantities)."""
        state_diff = data.get("stateDiff", data.get("state_diff"))
        return cls(
            nonce=to_int(data["nonce"]) if data.get("nonce") is not None else None,
            code=to_bytes(data["code"]) if data.get("code") is not None else None,
            balance=to_int(data["balance"]) if data.get("balance") is not None else None,
            state=_slot_map(data.get("state")),
            state_diff=_slot_map(state_diff),
        )


StateOverrideSet = Dict[str, AccountOverride]


def parse_state_override_set(data: Mapping) -> StateOverrideSet:
    """Parse ``{address: override}`` JSON into a StateOverrideSet, keeping order."""
    if not isinstance(data, Mapping):
        raise InvalidInputError("State overrides must be a JSON object keyed by address")
    return {normalize_address(addr): AccountOverride.from_dict(value) for addr, value in data.items()}


@dataclass(frozen=True)
class PreStateAccount:
    balance: int = 0
    nonce: int = 0
    code: bytes = b""
    storage: Dict[int, int] = field(default_factory=dict)


@dataclass(frozen=True)
class PreStateSnapshot:
    """Per-account state immediately before a transaction, from prestateTracer."""
    accounts: Dict[str, PreStateAccount]

    @classmethod
    def from_trace(cls, trace: Any) -> "PreStateSnapshot":
        if not isinstance(trace, Mapping):
            raise UnsupportedTraceFormat(f"Unknown trace type: {type(trace).__name__}")
        if "pre" in trace and "post" in trace:
            raise UnsupportedTraceFormat("Unsupported PreStateFrame: diff mode traces are not supported")
        accounts = {}
        for addr, state in trace.items():
            if not is_address(addr) or not isinstance(state, Mapping):
                raise UnsupportedTraceFormat(f"Unsupported PreStateFrame entry for {addr!r}")
            accounts[to_checksum_address(addr)] = PreStateAccount(
                balance=to_int(state.get("balance")),
                nonce=to_int(state.get("nonce")),
                code=to_bytes(state.get("code")),
                storage=_slot_map(state.get("storage")) or {},
            )
        return cls(accounts=accounts)

    def to_state_override(self) -> StateOverrideSet:
        """Every traced account becomes a full replacement override."""
        return {
            addr: AccountOverride(
                nonce=account.nonce,
                code=account.code,
                balance=account.balance,
                state=dict(account.storage),
            )
            for addr, account in self.accounts.items()
        }


@dataclass(frozen=True)
class LogEntry:
    """An emitted EVM log."""
    address: str
    topics: tuple
    data: bytes


@dataclass(frozen=True)
class ExecutionResult:
    """Outcome of one backend execution; the same shape for calls and creates."""
    logs: tuple
    success: bool
    gas_used: int = 0
    output: bytes = b""
    contract_address: Optional[str] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class SourceCodeMetadata:
    """Multi-unit (standard JSON) source as returned by the explorer."""
    language: str
    sources: Dict[str, str]
    settings: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ContractMetadata:
    """Verified contract record from the block explorer."""
    source_code: Any
    contract_name: str
    compiler_version: str = ""
    optimization_used: bool = False
    runs: int = 200
    evm_version: str = "Default"
    constructor_arguments: bytes = b""
    library: str = ""
    abi: str = ""
    proxy: bool = False
    implementation: Optional[str] = None

    @property
    def is_multi_unit(self) -> bool:
        return isinstance(self.source_code, SourceCodeMetadata)


@dataclass(frozen=True)
class CompiledContract:
    name: str
    bytecode: bytes
    deployed_bytecode: bytes


@dataclass(frozen=True)
class SimulationRequest:
    """JSON request body accepted by the hosted entry point and ``--request``."""
    chainid: int
    etherscan_api_key: str
    contract_address: str
    tx_hash: str
    endpoint: str
    method: Optional[MethodType] = None

    @classmethod
    def from_dict(cls, data: Mapping) -> "SimulationRequest":
        missing = [key for key in ("chainid", "etherscan_api_key", "contract_address", "tx_hash", "endpoint")
                   if key not in data]
        if missing:
            raise InvalidInputError(f"Request is missing fields: {', '.join(missing)}")
        method = data.get("method")
        return cls(
            chainid=to_int(data["chainid"]),
            etherscan_api_key=str(data["etherscan_api_key"]),
            contract_address=str(data["contract_address"]),
            tx_hash=str(data["tx_hash"]),
            endpoint=str(data["endpoint"]),
            method=MethodType.parse(method) if method is not None else None,
        )


@dataclass
class SimulationResult:
    log_lines: List[str]
    reverted: bool = False
    gas_used: int = 0
    compiler_diagnostics: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"log_lines": list(self.log_lines)}
