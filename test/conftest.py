"""Shared fakes: an in-memory fork, chain, compiler and explorer."""

from typing import Dict, List, Optional

import pytest
from eth_abi import encode
from eth_utils import to_checksum_address

from log3.backend import ForkableExecutionBackend
from log3.config import SimulationConfig
from log3.console import CONSOLE_ADDRESS, selector
from log3.errors import ChainLookupError, ExecutionError
from log3.models import (
    AccountInfo,
    Block,
    CompiledContract,
    ContractMetadata,
    ExecutionEnv,
    ExecutionResult,
    LogEntry,
    PreStateSnapshot,
    TargetTransaction,
)
from log3.overrides import predict_create_address

SENDER = to_checksum_address("0x" + "11" * 20)
COUNTER = to_checksum_address("0x" + "22" * 20)
MINER = to_checksum_address("0x" + "33" * 20)

DEPLOYED_CODE = bytes.fromhex("6080604052")
INSTRUMENTED_CODE = bytes.fromhex("60806040525f")
INIT_CODE = bytes.fromhex("608060405234")

COUNTER_SOURCE = """pragma solidity ^0.8.0;

contract Counter {
    uint256 public count;

    function increment() public {
        count += 1;
        // console.log("count is %d", count);
    }
}
"""


def console_payload(types, values) -> bytes:
    return selector(tuple(types)) + encode(list(types), list(values))


def console_log(types, values) -> LogEntry:
    """A console staticcall as collected from the call trace."""
    return LogEntry(address=CONSOLE_ADDRESS, topics=(), data=console_payload(types, values))


def tx_hash(n: int) -> str:
    return "0x" + format(n, "064x")


def make_tx(index: int, nonce: int, to: Optional[str] = COUNTER, block_number: int = 100,
            data: bytes = b"\xd0\x9d\xe0\x8a") -> TargetTransaction:
    return TargetTransaction(
        hash=tx_hash(index + 1),
        block_hash="0x" + "ab" * 32,
        block_number=block_number,
        transaction_index=index,
        sender=SENDER,
        to=to,
        input=data,
        value=0,
        gas=50_000,
        nonce=nonce,
        gas_price=None,
        max_fee_per_gas=30 * 10**9,
        max_priority_fee_per_gas=2 * 10**9,
        tx_type=2,
        chain_id=1,
    )


def make_block(transactions, number: int = 100) -> Block:
    return Block(
        number=number,
        hash="0x" + "ab" * 32,
        timestamp=1_700_000_000,
        miner=MINER,
        difficulty=0,
        mix_hash="0x" + "cd" * 32,
        base_fee_per_gas=12 * 10**9,
        gas_limit=30_000_000,
        transactions=tuple(transactions),
    )


class FakeBackend(ForkableExecutionBackend):
    """
    Dictionary-backed fork running a toy Counter contract.

    A committed call to the counter increments slot 0. The instrumented code
    also emits ``console.log("count is %d", count)`` with the value it reads
    before incrementing. Instrumented creation code logs ``constructed``.
    """

    def __init__(self, accounts: Optional[Dict[str, AccountInfo]] = None,
                 storage: Optional[Dict[str, Dict[int, int]]] = None):
        self.accounts = dict(accounts or {})
        self.slots = {addr: dict(s) for addr, s in (storage or {}).items()}
        self.executions: List[tuple] = []
        self.operations: List[tuple] = []
        self.fail_on: set = set()
        self.revert_uncommitted = False
        self.closed = False

    def basic(self, address):
        return self.accounts.get(address)

    def insert_account_info(self, address, info):
        self.operations.append(("insert_account_info", address))
        self.accounts[address] = info

    def replace_storage(self, address, storage):
        self.operations.append(("replace_storage", address))
        self.slots[address] = dict(storage)

    def insert_storage_slot(self, address, slot, value):
        self.operations.append(("insert_storage_slot", address, slot))
        self.slots.setdefault(address, {})[slot] = value

    def storage(self, address, slot):
        return self.slots.get(address, {}).get(slot, 0)

    def _result(self, logs, commit, contract_address=None):
        success = commit or not self.revert_uncommitted
        return ExecutionResult(
            logs=tuple(logs),
            success=success,
            gas_used=21_000,
            contract_address=contract_address,
            error=None if success else "execution reverted",
        )

    def execute_call(self, env: ExecutionEnv, commit: bool = True) -> ExecutionResult:
        self.executions.append(("call", env, commit))
        if env.tx.tx_hash in self.fail_on:
            raise ExecutionError("nonce too low", tx_hash=env.tx.tx_hash)
        account = self.accounts.get(env.tx.to)
        logs = []
        count = self.storage(env.tx.to, 0)
        if account is not None and account.code == INSTRUMENTED_CODE:
            logs.append(console_log(["string", "uint256"], ["count is %d", count]))
        if commit:
            self.slots.setdefault(env.tx.to, {})[0] = count + 1
        return self._result(logs, commit)

    def execute_create(self, env: ExecutionEnv, commit: bool = True) -> ExecutionResult:
        self.executions.append(("create", env, commit))
        created = predict_create_address(env.tx.caller, env.tx.nonce)
        logs = []
        if env.tx.data.startswith(INIT_CODE):
            logs.append(console_log(["string"], ["constructed"]))
        return self._result(logs, commit, contract_address=created)

    def close(self):
        self.closed = True


class FakeChain:
    def __init__(self, transactions, blocks, prestate=None):
        self.transactions = {tx.hash: tx for tx in transactions}
        self.blocks = {block.number: block for block in blocks}
        self.prestate = prestate or {}
        self.calls: List[tuple] = []

    def get_transaction(self, tx_hash):
        self.calls.append(("get_transaction", tx_hash))
        if tx_hash not in self.transactions:
            raise ChainLookupError(f"Transaction {tx_hash} not found")
        return self.transactions[tx_hash]

    def get_block_with_transactions(self, block_number):
        self.calls.append(("get_block_with_transactions", block_number))
        return self.blocks[block_number]

    def debug_trace_prestate(self, tx_hash):
        self.calls.append(("debug_trace_prestate", tx_hash))
        return PreStateSnapshot.from_trace(self.prestate[tx_hash])


class FakeCompiler:
    def __init__(self):
        self.compiled: List[ContractMetadata] = []

    def compile(self, metadata):
        self.compiled.append(metadata)
        return ["Warning: unused variable"], CompiledContract(
            name="Counter.sol:Counter",
            bytecode=INIT_CODE,
            deployed_bytecode=INSTRUMENTED_CODE,
        )


class FakeSourceProvider:
    def __init__(self, metadata: Optional[ContractMetadata] = None):
        self.metadata = metadata or ContractMetadata(
            source_code=COUNTER_SOURCE,
            contract_name="Counter",
            compiler_version="v0.8.19+commit.7dd6d404",
            constructor_arguments=bytes.fromhex("00" * 31 + "2a"),
        )
        self.calls: List[tuple] = []

    def fetch(self, chain_id, contract_address, api_key):
        self.calls.append((chain_id, contract_address, api_key))
        return self.metadata


def build_counter_world():
    """
    Block 100 holds two counter increments followed by the target increment.
    The fork (end of block 99) has count = 5, so the target sees count = 7.
    """
    prior = [make_tx(0, nonce=0), make_tx(1, nonce=1)]
    target = make_tx(2, nonce=2)
    block = make_block(prior + [target])
    prestate = {
        target.hash: {
            COUNTER.lower(): {
                "balance": "0x0",
                "nonce": 1,
                "code": "0x" + DEPLOYED_CODE.hex(),
                "storage": {"0x" + "00" * 32: "0x" + format(7, "064x")},
            },
            SENDER.lower(): {"balance": "0xde0b6b3a7640000", "nonce": 2},
        }
    }
    chain = FakeChain(prior + [target], [block], prestate)
    backend = FakeBackend(
        accounts={
            COUNTER: AccountInfo(nonce=1).with_code(DEPLOYED_CODE),
            SENDER: AccountInfo(balance=10**18, nonce=0),
        },
        storage={COUNTER: {0: 5, 1: 99}},
    )
    return {"chain": chain, "backend": backend, "block": block, "target": target, "prior": prior}


@pytest.fixture
def counter_world():
    return build_counter_world()


@pytest.fixture
def config():
    return SimulationConfig(rpc_url="http://archive.invalid", etherscan_api_key="KEY", quiet=True)
