"""Data model parsing tests."""

import pytest
from hexbytes import HexBytes

from log3.errors import ConflictingOverrideError, InvalidInputError, UnsupportedTraceFormat
from log3.models import (
    AccountOverride,
    Block,
    ChainReference,
    MethodType,
    PreStateSnapshot,
    SimulationRequest,
    TargetTransaction,
    normalize_address,
    normalize_tx_hash,
    to_int,
)

from conftest import COUNTER, SENDER, make_tx


def _rpc_tx(**fields):
    tx = {
        "hash": HexBytes("0x" + "01" * 32),
        "blockHash": HexBytes("0x" + "ab" * 32),
        "blockNumber": 100,
        "transactionIndex": 2,
        "from": SENDER.lower(),
        "to": COUNTER.lower(),
        "input": HexBytes("0xd09de08a"),
        "value": 0,
        "gas": 50000,
        "nonce": 2,
        "maxFeePerGas": 30 * 10**9,
        "maxPriorityFeePerGas": 10**9,
        "type": 2,
        "chainId": 1,
        "accessList": [{"address": COUNTER.lower(), "storageKeys": [HexBytes("0x" + "00" * 32)]}],
    }
    tx.update(fields)
    return tx


def test_quantities_parse_from_any_rpc_shape():
    assert to_int("0x1f") == 31
    assert to_int("42") == 42
    assert to_int(b"\x01\x00") == 256
    assert to_int(None, default=7) == 7
    assert to_int("0x") == 0


def test_transaction_from_rpc():
    tx = TargetTransaction.from_rpc(_rpc_tx())

    assert tx.hash == "0x" + "01" * 32
    assert (tx.sender, tx.to) == (SENDER, COUNTER)
    assert tx.input == bytes.fromhex("d09de08a")
    assert tx.transaction_index == 2
    assert tx.gas_price is None
    assert tx.access_list[0]["address"] == COUNTER
    assert not tx.is_create


def test_creation_transaction_has_no_recipient():
    assert TargetTransaction.from_rpc(_rpc_tx(to=None)).is_create


def test_block_requires_full_transactions():
    block = {
        "number": 100, "hash": HexBytes("0x" + "ab" * 32), "timestamp": 1, "miner": SENDER.lower(),
        "difficulty": 0, "mixHash": HexBytes("0x" + "cd" * 32), "baseFeePerGas": 7, "gasLimit": 30_000_000,
        "transactions": [_rpc_tx(transactionIndex=1), _rpc_tx(transactionIndex=0)],
    }

    parsed = Block.from_rpc(block)

    assert [tx.transaction_index for tx in parsed.transactions] == [0, 1]
    assert parsed.miner == SENDER

    block["transactions"] = [HexBytes("0x" + "01" * 32)]
    with pytest.raises(InvalidInputError):
        Block.from_rpc(block)


def test_fork_point_is_the_parent_block():
    ref = ChainReference.for_transaction(1, "http://node", make_tx(2, nonce=2, block_number=100))

    assert ref.fork_block_number == 99


def test_inputs_are_validated():
    assert normalize_address(COUNTER.lower()) == COUNTER
    assert normalize_tx_hash("0x" + "AB" * 32) == "0x" + "ab" * 32
    for bad in ("0x123", "", None, "0x" + "zz" * 20):
        with pytest.raises(InvalidInputError):
            normalize_address(bad)
    for bad in ("0x123", "ab" * 32, None):
        with pytest.raises(InvalidInputError):
            normalize_tx_hash(bad)


def test_method_type_parsing():
    assert MethodType.parse("Plain") is MethodType.PLAIN
    assert MethodType.parse("1") is MethodType.PRESTATE
    assert MethodType.parse(0) is MethodType.PLAIN
    assert MethodType.parse(None) is MethodType.PRESTATE
    with pytest.raises(InvalidInputError):
        MethodType.parse(2)


def test_override_with_state_and_state_diff_is_invalid():
    with pytest.raises(ConflictingOverrideError):
        AccountOverride(state={}, state_diff={}).validate(COUNTER)
    AccountOverride(state={}).validate(COUNTER)


def test_prestate_trace_parsing():
    snapshot = PreStateSnapshot.from_trace({
        COUNTER.lower(): {"balance": "0x1", "nonce": 3, "code": "0x6000", "storage": {"0x01": "0x02"}},
    })

    overrides = snapshot.to_state_override()

    assert overrides[COUNTER] == AccountOverride(nonce=3, code=b"\x60\x00", balance=1, state={1: 2})


@pytest.mark.parametrize("trace", [
    {"pre": {}, "post": {}},
    [],
    "0x",
    {"not-an-address": {}},
])
def test_unsupported_traces_are_rejected(trace):
    with pytest.raises(UnsupportedTraceFormat):
        PreStateSnapshot.from_trace(trace)


def test_simulation_request_shape():
    request = SimulationRequest.from_dict({
        "chainid": 1,
        "etherscan_api_key": "KEY",
        "contract_address": COUNTER,
        "tx_hash": "0x" + "01" * 32,
        "endpoint": "http://node",
        "method": "plain",
    })

    assert request.method is MethodType.PLAIN
    with pytest.raises(InvalidInputError, match="endpoint"):
        SimulationRequest.from_dict({"chainid": 1, "etherscan_api_key": "", "contract_address": "", "tx_hash": ""})
