"""Execution environment and dispatch tests."""

import pytest

from log3.config import ExecutionRelaxation
from log3.dispatcher import (
    build_env,
    configure_block_env,
    configure_tx_env,
    dispatch,
    dispatch_block,
    execute_target,
    relax_transaction,
)
from log3.errors import InvalidInputError

from conftest import COUNTER, INIT_CODE, MINER, SENDER, FakeBackend, make_block, make_tx


def test_block_env_relaxes_base_fee_and_gas_limit():
    block = make_block([])

    context = configure_block_env(block, ExecutionRelaxation())

    assert context.number == 100
    assert context.timestamp == block.timestamp
    assert context.coinbase == MINER
    assert context.prevrandao == block.mix_hash
    assert context.base_fee == 1
    assert context.gas_limit == 30_000_000 * 2000


def test_relaxed_transaction_is_a_working_copy():
    tx_env = configure_tx_env(make_tx(2, nonce=2))

    relaxed = relax_transaction(tx_env, ExecutionRelaxation())

    assert (relaxed.gas_price, relaxed.max_fee_per_gas, relaxed.max_priority_fee_per_gas) == (1, 1, 1)
    assert relaxed.gas_limit == 50_000 * 2000
    assert tx_env.gas_limit == 50_000
    assert tx_env.max_fee_per_gas == 30 * 10**9


def test_relaxation_constants_are_configurable():
    relaxation = ExecutionRelaxation(gas_price=7, max_fee_per_gas=9, gas_limit_multiplier=3)

    relaxed = relax_transaction(configure_tx_env(make_tx(0, nonce=0)), relaxation)

    assert (relaxed.gas_price, relaxed.max_fee_per_gas, relaxed.gas_limit) == (7, 9, 150_000)


def test_dispatch_follows_the_recipient_field():
    backend = FakeBackend()
    context = configure_block_env(make_block([]), ExecutionRelaxation())

    dispatch(backend, build_env(context, configure_tx_env(make_tx(0, nonce=0))))
    dispatch(backend, build_env(context, configure_tx_env(make_tx(1, nonce=1, to=None))), commit=False)

    assert [(kind, commit) for kind, _, commit in backend.executions] == [("call", True), ("create", False)]


def test_block_dispatch_commits_calls_and_creations_in_order():
    backend = FakeBackend()
    context = configure_block_env(make_block([]), ExecutionRelaxation())
    txs = [make_tx(0, nonce=0, to=None), make_tx(1, nonce=1)]

    results = dispatch_block(backend, (build_env(context, configure_tx_env(tx)) for tx in txs))

    assert [(kind, commit) for kind, _, commit in backend.executions] == [("create", True), ("call", True)]
    assert [env.tx.tx_hash for _, env, _ in backend.executions] == [tx.hash for tx in txs]
    assert len(results) == 2


def test_target_runs_once_uncommitted_with_relaxed_fields():
    backend = FakeBackend()
    target = make_tx(2, nonce=2)
    context = configure_block_env(make_block([target]), ExecutionRelaxation())

    execute_target(backend, context, target, ExecutionRelaxation())

    assert len(backend.executions) == 1
    kind, env, commit = backend.executions[0]
    assert (kind, commit) == ("call", False)
    assert env.tx.to == COUNTER
    assert env.tx.gas_price == 1
    assert env.tx.gas_limit == 100_000_000


def test_creation_target_runs_replacement_init_code():
    backend = FakeBackend()
    target = make_tx(0, nonce=0, to=None, data=b"\x60\x00")
    context = configure_block_env(make_block([target]), ExecutionRelaxation())

    result = execute_target(backend, context, target, ExecutionRelaxation(), init_code=INIT_CODE + b"\x2a")

    kind, env, _ = backend.executions[0]
    assert kind == "create"
    assert env.tx.caller == SENDER
    assert env.tx.data == INIT_CODE + b"\x2a"
    assert result.contract_address is not None


def test_init_code_on_a_call_is_rejected():
    target = make_tx(2, nonce=2)
    context = configure_block_env(make_block([target]), ExecutionRelaxation())

    with pytest.raises(InvalidInputError):
        execute_target(FakeBackend(), context, target, ExecutionRelaxation(), init_code=INIT_CODE)


def test_invalid_relaxation_is_rejected():
    with pytest.raises(InvalidInputError):
        ExecutionRelaxation(gas_limit_multiplier=0)
    with pytest.raises(InvalidInputError):
        ExecutionRelaxation(gas_price=-1)
