"""
Execution environment setup and call/create dispatch.
"""

from dataclasses import replace
from typing import List, Optional, Sequence

from .backend import ForkableExecutionBackend
from .config import ExecutionRelaxation
from .errors import InvalidInputError
from .models import Block, BlockContext, ExecutionEnv, ExecutionResult, TargetTransaction, TxEnv


def configure_block_env(block: Block, relaxation: ExecutionRelaxation) -> BlockContext:
    """Block context of ``block`` with the base fee and gas limit relaxed."""
    return BlockContext(
        number=block.number,
        timestamp=block.timestamp,
        coinbase=block.miner,
        difficulty=block.difficulty,
        prevrandao=block.mix_hash,
        base_fee=relaxation.base_fee,
        gas_limit=block.gas_limit * relaxation.gas_limit_multiplier,
    )


def configure_tx_env(tx: TargetTransaction) -> TxEnv:
    """Transaction fields of ``tx`` exactly as mined."""
    return TxEnv(
        caller=tx.sender,
        to=tx.to,
        data=tx.input,
        value=tx.value,
        gas_limit=tx.gas,
        nonce=tx.nonce,
        gas_price=tx.gas_price,
        max_fee_per_gas=tx.max_fee_per_gas,
        max_priority_fee_per_gas=tx.max_priority_fee_per_gas,
        access_list=tx.access_list,
        chain_id=tx.chain_id,
        tx_hash=tx.hash,
    )


def relax_transaction(tx: TxEnv, relaxation: ExecutionRelaxation) -> TxEnv:
    """
    Working copy of ``tx`` with nominal fees and a multiplied gas limit.

    Instrumented bytecode burns more gas than the deployed one did; a
    transaction that ran out of gas originally will not do so here.
    """
    return replace(
        tx,
        gas_price=relaxation.gas_price,
        max_fee_per_gas=relaxation.max_fee_per_gas,
        max_priority_fee_per_gas=relaxation.max_priority_fee_per_gas,
        gas_limit=tx.gas_limit * relaxation.gas_limit_multiplier,
    )


def build_env(block_context: BlockContext, tx: TxEnv) -> ExecutionEnv:
    return ExecutionEnv(block=block_context, tx=tx)


def dispatch(backend: ForkableExecutionBackend, env: ExecutionEnv, commit: bool = True) -> ExecutionResult:
    """Run ``env`` as a call if it has a recipient, as a contract creation otherwise."""
    if env.tx.to is not None:
        return backend.execute_call(env, commit=commit)
    return backend.execute_create(env, commit=commit)


def dispatch_block(backend: ForkableExecutionBackend, envs: Sequence[ExecutionEnv]) -> List[ExecutionResult]:
    """Commit ``envs`` in order as the transactions of one block."""
    return backend.execute_block(list(envs))


def execute_target(backend: ForkableExecutionBackend, block_context: BlockContext,
                   target: TargetTransaction, relaxation: ExecutionRelaxation,
                   init_code: Optional[bytes] = None) -> ExecutionResult:
    """
    Execute the relaxed working copy of ``target`` once, without committing.

    ``init_code`` replaces the input of a creation transaction so the
    instrumented constructor runs.
    """
    tx_env = configure_tx_env(target)
    if init_code is not None:
        if not target.is_create:
            raise InvalidInputError("init_code only applies to contract creation transactions")
        tx_env = replace(tx_env, data=init_code)
    env = build_env(block_context, relax_transaction(tx_env, relaxation))
    return dispatch(backend, env, commit=False)
