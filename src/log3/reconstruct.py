"""
Rebuilding chain state right before the target transaction.

The fork is pinned at the end of the block preceding the target's block.
Two strategies bring it up to the target's position inside its block:

* ``MethodType.PLAIN`` replays every earlier transaction of the block;
* ``MethodType.PRESTATE`` asks the node for the target's prestate trace and
  forces the traced accounts onto the fork.
"""

import sys
from dataclasses import dataclass
from typing import Callable, Dict

from .backend import ForkableExecutionBackend
from .chain import Web3ChainDataSource
from .colors import dim, info
from .dispatcher import build_env, configure_tx_env, dispatch_block
from .errors import ExecutionError, InvalidInputError
from .models import Block, BlockContext, MethodType, TargetTransaction
from .overrides import apply_state_override


@dataclass(frozen=True)
class ReconstructionContext:
    block: Block
    block_context: BlockContext
    target: TargetTransaction
    chain: Web3ChainDataSource
    quiet: bool = False

    def log(self, message: str):
        if not self.quiet:
            print(message, file=sys.stderr)


def replay_prior_transactions(backend: ForkableExecutionBackend, context: ReconstructionContext) -> None:
    """
    Execute and commit, in order, each block transaction before the target,
    mined together as one block under the target block's context.
    """
    target_index = context.target.transaction_index
    if target_index is None:
        raise InvalidInputError(f"Transaction {context.target.hash} has no index in its block")

    prior = [tx for tx in context.block.transactions if tx.transaction_index < target_index]
    envs = [build_env(context.block_context, configure_tx_env(tx)) for tx in prior]
    try:
        results = dispatch_block(backend, envs)
    except ExecutionError as e:
        what = f"transaction {e.tx_hash}" if e.tx_hash else f"block {context.block.number}"
        raise ExecutionError(f"Replay of {what} failed: {e}", tx_hash=e.tx_hash) from e
    for tx, result in zip(prior, results):
        if not result.success:
            context.log(dim(f"  replayed {tx.hash} (reverted, as on chain)"))
    context.log(info(f"Replayed {len(prior)} transaction(s) before index {target_index}"))


def apply_traced_prestate(backend: ForkableExecutionBackend, context: ReconstructionContext) -> None:
    """Force the target's prestate trace onto the fork, replacing traced storage."""
    snapshot = context.chain.debug_trace_prestate(context.target.hash)
    apply_state_override(backend, snapshot.to_state_override())
    context.log(info(f"Applied prestate of {len(snapshot.accounts)} account(s)"))


STRATEGIES: Dict[MethodType, Callable[[ForkableExecutionBackend, ReconstructionContext], None]] = {
    MethodType.PLAIN: replay_prior_transactions,
    MethodType.PRESTATE: apply_traced_prestate,
}


def reconstruct(method: MethodType, backend: ForkableExecutionBackend, context: ReconstructionContext) -> None:
    """Bring ``backend`` to the state immediately before ``context.target``."""
    STRATEGIES[MethodType.parse(method)](backend, context)
