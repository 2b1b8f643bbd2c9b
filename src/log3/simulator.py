"""
End-to-end simulation of one mined transaction against instrumented code.

fetch source -> patch -> compile -> fork at the parent block -> rebuild
state -> inject instrumented code -> execute target -> decode diagnostics
"""

import sys
from typing import Callable, List, Optional

from .backend import AnvilBackend, ForkableExecutionBackend
from .chain import Web3ChainDataSource
from .colors import address as fmt_address
from .colors import info, success, warning
from .compiler import SolcCompiler
from .config import SimulationConfig
from .decoder import decode_console_logs
from .dispatcher import configure_block_env, execute_target
from .errors import ExecutionError
from .explorer import EtherscanSourceProvider
from .models import (
    AccountOverride,
    ChainReference,
    MethodType,
    SimulationResult,
    StateOverrideSet,
    normalize_address,
    normalize_tx_hash,
)
from .overrides import apply_state_override, merge_overrides, predict_create_address
from .patcher import patch_metadata_source
from .reconstruct import ReconstructionContext, reconstruct

BackendFactory = Callable[[ChainReference], ForkableExecutionBackend]


class Simulator:
    """
    Runs simulations with one configuration.

    Every collaborator can be injected; by default sources come from the
    configured explorer, compilation from local ``solc``, chain data from
    ``config.rpc_url`` and execution from a fresh anvil fork per run.
    """

    def __init__(self, config: SimulationConfig, source_provider=None, compiler=None, chain=None,
                 backend_factory: Optional[BackendFactory] = None):
        self.config = config
        self.quiet_mode = config.quiet
        self.source_provider = source_provider or EtherscanSourceProvider(
            config.explorer_url, timeout=config.explorer_timeout
        )
        self.compiler = compiler or SolcCompiler(config.solc_path, quiet=config.quiet)
        self.chain = chain or Web3ChainDataSource(config.rpc_url, timeout=config.rpc_timeout)
        self.backend_factory = backend_factory or self._spawn_anvil

    def _log(self, message: str):
        if not self.quiet_mode:
            print(message, file=sys.stderr)

    def _spawn_anvil(self, chain_ref: ChainReference) -> ForkableExecutionBackend:
        return AnvilBackend.spawn(
            chain_ref,
            hardfork=self.config.hardfork,
            anvil_path=self.config.anvil_path,
            port=self.config.fork_port,
            startup_timeout=self.config.startup_timeout,
            rpc_timeout=self.config.rpc_timeout,
            quiet=self.quiet_mode,
        )

    def _warn_relaxation(self):
        relaxation = self.config.relaxation
        # Printed even in quiet mode
        print(warning(
            f"Simulation relaxes fees and gas: gas price {relaxation.gas_price}, "
            f"base fee {relaxation.base_fee}, gas limit x{relaxation.gas_limit_multiplier}. "
            "Gas-dependent reverts of the original transaction may not reproduce."
        ), file=sys.stderr)

    def run(self, contract_address: str, tx_hash: str,
            overrides: Optional[StateOverrideSet] = None) -> SimulationResult:
        """Simulate ``tx_hash`` with the instrumented build of ``contract_address``."""
        config = self.config
        contract_address = normalize_address(contract_address)
        tx_hash = normalize_tx_hash(tx_hash)
        hardfork = config.hardfork
        self._warn_relaxation()

        metadata = self.source_provider.fetch(config.chain_id, contract_address, config.etherscan_api_key)
        self._log(info(f"Fetched source of {metadata.contract_name} at {fmt_address(contract_address)}"))

        patched = patch_metadata_source(metadata, config.diagnostic_pattern)
        diagnostics, compiled = self.compiler.compile(patched)
        self._log(info(f"Compiled {compiled.name}"))

        target = self.chain.get_transaction(tx_hash)
        block = self.chain.get_block_with_transactions(target.block_number)
        chain_ref = ChainReference.for_transaction(config.chain_id, config.rpc_url, target)
        block_context = configure_block_env(block, config.relaxation)

        init_code = None
        code_override: StateOverrideSet = {contract_address: AccountOverride(code=compiled.deployed_bytecode)}
        if target.is_create and predict_create_address(target.sender, target.nonce) == contract_address:
            # The target deploys the contract: run the instrumented constructor instead
            init_code = compiled.bytecode + metadata.constructor_arguments
            code_override = {}
        state_overrides = merge_overrides(code_override, overrides)

        self._log(info(f"Simulating {tx_hash} ({MethodType.parse(config.method).name.lower()}, {hardfork})"))
        with self.backend_factory(chain_ref) as backend:
            context = ReconstructionContext(
                block=block,
                block_context=block_context,
                target=target,
                chain=self.chain,
                quiet=self.quiet_mode,
            )
            reconstruct(config.method, backend, context)
            apply_state_override(backend, state_overrides)
            result = execute_target(backend, block_context, target, config.relaxation, init_code=init_code)

        log_lines = decode_console_logs(result.logs)
        if not result.success:
            message = f"Transaction {tx_hash} reverted in simulation: {result.error or 'unknown error'}"
            if config.fail_on_revert:
                raise ExecutionError(message, tx_hash=tx_hash)
            self._log(warning(message))
        else:
            self._log(success(f"Simulation finished, {len(log_lines)} console line(s)"))

        return SimulationResult(
            log_lines=log_lines,
            reverted=not result.success,
            gas_used=result.gas_used,
            compiler_diagnostics=list(diagnostics),
        )


def simulate(chain_id: int, api_key: str, contract_address: str, tx_hash: str, rpc_endpoint: str,
             method_mode=MethodType.PRESTATE, overrides: Optional[StateOverrideSet] = None,
             config: Optional[SimulationConfig] = None, **kwargs) -> List[str]:
    """
    Re-execute ``tx_hash`` against the instrumented source of
    ``contract_address`` and return the decoded console lines.

    ``kwargs`` are extra ``SimulationConfig`` fields; a given ``config`` is
    used as the base instead of the defaults.
    """
    base = config or SimulationConfig()
    run_config = base.with_overrides(
        chain_id=chain_id,
        etherscan_api_key=api_key,
        rpc_url=rpc_endpoint,
        method=MethodType.parse(method_mode),
        **kwargs
    )
    return Simulator(run_config).run(contract_address, tx_hash, overrides=overrides).log_lines
