"""
Run configuration for log3.

A ``SimulationConfig`` is built once per run (from defaults, an optional
``log3.config.yaml`` and command-line flags) and threaded explicitly
through every component. It is immutable; nothing reads process-wide state
after it has been built.
"""

import os
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict

import yaml

from .errors import InvalidInputError, UnsupportedChainConfig
from .models import MethodType
from .patcher import DEFAULT_DIAGNOSTIC_PATTERN

DEFAULT_CONFIG_FILE = "log3.config.yaml"
DEFAULT_EXPLORER_URL = "https://api.etherscan.io/v2/api"

# EVM version (solc / explorer naming) -> anvil --hardfork name
SUPPORTED_EVM_VERSIONS: Dict[str, str] = {
    "istanbul": "istanbul",
    "berlin": "berlin",
    "london": "london",
    "paris": "paris",
    "merge": "paris",
    "shanghai": "shanghai",
    "cancun": "cancun",
}


def evm_spec(evm_version: str) -> str:
    """Map an EVM version name to the backend hardfork identifier."""
    key = (evm_version or "").strip().lower()
    if key not in SUPPORTED_EVM_VERSIONS:
        raise UnsupportedChainConfig(
            f"Unsupported EVM version: {evm_version!r} "
            f"(supported: {', '.join(sorted(set(SUPPORTED_EVM_VERSIONS)))})"
        )
    return SUPPORTED_EVM_VERSIONS[key]


@dataclass(frozen=True)
class ExecutionRelaxation:
    """
    Fee and gas settings forced onto the execution so the instrumented
    bytecode is not rejected for economic reasons.

    Changing these alters gas-dependent behaviour of the replay: a
    transaction that originally ran out of gas will not do so here.
    """
    gas_price: int = 1
    max_priority_fee_per_gas: int = 1
    max_fee_per_gas: int = 1
    base_fee: int = 1
    gas_limit_multiplier: int = 2000

    def __post_init__(self):
        for f in fields(self):
            value = getattr(self, f.name)
            if not isinstance(value, int) or value < 0:
                raise InvalidInputError(f"{f.name} must be a non-negative integer, got {value!r}")
        if self.gas_limit_multiplier < 1:
            raise InvalidInputError("gas_limit_multiplier must be at least 1")


@dataclass(frozen=True)
class SimulationConfig:
    """Everything one simulation run needs besides the contract and tx hash."""

    chain_id: int = 1
    rpc_url: str = "http://localhost:8545"
    etherscan_api_key: str = ""
    method: MethodType = MethodType.PRESTATE
    evm_version: str = "cancun"

    # Compiler
    solc_path: str = "solc"

    # Fork backend
    anvil_path: str = "anvil"
    fork_port: int = 0
    startup_timeout: float = 30.0
    rpc_timeout: float = 120.0

    # Block explorer
    explorer_url: str = DEFAULT_EXPLORER_URL
    explorer_timeout: float = 30.0

    diagnostic_pattern: str = DEFAULT_DIAGNOSTIC_PATTERN
    relaxation: ExecutionRelaxation = field(default_factory=ExecutionRelaxation)
    fail_on_revert: bool = False
    quiet: bool = False

    def __post_init__(self):
        # Normalise values that may arrive as strings from yaml or argparse
        object.__setattr__(self, "method", MethodType.parse(self.method))
        if isinstance(self.relaxation, dict):
            object.__setattr__(self, "relaxation", ExecutionRelaxation(**self.relaxation))
        if not isinstance(self.chain_id, int) or self.chain_id <= 0:
            raise InvalidInputError(f"Invalid chain id: {self.chain_id!r}")

    @property
    def hardfork(self) -> str:
        return evm_spec(self.evm_version)

    def with_overrides(self, **changes) -> "SimulationConfig":
        """Return a copy with the non-None values of ``changes`` applied."""
        return replace(self, **{k: v for k, v in changes.items() if v is not None})

    @classmethod
    def from_log3_config(cls, config_file: str = DEFAULT_CONFIG_FILE, **overrides) -> "SimulationConfig":
        """Load configuration from a log3 config file, then apply ``overrides``."""
        values: Dict[str, Any] = {}
        if Path(config_file).exists():
            with open(config_file, 'r') as f:
                config_data = yaml.safe_load(f) or {}
            values = _flatten_config(config_data)

        env_key = os.environ.get("ETHERSCAN_API_KEY")
        if env_key and not values.get("etherscan_api_key"):
            values["etherscan_api_key"] = env_key

        values.update({k: v for k, v in overrides.items() if v is not None})
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(values) - known)
        if unknown:
            raise InvalidInputError(f"Unknown configuration keys: {', '.join(unknown)}")
        return cls(**values)


def _flatten_config(config_data: Dict[str, Any]) -> Dict[str, Any]:
    """Map the sectioned yaml layout onto SimulationConfig field names."""
    simulation = dict(config_data.get('simulation', {}))
    compiler = config_data.get('compiler', {})
    fork = config_data.get('fork', {})
    explorer = config_data.get('explorer', {})

    values: Dict[str, Any] = simulation
    if 'solc_path' in compiler:
        values['solc_path'] = compiler['solc_path']
    if 'anvil_path' in fork:
        values['anvil_path'] = fork['anvil_path']
    if 'port' in fork:
        values['fork_port'] = fork['port']
    if 'startup_timeout' in fork:
        values['startup_timeout'] = fork['startup_timeout']
    if 'rpc_timeout' in fork:
        values['rpc_timeout'] = fork['rpc_timeout']
    if 'api_url' in explorer:
        values['explorer_url'] = explorer['api_url']
    if 'timeout' in explorer:
        values['explorer_timeout'] = explorer['timeout']
    if 'api_key' in explorer:
        values['etherscan_api_key'] = explorer['api_key']
    return values
