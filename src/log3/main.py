#!/usr/bin/env python3
"""
Main entry point for log3
"""

import sys
import argparse
import json
from pathlib import Path

from .colors import console_line, error
from .config import DEFAULT_CONFIG_FILE, SimulationConfig
from .errors import InvalidInputError, Log3Error
from .models import SimulationRequest, parse_state_override_set
from .simulator import Simulator


def load_json_file(path: str, what: str):
    try:
        with open(path) as f:
            return json.load(f)
    except OSError as e:
        raise InvalidInputError(f"Cannot read {what} file {path}: {e}") from e
    except json.JSONDecodeError as e:
        raise InvalidInputError(f"Invalid JSON in {what} file {path}: {e}") from e


def build_config(args) -> SimulationConfig:
    """Layer CLI flags over the config file (and ETHERSCAN_API_KEY)."""
    if args.config and not Path(args.config).exists():
        raise InvalidInputError(f"Config file not found: {args.config}")
    return SimulationConfig.from_log3_config(
        args.config or DEFAULT_CONFIG_FILE,
        chain_id=args.chain_id,
        etherscan_api_key=args.etherscan_api_key,
        rpc_url=args.endpoint,
        method=args.method,
        solc_path=args.solc_path,
        anvil_path=args.anvil_path,
        evm_version=args.evm_version,
        fork_port=args.fork_port,
        fail_on_revert=True if args.fail_on_revert else None,
        quiet=True if (args.quiet or args.json) else None,
    )


def apply_request(args) -> None:
    """Fill positional arguments from a hosted-handler style JSON request."""
    request = SimulationRequest.from_dict(load_json_file(args.request, "request"))
    args.chain_id = request.chainid
    args.etherscan_api_key = request.etherscan_api_key
    args.contract_address = request.contract_address
    args.tx_hash = request.tx_hash
    args.endpoint = request.endpoint
    if request.method is not None:
        args.method = request.method


def shift_positionals(args) -> None:
    """
    With the API key left out, argparse fills the first three positionals
    with address, hash and endpoint; move them to their own slots.
    """
    if args.endpoint is None and args.tx_hash is not None:
        args.endpoint = args.tx_hash
        args.tx_hash = args.contract_address
        args.contract_address = args.etherscan_api_key
        args.etherscan_api_key = None


def run_command(args) -> int:
    if args.request:
        apply_request(args)
    else:
        shift_positionals(args)
    missing = [name for name in ("contract_address", "tx_hash", "endpoint") if not getattr(args, name)]
    if missing:
        raise InvalidInputError(f"Missing arguments: {', '.join(missing)}")

    config = build_config(args)
    overrides = parse_state_override_set(load_json_file(args.overrides, "overrides")) if args.overrides else None
    result = Simulator(config).run(args.contract_address, args.tx_hash, overrides=overrides)

    if args.json:
        print(json.dumps(result.to_dict(), indent=2))
    else:
        for line in result.log_lines:
            print(console_line(line))
    return 0


def main(argv=None):
    parser = argparse.ArgumentParser(
        description='log3 - replay a mined transaction with its console.log statements enabled'
    )
    parser.add_argument('--version', '-v', action='version', version='%(prog)s 0.1.0')
    parser.add_argument('etherscan_api_key', nargs='?', default=None,
                        help='Etherscan API key (default: config file or ETHERSCAN_API_KEY)')
    parser.add_argument('contract_address', nargs='?', help='Verified contract whose source is instrumented (0x...)')
    parser.add_argument('tx_hash', nargs='?', help='Mined transaction to replay (0x...)')
    parser.add_argument('endpoint', nargs='?', help='Archive node RPC URL of the source chain')
    parser.add_argument('--chain-id', type=int, default=None, help='Chain id (default: 1)')
    parser.add_argument('--method', '-m', default=None,
                        help='State reconstruction: plain (replay earlier txs) or prestate (default)')
    parser.add_argument('--config', default=None, help=f'Config file (default: {DEFAULT_CONFIG_FILE} if present)')
    parser.add_argument('--solc-path', '-solc', default=None, help='Path to solc binary, may contain {version}')
    parser.add_argument('--anvil-path', default=None, help='Path to anvil binary (default: anvil)')
    parser.add_argument('--evm-version', default=None, help='EVM version to execute with (default: cancun)')
    parser.add_argument('--fork-port', type=int, default=None, help='Local fork port (default: a free port)')
    parser.add_argument('--overrides', default=None, help='JSON file with extra state overrides keyed by address')
    parser.add_argument('--request', default=None, help='JSON request file with chainid, etherscan_api_key, '
                        'contract_address, tx_hash, endpoint and optional method')
    parser.add_argument('--fail-on-revert', action='store_true', help='Exit with an error if the replay reverts')
    parser.add_argument('--json', action='store_true', help='Output {"log_lines": [...]} as JSON')
    parser.add_argument('--quiet', '-q', action='store_true', help='Only print the console lines')

    args = parser.parse_args(argv)

    try:
        return run_command(args)
    except Log3Error as e:
        print(error(f"Error: {e}"), file=sys.stderr)
        return 1


if __name__ == '__main__':
    sys.exit(main())
