"""
Solidity compilation of patched contract sources.

Drives ``solc --standard-json`` and picks the verified contract's creation
and runtime bytecode out of the result.
"""

import json
import re
import subprocess
import sys
from typing import Any, Dict, List, Optional, Tuple

from .colors import dim, info, warning
from .console import CONSOLE_IMPORT_PATH
from .errors import CompileError
from .models import CompiledContract, ContractMetadata, SourceCodeMetadata, to_bytes

OUTPUT_SELECTION = {"*": {"*": ["evm.bytecode.object", "evm.deployedBytecode.object"]}}

_VERSION_RE = re.compile(r"(\d+\.\d+\.\d+)")


def compiler_version(version_string: str) -> Optional[str]:
    """``v0.8.19+commit.7dd6d404`` -> ``0.8.19``."""
    match = _VERSION_RE.search(version_string or "")
    return match.group(1) if match else None


def parse_libraries(library: str) -> Dict[str, str]:
    """Parse the explorer's ``Name:0xaddr;Other:0xaddr`` library field."""
    libraries = {}
    for entry in filter(None, (part.strip() for part in (library or "").split(";"))):
        if ":" not in entry:
            continue
        name, address = entry.split(":", 1)
        address = address.strip()
        if not address.startswith("0x"):
            address = "0x" + address
        libraries[name.strip()] = address
    return libraries


def explorer_settings(metadata: ContractMetadata, unit: str) -> Dict[str, Any]:
    """Compiler settings from the explorer's optimizer, EVM and library fields."""
    settings: Dict[str, Any] = {
        "optimizer": {"enabled": metadata.optimization_used, "runs": metadata.runs},
    }
    if metadata.evm_version and metadata.evm_version.lower() != "default":
        settings["evmVersion"] = metadata.evm_version.lower()
    libraries = parse_libraries(metadata.library)
    if libraries:
        settings["libraries"] = {unit: libraries}
    return settings


def build_standard_input(metadata: ContractMetadata) -> Tuple[Dict[str, Any], str]:
    """
    Build the solc standard-JSON input for ``metadata``.

    Returns the input and the path of the unit holding the verified
    contract, or ``""`` when a multi-unit source does not name it in its
    ``compilationTarget``. Verified settings of multi-unit sources are kept;
    legacy multi-file sources carry none and get the explorer's.
    """
    source = metadata.source_code
    if isinstance(source, SourceCodeMetadata):
        if source.language.lower() != "solidity":
            raise CompileError(f"Unsupported source language: {source.language}")
        settings = dict(source.settings)
        target = settings.pop("compilationTarget", None) or {}
        unit = next(iter(target), "")
        if not settings:
            settings = explorer_settings(metadata, unit)
        settings["outputSelection"] = OUTPUT_SELECTION
        return {
            "language": "Solidity",
            "sources": {path: {"content": content} for path, content in source.sources.items()},
            "settings": settings,
        }, unit

    if not isinstance(source, str):
        raise CompileError(f"Unsupported source representation: {type(source).__name__}")

    unit = f"{metadata.contract_name or 'Contract'}.sol"
    settings = explorer_settings(metadata, unit)
    settings["outputSelection"] = OUTPUT_SELECTION
    return {
        "language": "Solidity",
        "sources": {unit: {"content": source}},
        "settings": settings,
    }, unit


def select_contract(output: Dict[str, Any], contract_name: str, unit: str = "") -> Tuple[str, Dict[str, Any]]:
    """
    Find ``contract_name`` in solc's output, skipping the console unit.
    ``unit`` settles which one is meant when several units define it.
    """
    matches = [
        (path, contracts[contract_name])
        for path, contracts in output.get("contracts", {}).items()
        if path != CONSOLE_IMPORT_PATH and contract_name in contracts
    ]
    if not matches:
        raise CompileError(f"Contract {contract_name} not found in compiler output")
    if len(matches) > 1:
        matches = [match for match in matches if match[0] == unit] or matches
    if len(matches) > 1:
        paths = ", ".join(path for path, _ in matches)
        raise CompileError(f"Contract name {contract_name} is ambiguous ({paths})")
    return matches[0]


class SolcCompiler:
    """Compiles explorer metadata with a local ``solc`` binary."""

    def __init__(self, solc_path: str = "solc", quiet: bool = False):
        self.solc_path = solc_path
        self.quiet_mode = quiet

    def _log(self, message: str):
        if not self.quiet_mode:
            print(message, file=sys.stderr)

    def resolve_solc(self, metadata: ContractMetadata) -> str:
        """Expand a ``{version}`` placeholder in the configured solc path."""
        if "{version}" not in self.solc_path:
            return self.solc_path
        version = compiler_version(metadata.compiler_version)
        if version is None:
            raise CompileError(
                f"Cannot resolve {self.solc_path}: unknown compiler version {metadata.compiler_version!r}"
            )
        return self.solc_path.format(version=version)

    def verify_solc_version(self, solc: str, expected: Optional[str]):
        """Warn when the local solc differs from the verified compiler version."""
        if expected is None:
            return
        try:
            result = subprocess.run([solc, "--version"], capture_output=True, text=True)
        except OSError as e:
            raise CompileError(f"Could not run {solc}: {e}") from e
        match = re.search(r'Version: (\d+\.\d+\.\d+)', result.stdout)
        found = match.group(1) if match else None
        if found != expected:
            self._log(warning(
                f"Contract was verified with solc {expected}, compiling with {found or 'unknown version'}"
            ))

    def compile(self, metadata: ContractMetadata) -> Tuple[List[str], CompiledContract]:
        """
        Compile patched ``metadata``.

        Returns the compiler's warning messages and the compiled contract.
        Raises ``CompileError`` with the formatted compiler messages on
        failure.
        """
        solc = self.resolve_solc(metadata)
        self.verify_solc_version(solc, compiler_version(metadata.compiler_version))

        standard_input, unit = build_standard_input(metadata)
        self._log(info(f"Compiling {metadata.contract_name} with {solc}"))
        try:
            result = subprocess.run(
                [solc, "--standard-json"],
                input=json.dumps(standard_input),
                capture_output=True,
                text=True,
            )
        except OSError as e:
            raise CompileError(f"Could not run {solc}: {e}") from e

        try:
            output = json.loads(result.stdout)
        except json.JSONDecodeError:
            raise CompileError(f"Compilation failed:\n{result.stderr or result.stdout}")

        errors = [m for m in output.get("errors", []) if m.get("severity") == "error"]
        diagnostics = [
            m.get("formattedMessage") or m.get("message", "")
            for m in output.get("errors", [])
            if m.get("severity") != "error"
        ]
        if errors:
            messages = [m.get("formattedMessage") or m.get("message", "") for m in errors]
            raise CompileError("Compilation failed:\n" + "\n".join(messages), diagnostics=messages)

        path, contract = select_contract(output, metadata.contract_name, unit)
        evm = contract.get("evm", {})
        bytecode = evm.get("bytecode", {}).get("object", "")
        deployed = evm.get("deployedBytecode", {}).get("object", "")
        if "__$" in bytecode or "__$" in deployed:
            raise CompileError(f"Bytecode of {metadata.contract_name} has unlinked library references")
        if not deployed:
            raise CompileError(f"Contract {metadata.contract_name} has no runtime bytecode (abstract or interface?)")

        for message in diagnostics:
            self._log(dim(message.rstrip()))
        return diagnostics, CompiledContract(
            name=f"{path}:{metadata.contract_name}",
            bytecode=to_bytes(bytecode),
            deployed_bytecode=to_bytes(deployed),
        )
