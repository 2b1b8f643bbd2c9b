"""
Diagnostics library injected into patched sources.

The Solidity ``console`` library and the Python-side decoding catalog are
generated from the same table, so every overload the contract can call has
a selector the decoder knows about. The library mirrors hardhat's console.sol:
each call is a ``staticcall`` of the encoded payload to ``CONSOLE_ADDRESS``,
an address without code. The call always succeeds, is legal inside view and
pure code, and shows up as a frame of the call trace, which is where the
backend collects the payloads.
"""

from itertools import product
from typing import Dict, List, Tuple

from eth_utils import keccak, to_checksum_address

CONSOLE_IMPORT_PATH = "hardhat/console.sol"
# "console.log" in ASCII, as used by hardhat
CONSOLE_ADDRESS_LITERAL = "0x000000000000000000636F6e736F6c652e6c6f67"
CONSOLE_ADDRESS = to_checksum_address(CONSOLE_ADDRESS_LITERAL)
# Present in this library and in hardhat's own console.sol
CONSOLE_MARKER = "address constant CONSOLE_ADDRESS"

# Named single-argument helpers (logUint, logBytes32, ...)
NAMED_SINGLE_TYPES: List[Tuple[str, str]] = [
    ("Int", "int256"),
    ("Uint", "uint256"),
    ("String", "string"),
    ("Bool", "bool"),
    ("Address", "address"),
    ("Bytes", "bytes"),
] + [(f"Bytes{n}", f"bytes{n}") for n in range(1, 33)]

# Plain log(...) overloads with one argument
SINGLE_LOG_TYPES = ["uint256", "int256", "string", "bool", "address"]

# Types combined for the 2, 3 and 4 argument log(...) overloads
COMBINATION_TYPES = ["uint256", "string", "bool", "address"]

_DYNAMIC_TYPES = {"string", "bytes"}


def signature(types: Tuple[str, ...]) -> str:
    return f"log({','.join(types)})"


def selector(types: Tuple[str, ...]) -> bytes:
    return keccak(text=signature(types))[:4]


def _all_signatures() -> List[Tuple[str, Tuple[str, ...]]]:
    """(function name, argument types) for every generated overload."""
    entries: List[Tuple[str, Tuple[str, ...]]] = [("log", ())]
    entries += [(f"log{name}", (typ,)) for name, typ in NAMED_SINGLE_TYPES]
    entries += [("log", (typ,)) for typ in SINGLE_LOG_TYPES]
    for arity in (2, 3, 4):
        entries += [("log", combo) for combo in product(COMBINATION_TYPES, repeat=arity)]
    return entries


def build_catalog() -> Dict[bytes, Tuple[str, ...]]:
    """Map 4-byte payload selector -> argument types."""
    catalog: Dict[bytes, Tuple[str, ...]] = {}
    for _, types in _all_signatures():
        catalog[selector(types)] = types
        # Older console.sol builds hashed "uint" instead of "uint256"
        legacy = tuple("uint" if typ == "uint256" else "int" if typ == "int256" else typ for typ in types)
        if legacy != types:
            catalog.setdefault(selector(legacy), types)
    return catalog


CONSOLE_CATALOG = build_catalog()


def _param(typ: str, index: int) -> str:
    location = " memory" if typ in _DYNAMIC_TYPES else ""
    return f"{typ}{location} p{index}"


def _render_function(name: str, types: Tuple[str, ...]) -> str:
    params = ", ".join(_param(typ, i) for i, typ in enumerate(types))
    args = "".join(f", p{i}" for i in range(len(types)))
    return (
        f"    function {name}({params}) internal pure {{\n"
        f"        _sendLogPayload(abi.encodeWithSignature(\"{signature(types)}\"{args}));\n"
        f"    }}\n"
    )


def render_console_library() -> str:
    """Render the Solidity ``console`` library source."""
    header = (
        "pragma solidity >=0.4.22 <0.9.0;\n"
        "\n"
        "library console {\n"
        f"    {CONSOLE_MARKER} = {CONSOLE_ADDRESS_LITERAL};\n"
        "\n"
        "    function _sendLogPayloadImplementation(bytes memory payload) internal view {\n"
        "        address consoleAddress = CONSOLE_ADDRESS;\n"
        "        assembly {\n"
        "            pop(staticcall(gas(), consoleAddress, add(payload, 32), mload(payload), 0, 0))\n"
        "        }\n"
        "    }\n"
        "\n"
        "    function _castToPure(\n"
        "        function(bytes memory) internal view fnIn\n"
        "    ) internal pure returns (function(bytes memory) pure fnOut) {\n"
        "        assembly {\n"
        "            fnOut := fnIn\n"
        "        }\n"
        "    }\n"
        "\n"
        "    function _sendLogPayload(bytes memory payload) internal pure {\n"
        "        _castToPure(_sendLogPayloadImplementation)(payload);\n"
        "    }\n"
        "\n"
    )
    body = "\n".join(_render_function(name, types) for name, types in _all_signatures())
    return header + body + "}\n"


CONSOLE_LIBRARY_SOURCE = render_console_library()
