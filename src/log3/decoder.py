"""
Diagnostics decoding.

Turns the logs of an execution into human-readable console lines. Two
kinds of entries are understood:

* topic-less entries from ``CONSOLE_ADDRESS``, holding a hardhat-style
  console payload (4-byte ``log(...)`` selector followed by ABI-encoded
  arguments), and
* ds-test ``log``/``log_*``/``log_named_*`` events.

Every other log is an ordinary contract event and is skipped.
"""

import re
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from eth_abi import decode
from eth_abi.exceptions import DecodingError
from eth_utils import keccak, to_checksum_address

from .console import CONSOLE_ADDRESS, CONSOLE_CATALOG
from .models import LogEntry

_FORMAT_SPECIFIER = re.compile(r"%[sdiox%]")

# More digits than any uint256 has; larger scales are printed unscaled
MAX_DECIMALS = 77


def format_value(value: Any, abi_type: str) -> str:
    """Format one decoded console argument the way hardhat prints it."""
    if abi_type == "address":
        return to_checksum_address(value)
    if abi_type == "bool":
        return "true" if value else "false"
    if abi_type.startswith("bytes"):
        return "0x" + bytes(value).hex()
    return str(value)


def _format_specifier(spec: str, value: Any, abi_type: str) -> str:
    if spec in ("%d", "%i"):
        if abi_type.startswith(("uint", "int")):
            return str(value)
        return "NaN"
    if spec == "%x":
        if abi_type.startswith(("uint", "int")):
            return hex(value)
        return format_value(value, abi_type)
    return format_value(value, abi_type)


def console_format(values: Sequence[Any], types: Sequence[str]) -> str:
    """
    Join console arguments with spaces, applying printf-style specifiers
    (``%s %d %i %o %x %%``) when the first argument is a string.
    """
    if not values:
        return ""
    if types[0] != "string" or len(values) == 1:
        return " ".join(format_value(v, t) for v, t in zip(values, types))

    remaining = list(zip(values[1:], types[1:]))

    def substitute(match):
        spec = match.group(0)
        if spec == "%%":
            return "%"
        if not remaining:
            return spec
        value, abi_type = remaining.pop(0)
        return _format_specifier(spec, value, abi_type)

    text = _FORMAT_SPECIFIER.sub(substitute, values[0])
    return " ".join([text] + [format_value(v, t) for v, t in remaining])


def decode_arguments(types: Sequence[str], data: bytes) -> Tuple[Any, ...]:
    """
    ABI-decode ``data``; ``string`` values that are not valid UTF-8 are
    decoded with replacement characters instead of failing.
    """
    try:
        return tuple(decode(list(types), data))
    except UnicodeDecodeError:
        raw = decode(["bytes" if typ == "string" else typ for typ in types], data)
        return tuple(
            value.decode("utf-8", "replace") if typ == "string" else value
            for value, typ in zip(raw, types)
        )


def decode_console_payload(payload: bytes) -> Optional[str]:
    """Decode a ``log(...)`` call payload; None if the selector is unknown."""
    if len(payload) < 4:
        return None
    types = CONSOLE_CATALOG.get(bytes(payload[:4]))
    if types is None:
        return None
    values = decode_arguments(types, bytes(payload[4:])) if types else ()
    return console_format(values, types)


def _format_units(value: int, decimals: int) -> str:
    if decimals > MAX_DECIMALS:
        return str(value)
    sign = "-" if value < 0 else ""
    digits = str(abs(value)).rjust(decimals + 1, "0")
    if decimals == 0:
        return sign + digits
    return f"{sign}{digits[:-decimals]}.{digits[-decimals:]}"


def _plain(types: Tuple[str, ...]) -> Callable[[Sequence[Any]], str]:
    return lambda values: format_value(values[0], types[0])


def _named(types: Tuple[str, ...]) -> Callable[[Sequence[Any]], str]:
    return lambda values: f"{values[0]}: {format_value(values[1], types[1])}"


def _named_decimal(values: Sequence[Any]) -> str:
    return f"{values[0]}: {_format_units(values[1], values[2])}"


_DS_TEST_EVENTS: List[Tuple[str, Tuple[str, ...], Optional[Callable]]] = [
    ("log", ("string",), None),
    ("logs", ("bytes",), None),
    ("log_address", ("address",), None),
    ("log_bytes32", ("bytes32",), None),
    ("log_int", ("int256",), None),
    ("log_uint", ("uint256",), None),
    ("log_bytes", ("bytes",), None),
    ("log_string", ("string",), None),
    ("log_named_address", ("string", "address"), None),
    ("log_named_bytes32", ("string", "bytes32"), None),
    ("log_named_decimal_int", ("string", "int256", "uint256"), _named_decimal),
    ("log_named_decimal_uint", ("string", "uint256", "uint256"), _named_decimal),
    ("log_named_int", ("string", "int256"), None),
    ("log_named_uint", ("string", "uint256"), None),
    ("log_named_bytes", ("string", "bytes"), None),
    ("log_named_string", ("string", "string"), None),
]


def _build_ds_test_catalog() -> Dict[bytes, Tuple[Tuple[str, ...], Callable]]:
    catalog = {}
    for name, types, formatter in _DS_TEST_EVENTS:
        if formatter is None:
            formatter = _named(types) if name.startswith("log_named") else _plain(types)
        topic = keccak(text=f"{name}({','.join(types)})")
        catalog[topic] = (types, formatter)
    return catalog


DS_TEST_CATALOG = _build_ds_test_catalog()


def decode_console_log(log: LogEntry) -> Optional[str]:
    """Decode a single log entry, or return None if it is not a diagnostic."""
    try:
        if not log.topics:
            if log.address == CONSOLE_ADDRESS:
                return decode_console_payload(bytes(log.data))
            return None
        topic0 = bytes(log.topics[0])
        if topic0 in DS_TEST_CATALOG:
            types, formatter = DS_TEST_CATALOG[topic0]
            return formatter(decode_arguments(types, bytes(log.data)))
    except DecodingError:
        # Reserved selector or topic with a foreign encoding: not ours
        return None
    return None


def decode_console_logs(logs: Iterable[LogEntry]) -> List[str]:
    """Decode diagnostic logs in emission order, skipping everything else."""
    lines = []
    for log in logs:
        line = decode_console_log(log)
        if line is not None:
            lines.append(line)
    return lines
