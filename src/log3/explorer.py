"""
Block explorer client.

Fetches verified contract sources and compiler settings from an
Etherscan-compatible API (the v2 multichain endpoint by default).
"""

import json
from typing import Any, Dict, Optional

import requests

from .config import DEFAULT_EXPLORER_URL
from .errors import (
    ExplorerAuthError,
    RateLimitedError,
    SourceFetchError,
    SourceNotFoundError,
)
from .models import ContractMetadata, SourceCodeMetadata, normalize_address, to_bytes


def parse_source_code(source_code: str) -> Any:
    """
    Split the explorer's ``SourceCode`` field into a flat source string or
    a multi-unit ``SourceCodeMetadata``.

    Standard-JSON inputs are wrapped in an extra pair of braces (``{{...}}``);
    older multi-file submissions are a bare ``{path: {content}}`` object.
    """
    text = source_code.strip()
    if text.startswith("{{") and text.endswith("}}"):
        text = text[1:-1]
    elif not text.startswith("{"):
        return source_code

    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        # A flat file that happens to start with a brace
        return source_code

    if "sources" in data:
        return SourceCodeMetadata(
            language=data.get("language", "Solidity"),
            sources={path: entry.get("content", "") for path, entry in data["sources"].items()},
            settings=data.get("settings", {}),
        )
    return SourceCodeMetadata(
        language="Solidity",
        sources={path: entry.get("content", "") for path, entry in data.items()},
        settings={},
    )


class EtherscanSourceProvider:
    """Fetches contract metadata from an Etherscan-style ``getsourcecode`` endpoint."""

    def __init__(self, api_url: str = DEFAULT_EXPLORER_URL, timeout: float = 30.0,
                 session: Optional[requests.Session] = None):
        self.api_url = api_url
        self.timeout = timeout
        self.session = session or requests.Session()

    def fetch(self, chain_id: int, contract_address: str, api_key: str) -> ContractMetadata:
        address = normalize_address(contract_address)
        params = {
            "chainid": chain_id,
            "module": "contract",
            "action": "getsourcecode",
            "address": address,
            "apikey": api_key,
        }
        try:
            response = self.session.get(self.api_url, params=params, timeout=self.timeout)
        except requests.RequestException as e:
            raise SourceFetchError(f"Explorer request failed: {e}") from e

        if response.status_code == 429:
            raise RateLimitedError("Explorer rate limit reached")
        if response.status_code in (401, 403):
            raise ExplorerAuthError("Explorer rejected the API key")
        if response.status_code != 200:
            raise SourceFetchError(f"Explorer returned HTTP {response.status_code}")

        try:
            payload = response.json()
        except ValueError as e:
            raise SourceFetchError(f"Explorer returned invalid JSON: {e}") from e

        return self._parse_response(payload, address)

    def _parse_response(self, payload: Dict[str, Any], address: str) -> ContractMetadata:
        result = payload.get("result")
        if str(payload.get("status")) != "1" or not isinstance(result, list):
            message = result if isinstance(result, str) else payload.get("message", "")
            lowered = str(message).lower()
            if "rate limit" in lowered:
                raise RateLimitedError(str(message))
            if "api key" in lowered or "apikey" in lowered:
                raise ExplorerAuthError(str(message))
            raise SourceFetchError(f"Explorer error for {address}: {message}")

        if not result or not result[0].get("SourceCode"):
            raise SourceNotFoundError(f"Contract source code not verified for {address}")

        item = result[0]
        implementation = item.get("Implementation") or None
        return ContractMetadata(
            source_code=parse_source_code(item["SourceCode"]),
            contract_name=item.get("ContractName", ""),
            compiler_version=item.get("CompilerVersion", ""),
            optimization_used=str(item.get("OptimizationUsed", "0")) == "1",
            runs=int(item.get("Runs") or 200),
            evm_version=item.get("EVMVersion") or "Default",
            constructor_arguments=to_bytes(item.get("ConstructorArguments") or ""),
            library=item.get("Library", ""),
            abi=item.get("ABI", ""),
            proxy=str(item.get("Proxy", "0")) == "1",
            implementation=implementation,
        )
