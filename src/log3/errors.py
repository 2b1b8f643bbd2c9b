"""
Error taxonomy for log3.

Every failure that leaves ``simulate`` is one of these. Adapters around
``requests``, ``web3`` and ``subprocess`` convert library exceptions into
the matching class so callers only ever catch ``Log3Error``.
"""

from typing import Optional


class Log3Error(Exception):
    """Base class for all log3 errors."""
    pass


class InvalidInputError(Log3Error, ValueError):
    """Raised when an address, hash or option is malformed."""
    pass


class SourceFetchError(Log3Error):
    """Raised when contract source could not be fetched from the explorer."""
    pass


class SourceNotFoundError(SourceFetchError):
    """The explorer has no verified source for the address."""
    pass


class RateLimitedError(SourceFetchError):
    """The explorer rejected the request because of rate limiting."""
    pass


class ExplorerAuthError(SourceFetchError):
    """The explorer rejected the API key."""
    pass


class CompileError(Log3Error):
    """Raised when the patched source fails to compile."""

    def __init__(self, message: str, diagnostics: Optional[list] = None):
        super().__init__(message)
        self.diagnostics = diagnostics or []


class ChainLookupError(Log3Error):
    """Raised when a transaction or block could not be found."""
    pass


class RpcError(ChainLookupError):
    """Raised when the chain data source fails at the transport or RPC level."""
    pass


class UnsupportedChainConfig(Log3Error):
    """Raised for an execution-spec (EVM version) identifier we cannot run."""
    pass


class UnsupportedTraceFormat(Log3Error):
    """Raised when a debug trace is not in prestate (non-diff) form."""
    pass


class ConflictingOverrideError(Log3Error):
    """Raised when an account override sets both ``state`` and ``state_diff``."""

    def __init__(self, address: str):
        super().__init__(f"state and state_diff can't be used together (account {address})")
        self.address = address


class ExecutionError(Log3Error):
    """Raised when a replayed or final execution fails at the backend level."""

    def __init__(self, message: str, tx_hash: Optional[str] = None):
        super().__init__(message)
        self.tx_hash = tx_hash


class BackendSpawnError(ExecutionError):
    """Raised when the forked backend could not be started."""
    pass
