"""
Account state overrides on a forked backend.
"""

from dataclasses import replace
from typing import Optional

import rlp
from eth_utils import keccak, to_canonical_address, to_checksum_address

from .backend import ForkableExecutionBackend
from .models import AccountInfo, AccountOverride, StateOverrideSet


def predict_create_address(sender: str, nonce: int) -> str:
    """Address of the contract ``sender`` deploys with CREATE at ``nonce``."""
    encoded = rlp.encode([to_canonical_address(sender), nonce])
    return to_checksum_address(keccak(encoded)[12:])


def apply_state_override(backend: ForkableExecutionBackend, overrides: Optional[StateOverrideSet]) -> None:
    """
    Force the accounts in ``overrides`` into ``backend``.

    The whole set is validated before any account is touched, so a
    conflicting override leaves the backend unchanged. Per account the
    fields are applied in order nonce, code, balance, then storage
    (``state`` replaces it, ``state_diff`` patches single slots).
    """
    if not overrides:
        return
    for address, account_override in overrides.items():
        account_override.validate(address)

    for address, account_override in overrides.items():
        account = backend.basic(address) or AccountInfo()
        if account_override.nonce is not None:
            account = replace(account, nonce=account_override.nonce)
        if account_override.code is not None:
            account = account.with_code(account_override.code)
        if account_override.balance is not None:
            account = replace(account, balance=account_override.balance)
        backend.insert_account_info(address, account)

        if account_override.state is not None:
            backend.replace_storage(address, account_override.state)
        elif account_override.state_diff is not None:
            for slot, value in account_override.state_diff.items():
                backend.insert_storage_slot(address, slot, value)


def merge_overrides(base: StateOverrideSet, extra: Optional[StateOverrideSet]) -> StateOverrideSet:
    """Layer ``extra`` over ``base``; fields set in ``extra`` win per account."""
    merged = dict(base)
    for address, account_override in (extra or {}).items():
        if address not in merged:
            merged[address] = account_override
            continue
        current = merged[address]
        merged[address] = AccountOverride(
            nonce=account_override.nonce if account_override.nonce is not None else current.nonce,
            code=account_override.code if account_override.code is not None else current.code,
            balance=account_override.balance if account_override.balance is not None else current.balance,
            state=account_override.state if account_override.state is not None else current.state,
            state_diff=(
                account_override.state_diff if account_override.state_diff is not None else current.state_diff
            ),
        )
    return merged
