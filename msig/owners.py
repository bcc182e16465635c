"""Owner-set changes submitted through the multisig itself."""

from __future__ import annotations

import asyncio
from typing import Iterable, List, Optional

from eth_utils import is_address, to_checksum_address

from .abi import MULTISIG_ABI, encode_call
from .errors import OwnerValidationError, PreconditionError, ReadError
from .models import ActionResult
from .tx import ActionGateway

INVALID_ADDRESS = "Please enter a valid address"
ALREADY_OWNER = "This address is already an owner"
NOT_AN_OWNER = "The address to be replaced is not an owner"


def _is_owner(address: str, owners: Iterable[str]) -> bool:
    return any(owner.upper() == address.upper() for owner in owners)


def validate_owner_candidate(
    candidate: Optional[str],
    owners: Iterable[str],
    *,
    mode: str = "add",
    replaced: Optional[str] = None,
) -> str:
    """Return the checksummed ``candidate`` or raise :class:`OwnerValidationError`.

    In ``replace`` mode the outgoing owner ``replaced`` must be part of
    ``owners``.
    """

    if mode not in ("add", "replace"):
        raise ValueError(f"unknown owner change mode: {mode!r}")
    owners = list(owners)
    if not candidate or not is_address(candidate):
        raise OwnerValidationError(INVALID_ADDRESS, candidate=candidate)
    if _is_owner(candidate, owners):
        raise OwnerValidationError(ALREADY_OWNER, candidate=candidate)
    if mode == "replace" and (not replaced or not is_address(replaced) or not _is_owner(replaced, owners)):
        raise OwnerValidationError(NOT_AN_OWNER, candidate=replaced)
    return to_checksum_address(candidate)


class OwnerWorkflow:
    """Propose ``addOwner``/``replaceOwner`` calls on the connected multisig."""

    def __init__(self, gateway: ActionGateway) -> None:
        self.gateway = gateway

    async def _current_owners(self, owners: Optional[Iterable[str]]) -> List[str]:
        if owners is not None:
            return list(owners)
        binding = self.gateway.engine.binding
        if binding is None:
            raise PreconditionError("wallet session is not ready")
        return await asyncio.to_thread(binding.owners)

    async def add_owner(self, address: str, owners: Optional[Iterable[str]] = None) -> ActionResult:
        try:
            checked = validate_owner_candidate(address, await self._current_owners(owners))
        except (OwnerValidationError, PreconditionError, ReadError) as exc:
            return ActionResult.failure(exc)
        data = encode_call(MULTISIG_ABI, "addOwner", {"owner": checked})
        return await self.gateway.submit_inner_call(data, action="owner_add")

    async def replace_owner(
        self,
        old: str,
        new: str,
        owners: Optional[Iterable[str]] = None,
    ) -> ActionResult:
        try:
            checked = validate_owner_candidate(new, await self._current_owners(owners), mode="replace", replaced=old)
        except (OwnerValidationError, PreconditionError, ReadError) as exc:
            return ActionResult.failure(exc)
        data = encode_call(MULTISIG_ABI, "replaceOwner", {"owner": to_checksum_address(old), "newOwner": checked})
        return await self.gateway.submit_inner_call(data, action="owner_replace")


__all__ = ["OwnerWorkflow", "validate_owner_candidate"]
