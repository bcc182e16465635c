"""Value objects exchanged between the chain binding, sync engine and gateway."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, Optional, Tuple

from eth_utils import encode_hex, is_address, to_checksum_address

from .errors import MultisigError, ReadError


class TransactionStatus(str, Enum):
    """Observed execution state of a multisig transaction."""

    PENDING = "pending"
    EXECUTED = "executed"
    FAILED = "failed"


class SyncState(str, Enum):
    """Lifecycle states of a :class:`~msig.sync.SyncEngine`."""

    UNINITIALIZED = "uninitialized"
    DISCONNECTED = "disconnected"
    LOADING = "loading"
    READY = "ready"


def normalise_address(address: str) -> str:
    """Return the checksummed form of ``address`` or raise ``ValueError``."""

    if not isinstance(address, str) or not is_address(address):
        raise ValueError(f"invalid address: {address!r}")
    return to_checksum_address(address)


@dataclass(frozen=True)
class Transaction:
    """One entry of the on-chain multisig transaction list."""

    id: int
    wallet_address: str
    payload: Optional[bytes] = None
    confirmations: Optional[FrozenSet[str]] = None
    status: Optional[TransactionStatus] = None
    destination: Optional[str] = None
    value: Optional[int] = None

    def __post_init__(self) -> None:
        if self.id < 0:
            raise ValueError("transaction id must be non-negative")
        if self.confirmations is not None and not isinstance(self.confirmations, frozenset):
            object.__setattr__(self, "confirmations", frozenset(self.confirmations))

    @classmethod
    def placeholder(cls, id: int, wallet_address: str) -> "Transaction":
        return cls(id=id, wallet_address=wallet_address)

    def with_details(
        self,
        *,
        payload: Optional[bytes] = None,
        confirmations: Optional[Iterable[str]] = None,
        status: Optional[TransactionStatus] = None,
        destination: Optional[str] = None,
        value: Optional[int] = None,
    ) -> "Transaction":
        return replace(
            self,
            payload=payload if payload is not None else self.payload,
            confirmations=frozenset(confirmations) if confirmations is not None else self.confirmations,
            status=status if status is not None else self.status,
            destination=destination if destination is not None else self.destination,
            value=value if value is not None else self.value,
        )

    def serialise(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "wallet_address": self.wallet_address,
            "payload": encode_hex(self.payload) if self.payload is not None else None,
            "confirmations": sorted(self.confirmations) if self.confirmations is not None else None,
            "status": self.status.value if self.status is not None else None,
            "destination": self.destination,
            "value": self.value,
        }


@dataclass(frozen=True)
class ConnectionState:
    """Connection facts supplied by whoever owns the wallet connection."""

    chain_id: Optional[int] = None
    account: Optional[str] = None
    is_connected: bool = False


@dataclass(frozen=True)
class SessionKey:
    """Identity of a sync session: one wallet on one network."""

    wallet_address: str
    chain_id: int

    @classmethod
    def build(cls, wallet_address: str, chain_id: int) -> "SessionKey":
        return cls(wallet_address=normalise_address(wallet_address), chain_id=int(chain_id))


@dataclass(frozen=True)
class TransactionsView:
    """Read-only snapshot handed to renderers."""

    is_loading: bool
    transactions: Tuple[Transaction, ...]
    state: SyncState
    error: Optional[ReadError] = None

    def serialise(self) -> Dict[str, Any]:
        return {
            "is_loading": self.is_loading,
            "state": self.state.value,
            "error": str(self.error) if self.error is not None else None,
            "transactions": [tx.serialise() for tx in self.transactions],
        }


@dataclass(frozen=True)
class Receipt:
    """Subset of a mined transaction receipt that callers care about."""

    transaction_hash: str
    block_number: Optional[int]
    gas_used: Optional[int]
    status: int
    transaction_id: Optional[int] = None
    execution_succeeded: Optional[bool] = None

    @property
    def succeeded(self) -> bool:
        return self.status == 1

    def serialise(self) -> Dict[str, Any]:
        return {
            "hash": self.transaction_hash,
            "block": self.block_number,
            "gas_used": self.gas_used,
            "status": self.status,
            "transaction_id": self.transaction_id,
            "execution_succeeded": self.execution_succeeded,
        }


@dataclass(frozen=True)
class ActionResult:
    """Outcome of a gateway action, rendered inline by callers."""

    ok: bool
    receipt: Optional[Receipt] = None
    error: Optional[str] = None
    kind: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def success(cls, receipt: Receipt, **details: Any) -> "ActionResult":
        return cls(ok=True, receipt=receipt, details=details)

    @classmethod
    def failure(cls, exc: BaseException, **details: Any) -> "ActionResult":
        kind = type(exc).__name__ if isinstance(exc, MultisigError) else "WriteError"
        message = str(exc) or type(exc).__name__
        return cls(ok=False, error=message, kind=kind, details=details)

    def serialise(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"ok": self.ok}
        if self.receipt is not None:
            payload["receipt"] = self.receipt.serialise()
        if self.error is not None:
            payload["error"] = self.error
            payload["kind"] = self.kind
        payload.update(self.details)
        return payload


__all__ = [
    "ActionResult",
    "ConnectionState",
    "Receipt",
    "SessionKey",
    "SyncState",
    "Transaction",
    "TransactionStatus",
    "TransactionsView",
    "normalise_address",
]
