"""Multisig wallet client: transaction sync, confirmations and owner changes."""

from __future__ import annotations

__version__ = "0.3.0"

from .errors import (
    AbiError,
    MissingArgumentError,
    MultisigError,
    OwnerValidationError,
    PreconditionError,
    ReadError,
    StaleResponseError,
    WriteError,
)
from .fetcher import CountFetcher, FetchKey
from .models import ActionResult, ConnectionState, SyncState, Transaction, TransactionStatus, TransactionsView
from .owners import OwnerWorkflow, validate_owner_candidate
from .sync import ResyncPolicy, SyncEngine
from .tx import ActionGateway

__all__ = [
    "AbiError",
    "ActionGateway",
    "ActionResult",
    "ConnectionState",
    "CountFetcher",
    "FetchKey",
    "MissingArgumentError",
    "MultisigError",
    "OwnerValidationError",
    "OwnerWorkflow",
    "PreconditionError",
    "ReadError",
    "ResyncPolicy",
    "StaleResponseError",
    "SyncEngine",
    "SyncState",
    "Transaction",
    "TransactionStatus",
    "TransactionsView",
    "WriteError",
    "__version__",
    "validate_owner_candidate",
]
