"""Exception hierarchy shared by the msig subsystems."""

from __future__ import annotations

from typing import Any, Optional


class MultisigError(Exception):
    """Base class for every error raised by msig."""


class PreconditionError(MultisigError):
    """The session is not ready: no connection, bad network or bad address."""


class ReadError(MultisigError):
    """A contract read or RPC call failed."""


class WriteError(MultisigError):
    """A submit/confirm/revoke/execute call was rejected or never landed."""


class AbiError(WriteError):
    """The destination ABI cannot produce the requested call."""


class MissingArgumentError(AbiError):
    """A declared function parameter was not supplied by the caller."""

    def __init__(self, method: str, parameter: str) -> None:
        super().__init__(f"Method '{method}' requires argument '{parameter}'")
        self.method = method
        self.parameter = parameter


class StaleResponseError(MultisigError):
    """A response arrived for a session that is no longer current."""

    def __init__(self, expected: Any, received: Any) -> None:
        super().__init__(f"stale response for {received!r}; current session is {expected!r}")
        self.expected = expected
        self.received = received


class OwnerValidationError(MultisigError):
    """A candidate owner address was rejected before submission."""

    def __init__(self, message: str, *, candidate: Optional[str] = None) -> None:
        super().__init__(message)
        self.candidate = candidate


__all__ = [
    "AbiError",
    "MissingArgumentError",
    "MultisigError",
    "OwnerValidationError",
    "PreconditionError",
    "ReadError",
    "StaleResponseError",
    "WriteError",
]
