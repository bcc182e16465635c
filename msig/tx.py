"""Transaction action gateway: submit, confirm, revoke and execute."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Tuple

from eth_utils import is_address, to_checksum_address

from .abi import encode_call
from .chain import MultisigBinding, PendingTransaction
from .core import ForensicLedger
from .errors import MultisigError, PreconditionError, WriteError
from .models import ActionResult, Receipt, TransactionStatus
from .sync import SyncEngine

logger = logging.getLogger(__name__)


class ActionGateway:
    """Drive write calls against the multisig and feed results to the engine.

    Every public coroutine returns an :class:`ActionResult`; chain, ABI and
    connection failures never escape as exceptions.
    """

    def __init__(
        self,
        engine: SyncEngine,
        *,
        ledger: Optional[ForensicLedger] = None,
        receipt_timeout: Optional[float] = None,
    ) -> None:
        self.engine = engine
        self.ledger = ledger
        self.receipt_timeout = receipt_timeout

    # -- helpers ----------------------------------------------------------
    def _session(self) -> Tuple[MultisigBinding, str]:
        binding = self.engine.binding
        if binding is None:
            raise PreconditionError("wallet session is not ready")
        account = self.engine.connection.account
        if not account or not self.engine.connection.is_connected:
            raise PreconditionError("no connected signer")
        return binding, account

    def _check_id(self, transaction_id: int) -> int:
        if isinstance(transaction_id, bool) or not isinstance(transaction_id, int) or transaction_id < 0:
            raise WriteError(f"invalid transaction id {transaction_id!r}")
        if transaction_id not in self.engine.known_ids():
            raise WriteError(f"transaction {transaction_id} does not exist")
        return transaction_id

    async def _wait(self, pending: PendingTransaction) -> Receipt:
        return await asyncio.to_thread(pending.wait, self.receipt_timeout)

    async def _run(
        self,
        action: str,
        params: Dict[str, Any],
        operation: Callable[[], Awaitable[Receipt]],
    ) -> ActionResult:
        try:
            receipt = await operation()
        except MultisigError as exc:
            return self._failed(action, params, exc)
        except Exception as exc:
            wrapped = WriteError(f"{action} failed: {exc}")
            wrapped.__cause__ = exc
            return self._failed(action, params, wrapped)
        logger.info("%s confirmed in block %s (%s)", action, receipt.block_number, receipt.transaction_hash)
        if self.ledger is not None:
            self.ledger.log(action, params=params, result=receipt.serialise())
        return ActionResult.success(receipt)

    def _failed(self, action: str, params: Dict[str, Any], exc: MultisigError) -> ActionResult:
        logger.warning("%s failed: %s", action, exc)
        if self.ledger is not None:
            self.ledger.log(
                action,
                params=params,
                ok=False,
                severity="ERROR",
                result={"error": str(exc), "kind": type(exc).__name__},
            )
        return ActionResult.failure(exc)

    async def _submit(self, data: bytes, destination: Optional[str], value: int) -> Receipt:
        binding, account = self._session()
        target = destination or binding.address
        pending = await asyncio.to_thread(binding.submit_transaction, account, target, value, data)
        self.engine.insert_optimistic()
        return await self._wait(pending)

    # -- operations -------------------------------------------------------
    async def add_new_transaction(
        self,
        destination: str,
        target_abi: Any,
        method: str,
        args: Mapping[str, Any],
        *,
        value: int = 0,
    ) -> ActionResult:
        """Propose ``method(**args)`` on ``destination`` as a multisig transaction."""

        params = {"destination": destination, "method": method, "value": value}

        async def operation() -> Receipt:
            data = encode_call(target_abi, method, args)
            if not isinstance(destination, str) or not is_address(destination):
                raise WriteError(f"invalid destination address: {destination!r}")
            return await self._submit(data, to_checksum_address(destination), value)

        return await self._run("tx_submit", params, operation)

    async def submit_inner_call(
        self,
        data: bytes,
        *,
        destination: Optional[str] = None,
        value: int = 0,
        action: str = "tx_submit",
    ) -> ActionResult:
        """Submit pre-encoded call data; the multisig itself is the default target."""

        params = {"destination": destination, "value": value, "data_length": len(data)}

        async def operation() -> Receipt:
            return await self._submit(data, destination, value)

        return await self._run(action, params, operation)

    async def confirm_transaction(self, transaction_id: int) -> ActionResult:
        async def operation() -> Receipt:
            self._check_id(transaction_id)
            binding, account = self._session()
            pending = await asyncio.to_thread(binding.confirm_transaction, account, transaction_id)
            receipt = await self._wait(pending)
            await self.engine.hydrate(transaction_id)
            return receipt

        return await self._run("tx_confirm", {"id": transaction_id}, operation)

    async def revoke_confirmation(self, transaction_id: int) -> ActionResult:
        async def operation() -> Receipt:
            self._check_id(transaction_id)
            binding, account = self._session()
            pending = await asyncio.to_thread(binding.revoke_confirmation, account, transaction_id)
            receipt = await self._wait(pending)
            await self.engine.hydrate(transaction_id)
            return receipt

        return await self._run("tx_revoke", {"id": transaction_id}, operation)

    async def execute_transaction(self, transaction_id: int) -> ActionResult:
        async def operation() -> Receipt:
            self._check_id(transaction_id)
            binding, account = self._session()
            pending = await asyncio.to_thread(binding.execute_transaction, account, transaction_id)
            receipt = await self._wait(pending)
            hydrated = await self.engine.hydrate(transaction_id)
            if receipt.execution_succeeded is False:
                current = hydrated or self.engine.find(transaction_id)
                if current is not None:
                    self.engine.update_transactions(current.with_details(status=TransactionStatus.FAILED))
            return receipt

        return await self._run("tx_execute", {"id": transaction_id}, operation)


__all__ = ["ActionGateway"]
