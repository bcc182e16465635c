"""Chain binding for a deployed MultiSigWallet contract."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from eth_utils import encode_hex
from hexbytes import HexBytes
from web3 import Web3
from web3.logs import DISCARD

from .abi import MULTISIG_ABI, encode_call
from .errors import PreconditionError, ReadError, WriteError
from .models import Receipt, normalise_address

logger = logging.getLogger(__name__)

EventCallback = Callable[[Any], None]


class Subscription:
    """Handle for a polled event filter; cancel with :meth:`unsubscribe`.

    ``last_error`` holds the most recent failure of the poller, including the
    one that stopped it when it dies.
    """

    def __init__(self, event_name: str) -> None:
        self.event_name = event_name
        self.last_error: Optional[BaseException] = None
        self._task: Optional["asyncio.Task[None]"] = None

    def _attach(self, task: "asyncio.Task[None]") -> None:
        self._task = task
        task.add_done_callback(self._collect)

    def _collect(self, task: "asyncio.Task[None]") -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self.last_error = exc
            logger.error("%s subscription stopped: %s", self.event_name, exc)

    @property
    def active(self) -> bool:
        return self._task is not None and not self._task.done()

    def unsubscribe(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()


class PendingTransaction:
    """A broadcast write call whose receipt has not been observed yet."""

    def __init__(self, binding: "MultisigBinding", tx_hash: bytes, *, action: str) -> None:
        self.binding = binding
        self.tx_hash = HexBytes(tx_hash)
        self.action = action

    @property
    def hash(self) -> str:
        return encode_hex(self.tx_hash)

    def wait(self, timeout: Optional[float] = None) -> Receipt:
        """Block until the transaction is included and return its receipt.

        ``timeout`` of ``None`` keeps web3's own default.
        """

        kwargs: Dict[str, Any] = {}
        if timeout is not None:
            kwargs["timeout"] = timeout
        try:
            raw = self.binding.web3.eth.wait_for_transaction_receipt(self.tx_hash, **kwargs)
        except Exception as exc:
            raise WriteError(f"{self.action} {self.hash} was not confirmed: {exc}") from exc
        receipt = Receipt(
            transaction_hash=self.hash,
            block_number=raw.get("blockNumber"),
            gas_used=raw.get("gasUsed"),
            status=int(raw.get("status", 0)),
            transaction_id=self.binding.submission_id(raw),
            execution_succeeded=self.binding.execution_outcome(raw),
        )
        if not receipt.succeeded:
            raise WriteError(f"{self.action} {self.hash} reverted in block {receipt.block_number}")
        return receipt


class MultisigBinding:
    """High-level wrapper around a MultiSigWallet contract on one network."""

    def __init__(self, web3: Web3, address: str, *, abi: Optional[Sequence[Dict[str, Any]]] = None) -> None:
        try:
            self.address = normalise_address(address)
        except ValueError as exc:
            raise PreconditionError(str(exc)) from exc
        self.web3 = web3
        self.abi = list(abi or MULTISIG_ABI)
        self.contract = web3.eth.contract(address=self.address, abi=self.abi)
        self._subscriptions: List[Subscription] = []

    # -- reads ------------------------------------------------------------
    def _call(self, name: str, *args: Any) -> Any:
        try:
            return getattr(self.contract.functions, name)(*args).call()
        except Exception as exc:
            raise ReadError(f"{name} read failed on {self.address}: {exc}") from exc

    def chain_id(self) -> int:
        try:
            return int(self.web3.eth.chain_id)
        except Exception as exc:
            raise ReadError(f"chain id unavailable: {exc}") from exc

    def transaction_count(self) -> int:
        return int(self._call("transactionCount"))

    def owners(self) -> List[str]:
        return [normalise_address(owner) for owner in self._call("getOwners")]

    def required(self) -> int:
        return int(self._call("required"))

    def transaction(self, transaction_id: int) -> Tuple[str, int, bytes, bool]:
        destination, value, data, executed = self._call("transactions", int(transaction_id))
        return normalise_address(destination), int(value), bytes(data), bool(executed)

    def confirmations(self, transaction_id: int) -> List[str]:
        return [normalise_address(owner) for owner in self._call("getConfirmations", int(transaction_id))]

    def submission_id(self, raw_receipt: Any) -> Optional[int]:
        try:
            events = self.contract.events.Submission().process_receipt(raw_receipt, errors=DISCARD)
        except Exception:
            return None
        for event in events:
            return int(event["args"]["transactionId"])
        return None

    def execution_outcome(self, raw_receipt: Any) -> Optional[bool]:
        """Return True/False when the receipt carries Execution/ExecutionFailure."""

        for name, outcome in (("Execution", True), ("ExecutionFailure", False)):
            try:
                events = getattr(self.contract.events, name)().process_receipt(raw_receipt, errors=DISCARD)
            except Exception:
                continue
            if events:
                return outcome
        return None

    # -- writes -----------------------------------------------------------
    def _transact(self, account: Optional[str], name: str, *args: Any) -> PendingTransaction:
        if not account:
            raise PreconditionError("no connected signer")
        sender = normalise_address(account)
        try:
            tx_hash = getattr(self.contract.functions, name)(*args).transact({"from": sender})
        except Exception as exc:
            raise WriteError(f"{name} rejected: {exc}") from exc
        pending = PendingTransaction(self, tx_hash, action=name)
        logger.info("%s broadcast %s from %s", name, pending.hash, sender)
        return pending

    def submit_transaction(self, account: Optional[str], destination: str, value: int, data: bytes) -> PendingTransaction:
        return self._transact(account, "submitTransaction", normalise_address(destination), int(value), bytes(data))

    def confirm_transaction(self, account: Optional[str], transaction_id: int) -> PendingTransaction:
        return self._transact(account, "confirmTransaction", int(transaction_id))

    def revoke_confirmation(self, account: Optional[str], transaction_id: int) -> PendingTransaction:
        return self._transact(account, "revokeConfirmation", int(transaction_id))

    def execute_transaction(self, account: Optional[str], transaction_id: int) -> PendingTransaction:
        return self._transact(account, "executeTransaction", int(transaction_id))

    def encode(self, method: str, args: Dict[str, Any]) -> bytes:
        return encode_call(self.abi, method, args)

    # -- events -----------------------------------------------------------
    def subscribe(self, event_name: str, on_event: EventCallback, *, poll_interval: float = 12.0) -> Subscription:
        """Poll a log filter for ``event_name`` and feed entries to ``on_event``.

        Must be called from a running event loop.
        """

        event = getattr(self.contract.events, event_name)
        subscription = Subscription(event_name)
        task = asyncio.get_running_loop().create_task(self._poll(subscription, event, on_event, poll_interval))
        subscription._attach(task)
        self._subscriptions.append(subscription)
        return subscription

    async def _poll(self, subscription: Subscription, event: Any, on_event: EventCallback, poll_interval: float) -> None:
        name = subscription.event_name
        log_filter = None
        try:
            while True:
                if log_filter is None:
                    try:
                        log_filter = await asyncio.to_thread(event.create_filter, from_block="latest")
                    except Exception as exc:
                        subscription.last_error = exc
                        logger.warning("%s filter install failed on %s: %s", name, self.address, exc)
                        await asyncio.sleep(poll_interval)
                        continue
                await asyncio.sleep(poll_interval)
                try:
                    entries = await asyncio.to_thread(log_filter.get_new_entries)
                except Exception as exc:
                    subscription.last_error = exc
                    logger.warning("%s filter poll failed on %s: %s", name, self.address, exc)
                    continue
                for entry in entries:
                    on_event(entry)
        finally:
            if log_filter is not None:
                await asyncio.to_thread(self._uninstall, name, log_filter.filter_id)

    def _uninstall(self, event_name: str, filter_id: Any) -> None:
        try:
            self.web3.eth.uninstall_filter(filter_id)
        except Exception as exc:
            logger.debug("uninstall_filter failed for %s: %s", event_name, exc)

    def close(self) -> None:
        for subscription in self._subscriptions:
            subscription.unsubscribe()
        self._subscriptions.clear()


def binding_factory(web3: Web3) -> Callable[[str], MultisigBinding]:
    def _factory(address: str) -> MultisigBinding:
        return MultisigBinding(web3, address)

    return _factory


__all__ = ["MultisigBinding", "PendingTransaction", "Subscription", "binding_factory"]
