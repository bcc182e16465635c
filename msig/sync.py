"""Transaction synchronisation engine.

The engine owns the local transaction list for one ``(wallet, chain)``
session. The contract only exposes a transaction *count*, so the list is
materialised as placeholders from that count and enriched later, one id at a
time, through :meth:`SyncEngine.update_transactions` and
:meth:`SyncEngine.hydrate`.

Count handling mirrors the wallet UI this tool grew out of:

* first count for a session (empty list): ids ``0..count-1`` ascending;
* later, changed counts: one placeholder with ``id = len(list)`` is
  prepended so the newest entry sits on top (``ResyncPolicy.SINGLE``);
  ``ResyncPolicy.DELTA`` prepends every missing id instead.

Every read carries the session it was issued for; results arriving after the
session changed are discarded.
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Any, Callable, Collection, List, Mapping, Optional, Set, Tuple

from .chain import MultisigBinding, Subscription
from .core import ForensicLedger
from .errors import PreconditionError, ReadError, StaleResponseError
from .fetcher import CountFetcher, FetchKey, FetchResult, check_preconditions
from .models import (
    ConnectionState,
    SessionKey,
    SyncState,
    Transaction,
    TransactionStatus,
    TransactionsView,
)

logger = logging.getLogger(__name__)

BindingFactory = Callable[[str], MultisigBinding]
ViewListener = Callable[[TransactionsView], None]
SUBMISSION_EVENT = "Submission"


class ResyncPolicy(str, Enum):
    SINGLE = "single"
    DELTA = "delta"


class SyncEngine:
    """State machine reconciling the on-chain count with the local list."""

    def __init__(
        self,
        binding_factory: BindingFactory,
        *,
        fetcher: Optional[CountFetcher] = None,
        supported_chain_ids: Optional[Collection[int]] = None,
        resync_policy: ResyncPolicy = ResyncPolicy.SINGLE,
        poll_interval: float = 12.0,
        ledger: Optional[ForensicLedger] = None,
    ) -> None:
        self._binding_factory = binding_factory
        self.fetcher = fetcher or CountFetcher()
        self.supported_chain_ids = frozenset(supported_chain_ids) if supported_chain_ids else None
        self.resync_policy = ResyncPolicy(resync_policy)
        self.poll_interval = poll_interval
        self.ledger = ledger
        self._connection = ConnectionState()
        self._wallet_address: Optional[str] = None
        self._key: Optional[SessionKey] = None
        self._generation = 0
        self._binding: Optional[MultisigBinding] = None
        self._subscription: Optional[Subscription] = None
        self._transactions: List[Transaction] = []
        self._last_count: Optional[int] = None
        self._state = SyncState.UNINITIALIZED
        self._error: Optional[ReadError] = None
        self._precondition: Optional[PreconditionError] = None
        self._pending: Optional["asyncio.Task[Optional[FetchResult]]"] = None
        self._listeners: List[ViewListener] = []

    # -- read-only surface ------------------------------------------------
    @property
    def state(self) -> SyncState:
        return self._state

    @property
    def connection(self) -> ConnectionState:
        return self._connection

    @property
    def session_key(self) -> Optional[SessionKey]:
        return self._key

    @property
    def binding(self) -> Optional[MultisigBinding]:
        return self._binding

    @property
    def error(self) -> Optional[ReadError]:
        return self._error

    @property
    def precondition(self) -> Optional[PreconditionError]:
        return self._precondition

    @property
    def transactions(self) -> Tuple[Transaction, ...]:
        return tuple(self._transactions)

    @property
    def is_loading(self) -> bool:
        if self._error is not None:
            return False
        if self._state is SyncState.UNINITIALIZED:
            return True
        if self._state is SyncState.DISCONNECTED or self._key is None:
            return False
        if self._state is SyncState.LOADING:
            return True
        return self.fetcher.is_validating(self._fetch_key())

    @property
    def view(self) -> TransactionsView:
        return TransactionsView(
            is_loading=self.is_loading,
            transactions=self.transactions,
            state=self._state,
            error=self._error,
        )

    def known_ids(self) -> Set[int]:
        return {tx.id for tx in self._transactions}

    def find(self, transaction_id: int) -> Optional[Transaction]:
        for tx in self._transactions:
            if tx.id == transaction_id:
                return tx
        return None

    def on_change(self, listener: ViewListener) -> Callable[[], None]:
        """Register ``listener`` for view updates; returns the remover."""

        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove

    # -- session lifecycle ------------------------------------------------
    def configure(
        self,
        connection: ConnectionState,
        wallet_address: Optional[str],
    ) -> Optional["asyncio.Task[Optional[FetchResult]]"]:
        """Point the engine at ``wallet_address`` under ``connection``.

        Any change of chain, account, connection flag or wallet discards the
        local list and starts a new session. Must run inside an event loop
        because the new session subscribes to contract events.
        """

        if connection == self._connection and wallet_address == self._wallet_address and self._state is not SyncState.UNINITIALIZED:
            return None
        self._teardown()
        self._generation += 1
        self._connection = connection
        self._wallet_address = wallet_address
        self._transactions = []
        self._last_count = None
        self._error = None
        self._pending = None
        self._key = None
        self._precondition = None

        if connection.chain_id is None:
            self._state = SyncState.UNINITIALIZED
            self._notify()
            return None

        problem = check_preconditions(connection, wallet_address, self.supported_chain_ids)
        if problem is not None:
            self._precondition = problem
            self._state = SyncState.DISCONNECTED
            logger.info("session not ready: %s", problem)
            self._notify()
            return None

        assert wallet_address is not None
        self._key = SessionKey.build(wallet_address, connection.chain_id)
        self._binding = self._binding_factory(self._key.wallet_address)
        self._subscription = self._binding.subscribe(
            SUBMISSION_EVENT,
            self._on_submission,
            poll_interval=self.poll_interval,
        )
        self.fetcher.invalidate(self._fetch_key())
        self._state = SyncState.LOADING
        self._audit(
            "sync_session",
            params={"wallet": self._key.wallet_address, "chain_id": self._key.chain_id},
            result={"account": connection.account, "generation": self._generation},
        )
        self._notify()
        return self.request_revalidation()

    def close(self) -> None:
        self._teardown()
        self._pending = None

    def _teardown(self) -> None:
        if self._subscription is not None:
            self._subscription.unsubscribe()
            self._subscription = None
        if self._binding is not None:
            self._binding.close()
            self._binding = None

    # -- revalidation -----------------------------------------------------
    def _fetch_key(self) -> FetchKey:
        assert self._key is not None
        return self.fetcher.key_for(self._key.wallet_address, self._key.chain_id)

    def _origin(self) -> Tuple[Optional[SessionKey], int]:
        return self._key, self._generation

    def _check_origin(self, origin: Tuple[Optional[SessionKey], int]) -> None:
        if origin != self._origin():
            raise StaleResponseError(self._origin(), origin)

    def request_revalidation(self) -> Optional["asyncio.Task[Optional[FetchResult]]"]:
        """Schedule a forced revalidation, joining one already pending."""

        if self._key is None:
            return None
        if self._pending is not None and not self._pending.done():
            return self._pending
        self._pending = asyncio.get_running_loop().create_task(self.revalidate())
        return self._pending

    async def revalidate(self) -> Optional[FetchResult]:
        """Force a fresh count read for the current session and apply it."""

        binding = self._binding
        if self._key is None or binding is None:
            return None
        origin = self._origin()
        fetch_key = self._fetch_key()
        self._notify()
        result = await self.fetcher.revalidate(fetch_key, binding.transaction_count)
        try:
            self._apply(origin, result)
        except StaleResponseError as exc:
            logger.debug("discarding count: %s", exc)
            return None
        return result

    def _on_submission(self, event: Any) -> None:
        args = event.get("args", {}) if isinstance(event, Mapping) else {}
        transaction_id = args.get("transactionId")
        logger.info("Submission event for transaction %s", transaction_id)
        self.request_revalidation()

    def _apply(self, origin: Tuple[Optional[SessionKey], int], result: FetchResult) -> None:
        self._check_origin(origin)
        if result.error is not None:
            self._error = result.error
            self._audit("sync_read_error", result={"error": str(result.error)}, ok=False, severity="ERROR")
            self._notify()
            return
        self._error = None
        count = int(result.value or 0)
        if count != self._last_count or not self._transactions:
            self._merge_count(count)
            self._last_count = count
        self._state = SyncState.READY
        self._notify()

    def _merge_count(self, count: int) -> None:
        assert self._key is not None
        wallet = self._key.wallet_address
        if not self._transactions:
            self._transactions = [Transaction.placeholder(i, wallet) for i in range(count)]
            self._audit("sync_materialise", result={"count": count})
            return
        if self.resync_policy is ResyncPolicy.SINGLE:
            added = [Transaction.placeholder(len(self._transactions), wallet)]
        else:
            added = [Transaction.placeholder(i, wallet) for i in reversed(range(len(self._transactions), count))]
        self._transactions[:0] = added
        self._audit("sync_append", result={"count": count, "added": [tx.id for tx in added]})

    # -- local mutation ---------------------------------------------------
    def insert_optimistic(self) -> Optional[Transaction]:
        """Prepend a placeholder for a submission the chain has not counted yet."""

        if self._key is None or self._state is not SyncState.READY:
            return None
        tx = Transaction.placeholder(len(self._transactions), self._key.wallet_address)
        self._transactions.insert(0, tx)
        logger.info("optimistic transaction %s on %s", tx.id, tx.wallet_address)
        self._notify()
        return tx

    def update_transactions(self, tx: Transaction) -> bool:
        """Replace the entry whose id matches ``tx.id``; no-op when absent."""

        for index, current in enumerate(self._transactions):
            if current.id == tx.id:
                if current != tx:
                    self._transactions[index] = tx
                    self._notify()
                return True
        return False

    async def hydrate(self, transaction_id: int) -> Optional[Transaction]:
        """Read details, confirmations and execution state for one id."""

        binding = self._binding
        if binding is None or self.find(transaction_id) is None:
            return None
        origin = self._origin()
        try:
            destination, value, data, executed = await asyncio.to_thread(binding.transaction, transaction_id)
            confirmations = await asyncio.to_thread(binding.confirmations, transaction_id)
        except ReadError as exc:
            logger.warning("hydrate %s failed: %s", transaction_id, exc)
            return None
        try:
            self._check_origin(origin)
        except StaleResponseError as exc:
            logger.debug("discarding details for %s: %s", transaction_id, exc)
            return None
        current = self.find(transaction_id)
        if current is None:
            return None
        status = current.status
        if executed:
            status = TransactionStatus.EXECUTED
        elif status is None:
            status = TransactionStatus.PENDING
        updated = current.with_details(
            payload=data,
            confirmations=confirmations,
            status=status,
            destination=destination,
            value=value,
        )
        self.update_transactions(updated)
        return updated

    async def hydrate_all(self) -> List[Transaction]:
        hydrated: List[Transaction] = []
        for tx in list(self._transactions):
            result = await self.hydrate(tx.id)
            if result is not None:
                hydrated.append(result)
        return hydrated

    # -- helpers ----------------------------------------------------------
    def _notify(self) -> None:
        if not self._listeners:
            return
        view = self.view
        for listener in list(self._listeners):
            listener(view)

    def _audit(self, action: str, *, params: Optional[dict] = None, result: Optional[dict] = None, ok: bool = True, severity: str = "INFO") -> None:
        if self.ledger is None:
            return
        payload = dict(params or {})
        if self._key is not None:
            payload.setdefault("wallet", self._key.wallet_address)
            payload.setdefault("chain_id", self._key.chain_id)
        self.ledger.log(action, params=payload, result=result, ok=ok, severity=severity)


__all__ = ["ResyncPolicy", "SyncEngine"]
