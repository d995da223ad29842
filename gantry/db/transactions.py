"""
Gantry Transactions - unit of work with savepoint nesting.

Usage:
    from gantry.db import atomic

    async with atomic() as txn:
        await Database(User).with_transaction(txn).create(alice)
        await Database(Group).with_transaction(txn).create(admins)
        txn.on_commit(lambda: logger.info("seeded"))

    async with atomic():
        await Database(User).create(bob)
        async with atomic():
            await Database(User).create(carol)
            raise ValueError("oops")  # carol rolled back
        # bob still pending in the outer transaction

The outermost block holds the engine's transaction lock from ``BEGIN`` to
``COMMIT``/``ROLLBACK``. The open transaction is tracked in a context
variable; statements issued from that context run inside it, statements from
other tasks wait for the lock.
"""

from __future__ import annotations

import inspect
import logging
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from typing import TYPE_CHECKING, Callable, Iterator, List, Optional

if TYPE_CHECKING:
    from .engine import Engine

logger = logging.getLogger("gantry.db.transactions")

__all__ = ["Transaction", "atomic", "current_transaction", "bind"]

_current: ContextVar[Optional["Transaction"]] = ContextVar("gantry_transaction", default=None)


def current_transaction() -> Optional["Transaction"]:
    """Innermost open transaction of the calling context."""
    return _current.get()


@contextmanager
def bind(txn: Optional["Transaction"]) -> Iterator[None]:
    """
    Make ``txn`` the current transaction for the enclosed block.

    Used when a transaction opened in one task is handed to work running in
    another (``Database.with_transaction(txn)``).
    """
    if txn is None or _current.get() is txn:
        yield
        return
    token = _current.set(txn)
    try:
        yield
    finally:
        _current.reset(token)


class Transaction:
    """
    Async context manager for one unit of work.

    - First block on an engine opens a transaction (``BEGIN``)
    - A nested block on the same engine creates a ``SAVEPOINT``
    - An exception rolls back the innermost block
    - ``on_commit`` hooks run after the outermost commit only
    - ``on_rollback`` hooks run when the block they were registered on rolls back
    """

    def __init__(self, engine: Engine):
        self.engine = engine
        self.active = False
        self.depth = 0
        self._parent: Optional[Transaction] = None
        self._savepoint: Optional[str] = None
        self._token = None
        self._holds_lock = False
        self._commit_hooks: List[Callable] = []
        self._rollback_hooks: List[Callable] = []

    def __repr__(self) -> str:
        kind = f"savepoint {self._savepoint}" if self._savepoint else "transaction"
        return f"<Transaction {self.engine.alias} {kind} active={self.active}>"

    @property
    def is_outermost(self) -> bool:
        return self._savepoint is None

    def on_commit(self, fn: Callable) -> None:
        """Register ``fn`` (sync or async) to run after the outermost commit."""
        self._commit_hooks.append(fn)

    def on_rollback(self, fn: Callable) -> None:
        self._rollback_hooks.append(fn)

    async def _fire_hooks(self, hooks: List[Callable]) -> None:
        for hook in hooks:
            try:
                result = hook()
                if inspect.isawaitable(result):
                    await result
            except Exception as exc:
                logger.error(f"Transaction hook failed: {exc}")

    async def __aenter__(self) -> Transaction:
        from .faults import map_database_error

        await self.engine.ensure_connected()
        adapter = self.engine.adapter
        parent = _current.get()

        if parent is not None and parent.engine is self.engine and parent.active:
            self._parent = parent
            self.depth = parent.depth + 1
            self._savepoint = f"sp_{uuid.uuid4().hex[:12]}"
            try:
                await adapter.savepoint(self._savepoint)
            except Exception as exc:
                raise map_database_error(exc, operation="savepoint") from exc
        else:
            await self.engine.txn_lock.acquire()
            self._holds_lock = True
            try:
                await adapter.begin()
            except Exception as exc:
                self._release_lock()
                raise map_database_error(exc, operation="begin") from exc
            self.depth = 1

        self.active = True
        self._token = _current.set(self)
        logger.debug(f"{self!r} opened (depth={self.depth})")
        return self

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        from .faults import map_database_error

        self.active = False
        if self._token is not None:
            _current.reset(self._token)
            self._token = None

        adapter = self.engine.adapter
        committed = False
        try:
            if exc_type is None:
                try:
                    if self._savepoint:
                        await adapter.release_savepoint(self._savepoint)
                    else:
                        await adapter.commit()
                    committed = True
                except Exception as commit_exc:
                    await self._rollback_quietly()
                    await self._fire_hooks(self._rollback_hooks)
                    raise map_database_error(commit_exc, operation="commit") from commit_exc
            else:
                await self._rollback_quietly()
        finally:
            self._release_lock()

        if committed:
            if self._parent is not None:
                # Savepoint hooks wait for the outermost commit.
                self._parent._commit_hooks.extend(self._commit_hooks)
                self._parent._rollback_hooks.extend(self._rollback_hooks)
            else:
                await self._fire_hooks(self._commit_hooks)
            logger.debug(f"{self!r} committed")
        else:
            await self._fire_hooks(self._rollback_hooks)
            logger.debug(f"{self!r} rolled back: {exc_type.__name__ if exc_type else 'commit failed'}")
        return False

    async def _rollback_quietly(self) -> None:
        adapter = self.engine.adapter
        try:
            if self._savepoint:
                await adapter.rollback_to_savepoint(self._savepoint)
                await adapter.release_savepoint(self._savepoint)
            else:
                await adapter.rollback()
        except Exception as exc:
            logger.error(f"Rollback of {self!r} failed: {exc}")

    def _release_lock(self) -> None:
        if self._holds_lock:
            self._holds_lock = False
            self.engine.txn_lock.release()


def atomic(engine: Optional[Engine] = None) -> Transaction:
    """Transaction on ``engine`` (default engine when omitted)."""
    if engine is None:
        from .engine import get_engine

        engine = get_engine()
    return Transaction(engine)
