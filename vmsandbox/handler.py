"""Steps applied to a sandbox in order, undone in reverse on failure."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Iterable
from typing import Generic, TypeVar

S = TypeVar("S")

log = logging.getLogger(__name__)


class Handler(ABC, Generic[S]):
    """One step that changes a sandbox and can undo the change."""

    @abstractmethod
    def handle(self, sandbox: S) -> None: ...

    @abstractmethod
    def rollback(self, sandbox: S) -> None: ...


class HandlerChain(Generic[S]):
    def __init__(self, handlers: Iterable[Handler[S]]):
        self.handlers = list(handlers)

    def handle(self, sandbox: S) -> None:
        """Run every handler; on failure roll back those already run and re-raise.

        Handlers up to the last successful one are rolled back, in reverse;
        when the first handler fails, it is rolled back itself.
        """
        finished_index = 0
        for index, handler in enumerate(self.handlers):
            try:
                handler.handle(sandbox)
            except Exception:
                for done in reversed(self.handlers[: finished_index + 1]):
                    self._safe_rollback(done, sandbox)
                raise
            finished_index = index

    def rollback(self, sandbox: S) -> None:
        """Roll back every handler in reverse, logging failures."""
        for handler in reversed(self.handlers):
            self._safe_rollback(handler, sandbox)

    @staticmethod
    def _safe_rollback(handler: Handler[S], sandbox: S) -> None:
        try:
            handler.rollback(sandbox)
        except Exception as exc:
            log.warning("rollback failed for sandbox %r", exc)