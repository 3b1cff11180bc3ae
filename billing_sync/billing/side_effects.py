"""
Post-commit side effects (emails, token invalidation).

Queued by handlers while the transaction is open and run only after commit;
a failing effect is logged and never affects the committed state.
"""
import logging
from typing import Callable, List, Tuple

from flask import current_app

from billing_sync.observability import log_event


class SideEffects:
    def __init__(self):
        self._queue: List[Tuple[str, Callable, tuple, dict]] = []

    def add(self, name: str, fn: Callable, *args, **kwargs) -> None:
        self._queue.append((name, fn, args, kwargs))

    @property
    def names(self) -> List[str]:
        return [name for name, _, _, _ in self._queue]

    def run(self) -> List[str]:
        """Run every queued effect; returns the names of those that failed."""
        failed = []
        queue, self._queue = self._queue, []
        for name, fn, args, kwargs in queue:
            try:
                fn(*args, **kwargs)
            except Exception as exc:
                current_app.logger.exception("Side effect %s failed", name)
                log_event("billing_side_effect", level=logging.WARNING, name=name, outcome="error", error=str(exc))
                failed.append(name)
        return failed
