from __future__ import annotations

from typing import Callable

from flask import current_app


class Saga:
    """Ordered compensation log for multi-step mutations.

    Register a compensating action after each step succeeds. If the block
    exits with an exception before ``commit()``, the registered actions run
    in reverse order and the original exception propagates.
    """

    def __init__(self, name: str, **context):
        self.name = name
        self.context = context
        self.compensated: list[str] = []
        self.failed: list[str] = []
        self._steps: list[tuple[str, Callable, tuple, dict]] = []
        self._committed = False

    def on_rollback(self, label: str, fn: Callable, *args, **kwargs) -> None:
        self._steps.append((label, fn, args, kwargs))

    def commit(self) -> None:
        self._committed = True

    def compensate(self) -> None:
        while self._steps:
            label, fn, args, kwargs = self._steps.pop()
            try:
                fn(*args, **kwargs)
                self.compensated.append(label)
            except Exception:
                self.failed.append(label)
                current_app.logger.exception(
                    "saga %s: compensation '%s' failed context=%s", self.name, label, self.context
                )
        if self.compensated or self.failed:
            current_app.logger.warning(
                "saga %s rolled back compensated=%s failed=%s context=%s",
                self.name, self.compensated, self.failed, self.context,
            )

    def __enter__(self) -> "Saga":
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        if exc_type is not None and not self._committed:
            self.compensate()
        return False
