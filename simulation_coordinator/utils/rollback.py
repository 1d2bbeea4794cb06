"""
Ordered undo actions for multi-step provisioning.

Each successful step pushes the action that reverses it. On failure the
stack is unwound in reverse order; an undo action that fails is logged and
the remaining actions still run, so the caller always re-raises the
original error.
"""

import logging
from typing import Any, Awaitable, Callable, List, Tuple

logger = logging.getLogger(__name__)


class RollbackStack:
    def __init__(self, label: str):
        self.label = label
        self._actions: List[Tuple[str, Callable[..., Awaitable[Any]], tuple]] = []

    def push(self, description: str, action: Callable[..., Awaitable[Any]], *args) -> None:
        """Register the undo action for a step that just succeeded."""
        self._actions.append((description, action, args))

    def __len__(self) -> int:
        return len(self._actions)

    def clear(self) -> None:
        """Forget all undo actions (the operation committed)."""
        self._actions.clear()

    async def unwind(self) -> List[BaseException]:
        """
        Run every undo action in reverse order.

        Returns:
            The errors raised by failing undo actions
        """
        failures: List[BaseException] = []
        while self._actions:
            description, action, args = self._actions.pop()
            try:
                await action(*args)
                logger.info(f"[ROLLBACK] {self.label}: undid {description}")
            except Exception as e:
                logger.error(f"[ROLLBACK] {self.label}: failed to undo {description}: {e}", exc_info=True)
                failures.append(e)
        return failures
