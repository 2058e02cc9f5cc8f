"""
Compensation stack for the setup saga.

Each mutating step pushes its compensation before it runs. On failure the
stack is unwound in reverse order; every compensation is attempted even if an
earlier one fails, and the failures are returned to the caller.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Tuple

logger = logging.getLogger(__name__)


@dataclass
class Compensation:
    description: str
    path: Path
    undo: Callable[[], None]


class CompensationStack:
    """LIFO of compensations for applied steps"""

    def __init__(self):
        self._items: List[Compensation] = []

    def push(self, description: str, path: Path, undo: Callable[[], None]) -> None:
        self._items.append(Compensation(description, Path(path), undo))

    def __len__(self) -> int:
        return len(self._items)

    def unwind(self) -> List[Tuple[Compensation, Exception]]:
        """Run every compensation newest-first; returns the ones that failed"""
        failures = []
        while self._items:
            item = self._items.pop()
            try:
                item.undo()
                logger.debug(f"Compensated: {item.description}")
            except Exception as e:
                logger.error(f"Compensation failed for {item.path} ({item.description}): {e}")
                failures.append((item, e))
        return failures

    def clear(self) -> None:
        """Forget all compensations (the saga committed)"""
        self._items.clear()


__all__ = ['Compensation', 'CompensationStack']
