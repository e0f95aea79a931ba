"""
Saga executor for multi-document mutations.

The store has no multi-document transactions, so every cascade is an ordered
list of single-document steps. A step may carry a compensating action that
undoes it. On the first failure, completed steps are compensated in reverse
order (when rollback is enabled) and the original error is re-raised.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional

logger = logging.getLogger(__name__)


@dataclass
class Step:
    """One store call plus the action that reverses it."""
    name: str
    action: Callable[[], Any]
    compensate: Optional[Callable[[Any], None]] = None  # Receives the action's result


@dataclass
class Saga:
    """Ordered steps executed as one logical mutation."""
    name: str
    rollback_on_failure: bool = True
    steps: List[Step] = field(default_factory=list)

    def add(self, name: str, action: Callable[[], Any], compensate: Optional[Callable[[Any], None]] = None) -> "Saga":
        self.steps.append(Step(name, action, compensate))
        return self

    def run(self) -> List[Any]:
        """
        Execute every step in order.

        Returns:
            The result of each step, in order.

        Raises:
            The first error raised by a step, after compensation.
        """
        done: List[tuple] = []
        for step in self.steps:
            try:
                result = step.action()
            except Exception as e:
                logger.error(f"{self.name}: step '{step.name}' failed after {len(done)} steps: {e}")
                if self.rollback_on_failure:
                    self._compensate(done)
                raise
            done.append((step, result))
        return [result for _, result in done]

    def _compensate(self, done: List[tuple]) -> None:
        for step, result in reversed(done):
            if step.compensate is None:
                continue
            logger.warning(f"{self.name}: compensating '{step.name}'")
            try:
                step.compensate(result)
            except Exception:
                # Keep undoing the remaining steps; the original error is re-raised by run()
                logger.exception(f"{self.name}: compensation of '{step.name}' failed")
