"""Liveness tracking for workflows driven by a view that can be torn down."""

from __future__ import annotations

import logging
from dataclasses import dataclass

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Ticket:
    """Identifies the operation that was current when it was issued."""

    generation: int


class WorkflowLifecycle:
    """Decides whether the result of an async step may still be applied.

    A result is stale when the driving view was closed or a newer operation
    (for example a new image selection) superseded the one that produced it.
    Stale results are dropped, never applied.
    """

    def __init__(self) -> None:
        self._alive = True
        self._generation = 0

    @property
    def alive(self) -> bool:
        return self._alive

    def begin(self) -> Ticket:
        """Supersede any in-flight operation and return a ticket for the new one."""
        self._generation += 1
        return Ticket(self._generation)

    def is_current(self, ticket: Ticket) -> bool:
        return self._alive and ticket.generation == self._generation

    def accept(self, ticket: Ticket, what: str) -> bool:
        """Like ``is_current`` but logs when a stale result is discarded."""
        if self.is_current(ticket):
            return True
        logger.debug("Discarding stale %s result (generation %d)", what, ticket.generation)
        return False

    def close(self) -> None:
        self._alive = False
