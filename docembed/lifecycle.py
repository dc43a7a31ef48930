# docembed/lifecycle.py
"""Embedding lifecycle state machine.

``embedding_status`` is the only stored lifecycle field; ``embedded`` is derived
from it (see ``models.Document.embedded``), so a document can never be both
embedded and failed.

    pending ──claim──> processing ──finalize──> completed
       ^                   │  └────fail────> failed
       └──content edit─────┴──────────────────┘ (from any state)

``failed`` and ``completed`` can be claimed again (``completed`` only when forced).
"""

import enum
from typing import Dict, FrozenSet


class EmbeddingStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


TRANSITIONS: Dict[EmbeddingStatus, FrozenSet[EmbeddingStatus]] = {
    EmbeddingStatus.PENDING: frozenset({EmbeddingStatus.PROCESSING, EmbeddingStatus.PENDING}),
    EmbeddingStatus.PROCESSING: frozenset(
        {EmbeddingStatus.COMPLETED, EmbeddingStatus.FAILED, EmbeddingStatus.PENDING}
    ),
    EmbeddingStatus.COMPLETED: frozenset({EmbeddingStatus.PROCESSING, EmbeddingStatus.PENDING}),
    EmbeddingStatus.FAILED: frozenset({EmbeddingStatus.PROCESSING, EmbeddingStatus.PENDING}),
}


class InvalidTransition(ValueError):
    def __init__(self, current: EmbeddingStatus, target: EmbeddingStatus):
        super().__init__(f"cannot move embedding status from {current.value} to {target.value}")
        self.current = current
        self.target = target


def can_transition(current: EmbeddingStatus, target: EmbeddingStatus) -> bool:
    return target in TRANSITIONS[current]


def check_transition(current: EmbeddingStatus, target: EmbeddingStatus) -> EmbeddingStatus:
    if not can_transition(current, target):
        raise InvalidTransition(current, target)
    return target


def claimable_from(force: bool) -> FrozenSet[EmbeddingStatus]:
    """States a new claim may be taken from.

    ``processing`` is never claimable: a forced re-embed does not pre-empt the
    attempt already in flight.
    """
    sources = {s for s, targets in TRANSITIONS.items() if EmbeddingStatus.PROCESSING in targets}
    if not force:
        sources.discard(EmbeddingStatus.COMPLETED)
    return frozenset(sources)
