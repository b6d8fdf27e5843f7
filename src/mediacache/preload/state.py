"""
State machine for one preload attempt.

    pending -> fetching -> processing -> caching -> complete
    pending -> complete                      (cache hit)
    fetching | processing | caching -> error

complete and error are terminal; a new attempt starts a new machine.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field

from mediacache.exceptions import IllegalStateTransition
from mediacache.types import PreloadStage

TRANSITIONS: dict[PreloadStage, frozenset[PreloadStage]] = {
    PreloadStage.PENDING: frozenset({PreloadStage.FETCHING, PreloadStage.COMPLETE}),
    PreloadStage.FETCHING: frozenset({PreloadStage.PROCESSING, PreloadStage.ERROR}),
    PreloadStage.PROCESSING: frozenset({PreloadStage.CACHING, PreloadStage.ERROR}),
    PreloadStage.CACHING: frozenset({PreloadStage.COMPLETE, PreloadStage.ERROR}),
    PreloadStage.COMPLETE: frozenset(),
    PreloadStage.ERROR: frozenset(),
}


@dataclass
class PreloadAttempt:
    """Tracks the stage of one asset's preload."""

    asset_id: str
    stage: PreloadStage = PreloadStage.PENDING
    failed_stage: PreloadStage | None = None
    error: str | None = None
    history: list[PreloadStage] = field(default_factory=lambda: [PreloadStage.PENDING])
    started_at: float = field(default_factory=time.perf_counter)

    def advance(self, target: PreloadStage) -> None:
        """Move to ``target``.

        Raises:
            IllegalStateTransition: If the move is not allowed from here.
        """
        if target not in TRANSITIONS[self.stage]:
            raise IllegalStateTransition(
                "Illegal preload transition",
                context={
                    "asset_id": self.asset_id,
                    "from": self.stage.value,
                    "to": target.value,
                },
            )
        self.stage = target
        self.history.append(target)

    def fail(self, error: str) -> None:
        """Enter the error state, remembering where it happened."""
        failed_at = self.stage
        self.advance(PreloadStage.ERROR)
        self.failed_stage = failed_at
        self.error = error

    @property
    def finished(self) -> bool:
        return self.stage.is_terminal

    @property
    def elapsed_ms(self) -> float:
        return (time.perf_counter() - self.started_at) * 1000
