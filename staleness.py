"""Master staleness: set by edits to the master's text inputs, cleared by a new master."""

from __future__ import annotations

import logging

from models import MasterImageState

log = logging.getLogger(__name__)


class StalenessTracker:
    """Annotates a ``MasterImageState`` owned by the master orchestrator.

    Only edits to the consistency text and to the unit-0 prompt count.
    Reference image changes are not tracked.
    """

    def __init__(self, state: MasterImageState) -> None:
        self.state = state

    @property
    def is_stale(self) -> bool:
        return self.state.src is not None and self.state.is_stale

    def _edited(self, what: str) -> None:
        if self.state.src is None:
            return
        if not self.state.is_stale:
            log.debug("Master marked stale after %s edit", what)
        self.state.is_stale = True

    def consistent_prompt_edited(self) -> None:
        self._edited("consistency text")

    def unit_zero_prompt_edited(self) -> None:
        self._edited("unit-0 prompt")

    def generation_succeeded(self) -> None:
        self.state.is_stale = False
