"""Batch orchestration: one derived image per variable-prompt unit.

Every slot carries a request token.  A completion is applied only if its unit
still exists and its token is still the latest one for that slot, so removed
units and superseded requests are dropped silently.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from errors import GenerationError, NotFoundError, ValidationError
from master import MasterOrchestrator
from models import GeneratedImage, VariablePromptUnit
from progress import ProgressEmitter
from prompt_composer import PromptComposer
from reference_images import ReferenceImagePipeline

log = logging.getLogger(__name__)


@dataclass
class BatchSummary:
    total: int = 0
    succeeded: int = 0
    failed_ids: List[str] = field(default_factory=list)

    @property
    def failed(self) -> int:
        return len(self.failed_ids)

    def to_dict(self) -> Dict:
        return {"total": self.total, "succeeded": self.succeeded, "failed": self.failed}


class BatchOrchestrator:
    def __init__(
        self,
        client,
        pipeline: ReferenceImagePipeline,
        composer: PromptComposer,
        master: MasterOrchestrator,
        emitter: Optional[ProgressEmitter] = None,
    ) -> None:
        self.client = client
        self.pipeline = pipeline
        self.composer = composer
        self.master = master
        self.emitter = emitter or ProgressEmitter()
        self.results: Dict[str, GeneratedImage] = {}
        self.notice: Optional[str] = None
        self._tokens: Dict[str, int] = {}
        self._counter = itertools.count(1)

    # ------------------------------------------------------------------
    # Slots
    # ------------------------------------------------------------------

    def validate(self) -> Tuple[List[str], str]:
        """Return (reference artifacts, master artifact) or raise."""
        state = self.master.state
        if state.is_loading:
            raise ValidationError("Wait for the master image to finish first.")
        if state.src is None:
            raise ValidationError("Generate a master image first.")
        return self.pipeline.ready_artifacts(), state.src

    def _begin(self, unit_id: str) -> int:
        slot = self.results.setdefault(unit_id, GeneratedImage())
        slot.is_loading = True
        slot.error = None
        token = next(self._counter)
        self._tokens[unit_id] = token
        return token

    def _apply(self, unit_id: str, token: int, artifact: Optional[str], error: Optional[str]) -> Optional[bool]:
        if self.composer.find(unit_id) is None or self._tokens.get(unit_id) != token:
            log.debug("Dropping stale result for unit %s", unit_id)
            return None
        slot = self.results[unit_id]
        slot.is_loading = False
        if error is not None:
            slot.error = error
            return False
        slot.src = artifact
        slot.error = None
        return True

    def purge(self, unit_id: str) -> None:
        self.results.pop(unit_id, None)
        self._tokens.pop(unit_id, None)

    @property
    def is_running(self) -> bool:
        return any(slot.is_loading for slot in self.results.values())

    def to_dict(self) -> Dict[str, Dict]:
        return {unit_id: slot.to_dict() for unit_id, slot in self.results.items()}

    # ------------------------------------------------------------------
    # Generation
    # ------------------------------------------------------------------

    async def _run_unit(
        self,
        unit: VariablePromptUnit,
        token: int,
        images: List[str],
        master: str,
        consistent: str,
        is_regeneration: bool,
    ) -> Optional[bool]:
        reference = unit.reference_image.preview if unit.reference_image else None
        try:
            artifact = await self.client.generate_single_from_master(
                images, master, consistent, unit.prompt, is_regeneration, reference
            )
        except GenerationError as exc:
            log.warning("Picture %s failed: %s", unit.id, exc)
            return self._apply(unit.id, token, None, str(exc))
        except Exception as exc:
            log.exception("Picture %s failed unexpectedly", unit.id)
            return self._apply(unit.id, token, None, f"Unexpected error: {exc}")
        return self._apply(unit.id, token, artifact, None)

    async def generate_all(self) -> BatchSummary:
        """Generate every unit concurrently against the current master.

        All slots switch to loading before the first call is awaited.  Results
        land in completion order; failures keep the previous image and one
        aggregate notice is set.
        """
        images, master = self.validate()
        consistent = self.composer.consistent_prompt
        units = list(self.composer.units)
        self.notice = None
        tokens = {unit.id: self._begin(unit.id) for unit in units}
        self.emitter.emit("batch", "started", f"Generating {len(units)} picture(s)…")

        outcomes = await asyncio.gather(
            *(self._run_unit(u, tokens[u.id], images, master, consistent, False) for u in units)
        )

        summary = BatchSummary(total=len(units))
        for unit, outcome in zip(units, outcomes):
            if outcome is True:
                summary.succeeded += 1
            elif outcome is False:
                summary.failed_ids.append(unit.id)

        if summary.failed:
            self.notice = (
                f"{summary.failed} of {summary.total} pictures failed to generate. "
                "Retry them individually."
            )
            self.emitter.emit("batch", "failed", self.notice, summary.to_dict())
        else:
            self.emitter.emit(
                "batch", "completed", f"{summary.succeeded} picture(s) ready", summary.to_dict()
            )
        return summary

    async def regenerate_single(self, unit_id: str) -> bool:
        """Regenerate one unit without touching any other slot."""
        unit = self.composer.find(unit_id)
        if unit is None:
            raise NotFoundError("That picture slot no longer exists.")
        images, master = self.validate()
        token = self._begin(unit_id)
        index = self.composer.index_of(unit_id) + 1
        self.emitter.emit("unit", "started", f"Regenerating picture {index}…", {"id": unit_id})
        outcome = await self._run_unit(
            unit, token, images, master, self.composer.consistent_prompt, True
        )
        if outcome is True:
            self.emitter.emit("unit", "regenerated", f"Picture {index} regenerated", {"id": unit_id})
        elif outcome is False:
            self.emitter.emit(
                "unit", "failed", f"Picture {index} failed: {self.results[unit_id].error}", {"id": unit_id}
            )
        return outcome is True
