"""Reference image pipeline: upload → watermark handling → ready / failed.

Two modes:

  eager     every accepted upload is cleaned immediately (``process_all``);
            siblings run concurrently and finish in any order.
  deferred  uploads wait as ``pending`` until ``process_pending`` runs them
            one after another: detect first, clean only when a watermark
            was found.

A failed clean never blocks the pipeline: the processed preview falls back
to the original and the image records an error.  Deleting an image while its
call is in flight is allowed; the late completion is dropped because the
image's ``generation`` no longer matches a live entry.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from typing import List, Optional, Sequence

from errors import GenerationError, ValidationError
from models import ImageUpload, ReferenceImage, new_id
from progress import ProgressEmitter

log = logging.getLogger(__name__)


class ReferenceImagePipeline:
    def __init__(
        self,
        client,
        max_images: int = 8,
        mode: str = "eager",
        emitter: Optional[ProgressEmitter] = None,
    ) -> None:
        self.client = client
        self.max_images = max_images
        self.mode = mode
        self.emitter = emitter or ProgressEmitter()
        self.images: List[ReferenceImage] = []
        self._generations = itertools.count(1)

    # ------------------------------------------------------------------
    # Active set
    # ------------------------------------------------------------------

    @property
    def capacity(self) -> int:
        return max(0, self.max_images - len(self.images))

    def add(self, uploads: Sequence[ImageUpload]) -> List[ReferenceImage]:
        """Accept as many uploads as fit; the rest are dropped silently."""
        accepted = list(uploads)[: self.capacity]
        if len(accepted) < len(uploads):
            log.info("Reference set full: accepted %d of %d uploads", len(accepted), len(uploads))
        added = []
        for upload in accepted:
            img = ReferenceImage(
                id=new_id(),
                upload=upload,
                original_preview=upload.to_data_uri(),
                is_processing=self.mode == "eager",
                generation=next(self._generations),
            )
            self.images.append(img)
            added.append(img)
        return added

    def get(self, image_id: str) -> Optional[ReferenceImage]:
        for img in self.images:
            if img.id == image_id:
                return img
        return None

    def _live(self, image_id: str, generation: int) -> Optional[ReferenceImage]:
        img = self.get(image_id)
        if img is None or img.generation != generation:
            return None
        return img

    def delete(self, image_id: str) -> bool:
        img = self.get(image_id)
        if img is None:
            return False
        self.images.remove(img)
        self.emitter.emit("reference", "deleted", f"Removed {img.upload.filename}", {"id": image_id})
        return True

    @property
    def is_busy(self) -> bool:
        return any(img.is_processing for img in self.images)

    @property
    def has_pending(self) -> bool:
        return any(img.processed_preview is None and not img.is_processing for img in self.images)

    def ready_artifacts(self) -> List[str]:
        """Processed previews in order; raises if the set is not usable yet."""
        if not self.images:
            raise ValidationError("Upload at least one reference image first.")
        if self.is_busy:
            raise ValidationError("Reference images are still being processed.")
        if self.has_pending:
            raise ValidationError("Reference images have not been processed yet.")
        return [img.processed_preview for img in self.images]

    def ready_uploads(self) -> List[ImageUpload]:
        return [img.upload for img in self.images if img.processed_preview is not None]

    def to_list(self) -> List[dict]:
        return [img.to_dict() for img in self.images]

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------

    def _finish(self, image_id: str, generation: int, artifact: Optional[str], error: Optional[str]) -> None:
        img = self._live(image_id, generation)
        if img is None:
            log.debug("Dropping late completion for removed image %s", image_id)
            return
        if error is not None:
            img.processed_preview = img.original_preview
            img.error = error
            img.is_processing = False
            self.emitter.emit(
                "reference", "failed",
                f"Watermark removal failed for {img.upload.filename}: {error}",
                {"id": image_id},
            )
            return
        img.processed_preview = artifact
        img.error = None
        img.is_processing = False
        self.emitter.emit(
            "reference", "completed", f"{img.upload.filename} ready", {"id": image_id}
        )

    async def process(self, image_id: str) -> None:
        """Clean one image (eager mode)."""
        img = self.get(image_id)
        if img is None:
            return
        img.is_processing = True
        generation, upload = img.generation, img.upload
        self.emitter.emit("reference", "started", f"Cleaning {upload.filename}…", {"id": image_id})
        try:
            artifact = await self.client.remove_watermark(upload)
        except GenerationError as exc:
            self._finish(image_id, generation, None, str(exc))
            return
        self._finish(image_id, generation, artifact, None)

    async def process_all(self) -> None:
        ids = [img.id for img in self.images if img.is_processing or img.processed_preview is None]
        await asyncio.gather(*(self.process(i) for i in ids))

    async def process_pending(self) -> None:
        """Detect-then-clean every pending image, strictly one at a time."""
        for image_id in [img.id for img in self.images if img.processed_preview is None]:
            img = self.get(image_id)
            if img is None or img.is_processing:
                continue
            img.is_processing = True
            generation, upload = img.generation, img.upload
            self.emitter.emit("reference", "started", f"Checking {upload.filename}…", {"id": image_id})
            try:
                report = await self.client.detect_watermark(upload)
                if report.has_watermark:
                    log.info("Watermark found on %s, cleaning", upload.filename)
                    artifact = await self.client.remove_watermark(upload)
                else:
                    artifact = img.original_preview
            except GenerationError as exc:
                self._finish(image_id, generation, None, str(exc))
                continue
            self._finish(image_id, generation, artifact, None)
