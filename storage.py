"""Image bytes on disk: artifact download, thumbnails and inpainting masks."""

from __future__ import annotations

import io
import logging
import mimetypes
from pathlib import Path
from typing import Optional, Tuple, Union

import requests
from PIL import Image, ImageDraw

from models import decode_data_uri, is_data_uri

log = logging.getLogger(__name__)

THUMBNAIL_MAX_SIZE = 256
THUMBNAIL_QUALITY = 80
CORNER_FRACTION = 0.2

_EXTENSIONS = {
    "image/jpeg": ".jpg",
    "image/png": ".png",
    "image/webp": ".webp",
    "image/gif": ".gif",
}


def extension_for(mime_type: str) -> str:
    return _EXTENSIONS.get(mime_type) or mimetypes.guess_extension(mime_type) or ".png"


def artifact_bytes(artifact: str, timeout: int = 90) -> Tuple[bytes, str]:
    """Return (bytes, mime_type) for a data URI, an http(s) URL or a local path."""
    if is_data_uri(artifact):
        mime, data = decode_data_uri(artifact)
        return data, mime
    if artifact.startswith(("http://", "https://")):
        resp = requests.get(artifact, timeout=timeout)
        resp.raise_for_status()
        mime = resp.headers.get("Content-Type", "image/png").split(";")[0].strip()
        return resp.content, mime
    path = Path(artifact)
    mime, _ = mimetypes.guess_type(path.name)
    return path.read_bytes(), mime or "image/png"


def save_artifact(artifact: str, directory: Union[str, Path], stem: str) -> Optional[str]:
    """Persist an artifact as ``<directory>/<stem>.<ext>``; returns the path or None."""
    try:
        target_dir = Path(directory)
        target_dir.mkdir(parents=True, exist_ok=True)
        if artifact.startswith(("http://", "https://")):
            resp = requests.get(artifact, timeout=90, stream=True)
            resp.raise_for_status()
            mime = resp.headers.get("Content-Type", "image/png").split(";")[0].strip()
            local_path = target_dir / f"{stem}{extension_for(mime)}"
            with open(local_path, "wb") as fh:
                for chunk in resp.iter_content(chunk_size=65536):
                    fh.write(chunk)
            return str(local_path)
        data, mime = artifact_bytes(artifact)
        local_path = target_dir / f"{stem}{extension_for(mime)}"
        local_path.write_bytes(data)
        return str(local_path)
    except (requests.RequestException, OSError, ValueError) as exc:
        log.warning("Could not save artifact %s: %s", stem, exc)
        return None


def make_thumbnail(data: bytes, max_size: int = THUMBNAIL_MAX_SIZE) -> bytes:
    """Downscale so the longer side is at most *max_size*; returns JPEG bytes."""
    with Image.open(io.BytesIO(data)) as img:
        img = img.convert("RGB")
        img.thumbnail((max_size, max_size))
        out = io.BytesIO()
        img.save(out, format="JPEG", quality=THUMBNAIL_QUALITY)
    return out.getvalue()


def corner_mask(data: bytes, fraction: float = CORNER_FRACTION) -> bytes:
    """Inpainting mask: black keep-area with white corner boxes; PNG bytes."""
    with Image.open(io.BytesIO(data)) as src:
        width, height = src.size
    mask = Image.new("L", (width, height), 0)
    draw = ImageDraw.Draw(mask)
    w = max(1, int(width * fraction))
    h = max(1, int(height * fraction))
    for x0, y0 in ((0, 0), (width - w, 0), (0, height - h), (width - w, height - h)):
        draw.rectangle([x0, y0, x0 + w - 1, y0 + h - 1], fill=255)
    out = io.BytesIO()
    mask.save(out, format="PNG")
    return out.getvalue()
