"""Progress events emitted by the studio components.

Events are plain dicts ``{stage, status, message, ts, data?}`` delivered to an
optional callback (the web app pushes them onto an SSE queue, the CLI prints
them) and mirrored to the log.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict, Optional

log = logging.getLogger(__name__)

ProgressCallback = Callable[[Dict[str, Any]], None]


class ProgressEmitter:
    def __init__(self, callback: Optional[ProgressCallback] = None, session_id: str = "-") -> None:
        self.callback = callback
        self.session_id = session_id

    def emit(
        self,
        stage: str,
        status: str,
        message: str,
        data: Optional[Dict] = None,
    ) -> None:
        event: Dict[str, Any] = {
            "stage": stage,
            "status": status,
            "message": message,
            "ts": time.time(),
        }
        if data:
            event["data"] = data
        if self.callback is not None:
            try:
                self.callback(event)
            except Exception:
                log.exception("Progress callback raised for %s/%s", stage, status)
        # Mirror to app log
        lvl = logging.WARNING if status == "failed" else logging.DEBUG
        log.log(lvl, "[%s] %s: %s", self.session_id, stage, message)
