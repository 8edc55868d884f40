"""Retouch Studio: Flask web application."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import queue
import sqlite3
import threading
import time
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Generator, List, Optional

from dotenv import load_dotenv
from flask import Flask, Response, abort, jsonify, request, send_from_directory
from flask_cors import CORS

load_dotenv()

import log_setup
log_setup.configure(os.environ.get("STUDIO_LOG_LEVEL", "INFO"))

import db
from config import StudioConfig
from errors import NotFoundError, ValidationError
from generation_client import build_client
from knowledge_base import KnowledgeBaseService, rank_entries
from models import ImageUpload, KnowledgeBaseEntry, is_data_uri, new_id
from studio_core import StudioSession

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# App setup
# ---------------------------------------------------------------------------

BASE_DIR = Path(__file__).parent
BASE_CONFIG = StudioConfig.from_env()
DATA_DIR = BASE_CONFIG.data_dir if BASE_CONFIG.data_dir.is_absolute() else BASE_DIR / BASE_CONFIG.data_dir

app = Flask(__name__)
CORS(app)

db.configure(DATA_DIR / "studio.db")
db.init_db()

# Sessions, their SSE queues and last-access times: session_id -> ...
_sessions: Dict[str, StudioSession] = {}
_queues: Dict[str, queue.Queue] = {}
_last_seen: Dict[str, float] = {}
_lock = threading.Lock()


# ---------------------------------------------------------------------------
# Event loop thread
# ---------------------------------------------------------------------------
# Every session is touched only from this loop, so request handlers hand
# their work over with _call (sync) or _launch (long-running coroutine).

_loop = asyncio.new_event_loop()


def _run_loop() -> None:
    asyncio.set_event_loop(_loop)
    _loop.run_forever()


threading.Thread(target=_run_loop, name="studio-loop", daemon=True).start()


def _submit(coro: Awaitable) -> Any:
    return asyncio.run_coroutine_threadsafe(coro, _loop).result()


def _call(fn: Callable, *args: Any) -> Any:
    async def run():
        return fn(*args)
    return _submit(run())


def _log_task_failure(task: asyncio.Task) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        log.error("Background task failed: %s", exc, exc_info=exc)


def _launch(
    session: StudioSession,
    validate: Callable[[], Any],
    make_coro: Callable[[], Awaitable],
    wait: bool,
    extra: Optional[Dict] = None,
):
    """Validate on the loop, start the coroutine, and answer 202 or the final snapshot."""

    async def start() -> asyncio.Task:
        validate()
        task = asyncio.ensure_future(make_coro())
        task.add_done_callback(_log_task_failure)
        return task

    task = _submit(start())
    if wait:
        async def join():
            return await task
        _submit(join())
        return jsonify(_call(session.snapshot))
    return jsonify({"session_id": session.id, "status": "accepted", **(extra or {})}), 202


# ---------------------------------------------------------------------------
# SSE helpers
# ---------------------------------------------------------------------------

def _sse_event(data: dict) -> str:
    return f"data: {json.dumps(data)}\n\n"


def _get_or_create_queue(session_id: str) -> queue.Queue:
    with _lock:
        if session_id not in _queues:
            _queues[session_id] = queue.Queue(maxsize=500)
        return _queues[session_id]


def _cleanup_queue(session_id: str) -> None:
    with _lock:
        _queues.pop(session_id, None)


def _publish(session_id: str, event: Optional[Dict]) -> None:
    with _lock:
        q = _queues.get(session_id)
    if q is None:
        return
    try:
        q.put_nowait(event)
    except queue.Full:
        pass


def _progress_cb(session_id: str, provider: str) -> Callable[[Dict], None]:
    def progress_cb(event: Dict) -> None:
        _publish(session_id, event)
        if event.get("status") != "failed":
            return
        try:
            db.add_notebook_entry(
                issue=event.get("message", ""),
                solution=json.dumps(event.get("data") or {}),
                tags=[event.get("stage", ""), provider],
            )
        except sqlite3.Error as exc:
            log.warning("Error notebook write failed: %s", exc)
    return progress_cb


# ---------------------------------------------------------------------------
# Request helpers
# ---------------------------------------------------------------------------

def _body() -> Dict:
    return request.get_json(silent=True) or {}


def _wait_flag(body: Optional[Dict] = None) -> bool:
    raw = (body or {}).get("wait", request.args.get("wait") or request.form.get("wait"))
    if isinstance(raw, str):
        return raw.lower() in ("1", "true", "yes")
    return bool(raw)


def _session(session_id: str) -> StudioSession:
    with _lock:
        session = _sessions.get(session_id)
        if session is not None:
            _last_seen[session_id] = time.time()
    if session is None:
        abort(404)
    return session


def _close_session(session_id: str) -> None:
    with _lock:
        _sessions.pop(session_id, None)
        _last_seen.pop(session_id, None)
    _publish(session_id, None)
    _cleanup_queue(session_id)


def _sweep_idle_sessions(now: Optional[float] = None) -> List[str]:
    """Close sessions untouched for longer than the idle TTL; busy ones are kept."""
    cutoff = (time.time() if now is None else now) - BASE_CONFIG.session_ttl_seconds
    with _lock:
        expired = [(sid, _sessions[sid]) for sid, seen in _last_seen.items() if seen < cutoff and sid in _sessions]
    closed = []
    for session_id, session in expired:
        if _call(lambda: session.is_busy):
            continue
        _close_session(session_id)
        closed.append(session_id)
    if closed:
        log.info("Closed %d idle session(s)", len(closed))
    return closed


def _kb() -> KnowledgeBaseService:
    return KnowledgeBaseService(
        request.headers.get("x-user-id", ""),
        DATA_DIR,
        retention_days=BASE_CONFIG.kb_retention_days,
    )


def _uploads(field: str) -> List[ImageUpload]:
    uploads = [
        ImageUpload(f.filename or "image", f.read(), f.mimetype or "image/png")
        for f in request.files.getlist(field)
    ]
    inline = _body().get(field) or []
    if isinstance(inline, str):
        inline = [inline]
    for i, uri in enumerate(inline):
        if not is_data_uri(uri):
            raise ValidationError(f"'{field}' entries must be data URIs")
        try:
            uploads.append(ImageUpload.from_data_uri(uri, f"{field}-{i + 1}"))
        except ValueError as exc:
            raise ValidationError(f"Unreadable image: {exc}")
    return uploads


def _ids() -> List[str]:
    ids = _body().get("ids")
    if not isinstance(ids, list) or not ids:
        raise ValidationError("ids must be a non-empty list")
    return [str(i) for i in ids]


# ---------------------------------------------------------------------------
# Error handlers
# ---------------------------------------------------------------------------

@app.errorhandler(NotFoundError)
def _not_found_error(exc: NotFoundError):
    return jsonify({"error": str(exc)}), 404


@app.errorhandler(ValidationError)
def _validation_error(exc: ValidationError):
    return jsonify({"error": str(exc)}), 400


@app.errorhandler(404)
def _not_found(_exc):
    return jsonify({"error": "Not found"}), 404


# ---------------------------------------------------------------------------
# Routes: Health
# ---------------------------------------------------------------------------

@app.get("/api/health")
def api_health():
    with _lock:
        count = len(_sessions)
    return jsonify({
        "status": "ok",
        "provider": BASE_CONFIG.provider,
        "watermark_mode": BASE_CONFIG.watermark_mode,
        "api_key_configured": bool(BASE_CONFIG.api_key),
        "sessions": count,
    })


# ---------------------------------------------------------------------------
# Routes: Sessions
# ---------------------------------------------------------------------------

@app.post("/api/sessions")
def api_create_session():
    body = _body()
    try:
        config = BASE_CONFIG.with_overrides(
            provider=body.get("provider"),
            watermark_mode=body.get("watermark_mode"),
        )
    except ValueError as exc:
        return jsonify({"error": str(exc)}), 400

    _sweep_idle_sessions()
    session_id = new_id()
    client = build_client(config, api_key=request.headers.get("x-api-key") or None)
    session = StudioSession(config, client, _progress_cb(session_id, config.provider), session_id)
    with _lock:
        _sessions[session.id] = session
        _last_seen[session.id] = time.time()
    _get_or_create_queue(session.id)

    log.info("Session created: id=%s  provider=%s", session.id, config.provider)
    return jsonify(_call(session.snapshot)), 201


@app.get("/api/sessions/<session_id>")
def api_get_session(session_id: str):
    return jsonify(_call(_session(session_id).snapshot))


@app.delete("/api/sessions/<session_id>")
def api_delete_session(session_id: str):
    _session(session_id)
    _close_session(session_id)
    log.info("Session closed: id=%s", session_id)
    return jsonify({"deleted": session_id})


@app.post("/api/sessions/<session_id>/api-key")
def api_update_key(session_id: str):
    session = _session(session_id)
    key = (_body().get("api_key") or "").strip()
    if not key:
        raise ValidationError("api_key is required")
    _call(session.update_api_key, key)
    return jsonify({"ok": True})


@app.get("/api/stream/<session_id>")
def api_stream(session_id: str):
    """Server-Sent Events stream for a session."""
    _session(session_id)
    q = _get_or_create_queue(session_id)

    def generate() -> Generator[str, None, None]:
        # Send a heartbeat first so the connection opens
        yield _sse_event({"type": "heartbeat", "session_id": session_id})
        try:
            while True:
                try:
                    event = q.get(timeout=25)
                except queue.Empty:
                    yield _sse_event({"type": "heartbeat"})
                    continue

                if event is None:
                    # Sentinel: session closed
                    yield _sse_event({"type": "done"})
                    break

                yield _sse_event(event)
        finally:
            _cleanup_queue(session_id)

    return Response(
        generate(),
        mimetype="text/event-stream",
        headers={
            "Cache-Control": "no-cache, no-transform",
            "X-Accel-Buffering": "no",
            "Connection": "keep-alive",
        },
    )


# ---------------------------------------------------------------------------
# Routes: Reference images and analysis
# ---------------------------------------------------------------------------

@app.post("/api/sessions/<session_id>/references")
def api_add_references(session_id: str):
    session = _session(session_id)
    uploads = _uploads("images")
    if not uploads:
        raise ValidationError("Attach at least one image under 'images'.")

    added = _call(session.add_reference_images, uploads)
    return _launch(
        session,
        lambda: None,
        lambda: session.process_reference_images(added),
        _wait_flag(_body()),
        {"added": [img.id for img in added]},
    )


@app.delete("/api/sessions/<session_id>/references/<image_id>")
def api_delete_reference(session_id: str, image_id: str):
    session = _session(session_id)
    if not _call(session.delete_reference_image, image_id):
        abort(404)
    return jsonify(_call(session.snapshot))


@app.post("/api/sessions/<session_id>/analyze")
def api_analyze(session_id: str):
    session = _session(session_id)
    body = _body()
    partial = bool(body.get("partial"))
    return _launch(
        session,
        session.validate_analysis,
        lambda: session.analyze(update_variables=not partial),
        _wait_flag(body),
    )


# ---------------------------------------------------------------------------
# Routes: Prompts
# ---------------------------------------------------------------------------

@app.put("/api/sessions/<session_id>/consistent")
def api_set_consistent(session_id: str):
    session = _session(session_id)
    _call(session.set_consistent_prompt, str(_body().get("text") or ""))
    return jsonify(_call(session.snapshot))


@app.post("/api/sessions/<session_id>/units")
def api_add_unit(session_id: str):
    session = _session(session_id)
    unit = _call(session.add_unit, str(_body().get("prompt") or ""))
    return jsonify(unit.to_dict()), 201


@app.put("/api/sessions/<session_id>/units/<unit_id>")
def api_set_unit(session_id: str, unit_id: str):
    session = _session(session_id)
    _call(session.set_unit_prompt, unit_id, str(_body().get("prompt") or ""))
    return jsonify(_call(session.snapshot))


@app.delete("/api/sessions/<session_id>/units/<unit_id>")
def api_remove_unit(session_id: str, unit_id: str):
    session = _session(session_id)
    _call(session.remove_unit, unit_id)
    return jsonify(_call(session.snapshot))


@app.post("/api/sessions/<session_id>/units/<unit_id>/image")
def api_attach_unit_image(session_id: str, unit_id: str):
    session = _session(session_id)
    uploads = _uploads("image")
    if not uploads:
        raise ValidationError("Attach an image under 'image'.")
    return _launch(
        session,
        lambda: session.unit(unit_id),
        lambda: session.attach_unit_image(unit_id, uploads[0]),
        _wait_flag(_body()),
    )


@app.delete("/api/sessions/<session_id>/units/<unit_id>/image")
def api_remove_unit_image(session_id: str, unit_id: str):
    session = _session(session_id)
    _call(session.remove_unit_image, unit_id)
    return jsonify(_call(session.snapshot))


@app.post("/api/sessions/<session_id>/units/<unit_id>/save-to-kb")
def api_save_unit_to_kb(session_id: str, unit_id: str):
    session = _session(session_id)
    kb = _kb()
    entries = _call(session.save_unit_analysis_to_kb, unit_id, kb)
    return jsonify({"entries": [e.to_dict() for e in entries]}), 201


@app.post("/api/sessions/<session_id>/kb-select")
def api_kb_select(session_id: str):
    session = _session(session_id)
    body = _body()
    kb = _kb()
    entry = kb.get(str(body.get("entry_id") or ""))
    if entry is None or entry.is_deleted:
        raise NotFoundError("Knowledge base entry not found.")
    _call(session.select_kb_entry, entry, str(body.get("field") or "consistent"), kb)
    return jsonify(_call(session.snapshot))


# ---------------------------------------------------------------------------
# Routes: Generation
# ---------------------------------------------------------------------------

@app.post("/api/sessions/<session_id>/master")
def api_master(session_id: str):
    session = _session(session_id)
    body = _body()
    action = body.get("action", "generate")
    if action == "generate":
        return _launch(session, session.validate_generate_master, session.generate_master, _wait_flag(body))
    if action == "modify":
        instruction = body.get("instruction")
        return _launch(
            session,
            lambda: session.validate_modify_master(instruction),
            lambda: session.modify_master(instruction),
            _wait_flag(body),
        )
    raise ValidationError("action must be 'generate' or 'modify'")


@app.post("/api/sessions/<session_id>/batch")
def api_batch(session_id: str):
    session = _session(session_id)
    return _launch(session, session.validate_batch, session.generate_all, _wait_flag(_body()))


@app.post("/api/sessions/<session_id>/units/<unit_id>/regenerate")
def api_regenerate(session_id: str, unit_id: str):
    session = _session(session_id)
    return _launch(
        session,
        lambda: session.validate_regenerate(unit_id),
        lambda: session.regenerate_single(unit_id),
        _wait_flag(_body()),
    )


@app.post("/api/sessions/<session_id>/upscale")
def api_upscale(session_id: str):
    """Upscale the master or one unit's picture: {"target": "master" | unit_id, "scale": 2 | 4}."""
    session = _session(session_id)
    body = _body()
    target = str(body.get("target") or "master")
    try:
        scale = int(body.get("scale", 2))
    except (TypeError, ValueError):
        raise ValidationError("scale must be an integer")
    face_enhance = bool(body.get("face_enhance", False))
    return _launch(
        session,
        lambda: session.validate_upscale(target, scale),
        lambda: session.upscale(target, scale, face_enhance),
        _wait_flag(body),
        {"target": target},
    )


# ---------------------------------------------------------------------------
# Routes: Knowledge base
# ---------------------------------------------------------------------------

@app.get("/api/knowledge")
def api_list_knowledge():
    kb = _kb()
    args = request.args
    trash = args.get("trash") in ("1", "true")
    include_deleted = args.get("include_deleted") in ("1", "true")

    if include_deleted and not trash:
        entries = kb.list(include_deleted=True)
    else:
        pool = kb.trash() if trash else kb.list()
        try:
            entries = rank_entries(
                pool,
                context=args.get("context", ""),
                category=args.get("category"),
                query=args.get("q", ""),
                view="trash" if trash else "active",
            )
        except ValueError as exc:
            raise ValidationError(f"Unknown category: {exc}")
    return jsonify({"entries": [e.to_dict() for e in entries]})


@app.post("/api/knowledge")
def api_save_knowledge():
    kb = _kb()
    body = _body()
    try:
        entries = [KnowledgeBaseEntry.from_dict(raw) for raw in body.get("entries") or []]
    except (KeyError, ValueError) as exc:
        raise ValidationError(f"Invalid entry: {exc}")
    if not entries:
        raise ValidationError("entries must be a non-empty list")
    saved = kb.save(entries, body.get("source_image") or None)
    return jsonify({"entries": [e.to_dict() for e in saved]}), 201


@app.post("/api/knowledge/<entry_id>/usage")
def api_knowledge_usage(entry_id: str):
    if not _kb().increment_usage(entry_id):
        abort(404)
    return jsonify({"ok": True})


@app.post("/api/knowledge/delete")
def api_knowledge_delete():
    return jsonify({"count": _kb().soft_delete(_ids())})


@app.post("/api/knowledge/restore")
def api_knowledge_restore():
    return jsonify({"count": _kb().restore(_ids())})


@app.post("/api/knowledge/purge")
def api_knowledge_purge():
    return jsonify({"count": _kb().permanently_delete(_ids())})


@app.post("/api/knowledge/cleanup")
def api_knowledge_cleanup():
    return jsonify({"count": _kb().purge_expired_trash()})


@app.get("/api/images/<user_id>/<path:filename>")
def api_image(user_id: str, filename: str):
    kb = KnowledgeBaseService(user_id, DATA_DIR)
    return send_from_directory(str(kb.images_dir), filename)


# ---------------------------------------------------------------------------
# Routes: Error notebook
# ---------------------------------------------------------------------------

@app.get("/api/error-notebook")
def api_list_notebook():
    return jsonify({"entries": db.list_notebook_entries()})


@app.post("/api/error-notebook")
def api_add_notebook():
    body = _body()
    issue = (body.get("issue") or "").strip()
    if not issue:
        raise ValidationError("issue is required")
    tags = body.get("tags") or []
    if not isinstance(tags, list):
        raise ValidationError("tags must be a list")
    entry = db.add_notebook_entry(issue, (body.get("solution") or "").strip(), [str(t) for t in tags])
    return jsonify(entry), 201


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    port = int(os.environ.get("PORT", 5000))
    print(f"\n  Retouch Studio → http://localhost:{port}\n")
    app.run(host="0.0.0.0", port=port, debug=False, threaded=True)
