#!/usr/bin/env python3
"""CLI wrapper for the retouch studio.

Usage:
    python studio_cli.py --image ref1.jpg --image ref2.jpg --analyze
    python studio_cli.py --image ref.jpg --consistent "Navy linen suit, studio" \\
        --shot "Full body, walking" --shot "Close-up of the cufflinks"
"""

from __future__ import annotations

import argparse
import asyncio
import json
import os
import sys
import time
from pathlib import Path
from typing import Dict, List, Optional

from dotenv import load_dotenv

load_dotenv()

import log_setup
log_setup.configure(os.environ.get("STUDIO_LOG_LEVEL", "INFO"))

import storage
from config import PROVIDERS, WATERMARK_MODES, StudioConfig
from errors import ValidationError
from models import ImageUpload
from studio_core import MASTER_TARGET, UPSCALE_FACTORS, StudioSession


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        description="Retouch reference photos into a consistent picture series",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python studio_cli.py --image look.jpg --analyze
  python studio_cli.py --image look.jpg --analyze --modify "warmer light, 重绘幅度: 0.5"
  python studio_cli.py --image a.jpg --image b.jpg --provider replicate --mode deferred \\
      --consistent "Red wool coat, snowy street" --shot "Walking toward camera" --shot "Side profile"
""",
    )
    parser.add_argument("--image", action="append", default=[], help="Reference image (repeatable)")
    parser.add_argument("--consistent", default=None, help="Consistent-elements prompt")
    parser.add_argument("--shot", action="append", default=[], help="Per-picture prompt (repeatable)")
    parser.add_argument("--analyze", action="store_true", help="Fill prompts from an analysis of the references")
    parser.add_argument("--provider", choices=PROVIDERS, default=None, help="Generation provider")
    parser.add_argument(
        "--mode",
        choices=WATERMARK_MODES,
        default=None,
        help="Watermark handling: clean on upload (eager) or before analysis (deferred)",
    )
    parser.add_argument("--modify", default=None, help="Modification instruction applied to the master")
    parser.add_argument("--skip-batch", action="store_true", help="Stop after the master image")
    parser.add_argument(
        "--upscale", type=int, choices=UPSCALE_FACTORS, default=None,
        help="Also save an upscaled copy of the master (Replicate only)",
    )
    parser.add_argument(
        "--output-dir",
        default="cli_output",
        help="Directory to save images (default: cli_output)",
    )
    parser.add_argument("--json", action="store_true", help="Print the final session snapshot as JSON")
    parser.add_argument("--verbose", action="store_true", help="Show debug logging on the console")

    args = parser.parse_args(argv)
    if args.verbose:
        log_setup.set_console_level("DEBUG")

    if not args.image:
        parser.error("at least one --image is required")

    try:
        config = StudioConfig.from_env().with_overrides(provider=args.provider, watermark_mode=args.mode)
    except ValueError as exc:
        print(f"✗  {exc}", file=sys.stderr)
        return 2
    if not config.api_key:
        print(f"✗  {config.api_key_env} not set", file=sys.stderr)
        return 2

    uploads = []
    for path in args.image:
        try:
            uploads.append(ImageUpload.from_path(path))
        except OSError as exc:
            print(f"✗  Cannot read {path}: {exc}", file=sys.stderr)
            return 2

    output_dir = Path(args.output_dir) / f"studio_{int(time.time())}"
    output_dir.mkdir(parents=True, exist_ok=True)

    _echo(f"\n  ✦ Retouch Studio CLI")
    _echo(f"  Images  : {len(uploads)}")
    _echo(f"  Provider: {config.provider}")
    _echo(f"  Mode    : {config.watermark_mode}")
    _echo(f"  Output  : {output_dir}\n")

    return asyncio.run(_run(args, config, uploads, output_dir))


def _progress_cb(event: dict) -> None:
    status = event.get("status", "")
    msg    = event.get("message", "")
    prefix = {
        "started":    "  ◌ ",
        "completed":  "  ✓ ",
        "regenerated":"  ✓ ",
        "failed":     "  ✗ ",
        "rejected":   "  ✗ ",
        "skipped":    "  – ",
        "warning":    "  ⚠ ",
    }.get(status, "    ")
    _echo(f"{prefix}{msg}")


async def _run(args: argparse.Namespace, config: StudioConfig, uploads: List[ImageUpload], output_dir: Path) -> int:
    session = StudioSession(config, progress_cb=_progress_cb, session_id=f"cli-{int(time.time())}")

    await session.upload_reference_images(uploads)

    if args.analyze:
        if not await session.start_analysis():
            _echo("  – Continuing without analysis")
    elif session.pipeline.has_pending:
        await session.pipeline.process_pending()

    if args.consistent is not None:
        session.set_consistent_prompt(args.consistent)
    if args.shot:
        _apply_shots(session, args.shot)

    try:
        ok = await session.generate_master()
        if ok and args.modify:
            ok = await session.modify_master(args.modify)
    except ValidationError as exc:
        print(f"\n✗  {exc}", file=sys.stderr)
        return 1
    if session.master.state.src is None:
        print(f"\n✗  {session.error or 'No master image was produced'}", file=sys.stderr)
        return 1

    saved: Dict[str, Optional[str]] = {
        "master": await asyncio.to_thread(storage.save_artifact, session.master.state.src, output_dir, "master")
    }
    if args.upscale and await session.upscale(MASTER_TARGET, args.upscale):
        saved["master_upscaled"] = await asyncio.to_thread(
            storage.save_artifact, session.upscaled_images()[MASTER_TARGET], output_dir, "master_upscaled"
        )

    if not args.skip_batch:
        summary = await session.generate_all()
        for i, unit in enumerate(session.composer.units, start=1):
            slot = session.batch.results.get(unit.id)
            if slot and slot.src:
                saved[f"picture_{i}"] = await asyncio.to_thread(
                    storage.save_artifact, slot.src, output_dir, f"picture_{i}"
                )
        _echo(f"\n  ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━")
        _echo(f"  Pictures: {summary.succeeded}/{summary.total} generated")
    else:
        _echo(f"\n  ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━")
    _echo(f"  Stale   : {'yes' if session.tracker.is_stale else 'no'}")
    _echo(f"  Output  : {output_dir}\n")

    if args.json:
        snapshot = session.snapshot()
        snapshot["saved"] = saved
        print(json.dumps(snapshot, indent=2, default=str))

    return 0


def _apply_shots(session: StudioSession, shots: List[str]) -> None:
    """Make the unit list match *shots*: first shot drives the master."""
    units = session.composer.units
    for unit in units[len(shots):]:
        session.remove_unit(unit.id)
    for i, prompt in enumerate(shots):
        if i < len(session.composer.units):
            session.set_unit_prompt(session.composer.units[i].id, prompt)
        else:
            session.add_unit(prompt)


def _echo(msg: str) -> None:
    print(msg, flush=True)


if __name__ == "__main__":
    raise SystemExit(main())
