from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path
from typing import Optional

from PIL import features
from rich.console import Console
from rich.table import Table

from .core.config import get_settings
from .core.db import create_schema, lifespan
from .core.logging import configure_logging
from .db.models import ImageKind
from .domain import PolicyLimits, SourceImage, classify, compute_file_fingerprint, compute_fingerprint, evaluate
from .ingest.errors import IngestError
from .services.ingest_service import Attribution, build_ingest_service

console = Console()

# Pillow feature name -> label shown by --check
_CODEC_CHECKS = {
    "webp": "WebP",
    "jpg": "JPEG",
    "zlib": "PNG (zlib)",
}


def main(argv: Optional[list[str]] = None) -> None:
    """The main entry point for the CLI.

    Args:
        argv: The command-line arguments.
    """
    parser = _build_parser()
    args = parser.parse_args(argv)

    if getattr(args, "check", False):
        _run_environment_check()
        return

    if not hasattr(args, "func"):
        parser.print_help()
        sys.exit(1)

    args.func(args)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Avatar ingest developer CLI")
    parser.add_argument("--check", action="store_true", help="Validate that Pillow was built with the required codecs")

    subparsers = parser.add_subparsers(dest="command")

    inspect_parser = subparsers.add_parser("inspect", help="Classify an image and print the policy decision")
    inspect_parser.add_argument("--file", required=True, help="Path to the source image")
    inspect_parser.add_argument("--kind", choices=[k.value for k in ImageKind], default=ImageKind.avatar.value)
    inspect_parser.set_defaults(func=_cmd_inspect)

    fingerprint_parser = subparsers.add_parser("fingerprint", help="Print the content fingerprint of a file")
    fingerprint_parser.add_argument("--file", required=True, help="Path to the source image")
    fingerprint_parser.set_defaults(func=_cmd_fingerprint)

    ingest_parser = subparsers.add_parser("ingest", help="Run the full pipeline against the configured stores")
    ingest_parser.add_argument("--file", required=True, help="Path to the source image")
    ingest_parser.add_argument("--kind", choices=[k.value for k in ImageKind], default=ImageKind.avatar.value)
    ingest_parser.add_argument("--uploaded-by", type=int, default=None, help="Account id to attribute the upload to")
    ingest_parser.add_argument(
        "--create-schema",
        action="store_true",
        help="Create catalog tables first (development databases without Alembic).",
    )
    ingest_parser.set_defaults(func=_cmd_ingest)

    drain_parser = subparsers.add_parser("drain-queue", help="Process queued migration URLs once")
    drain_parser.add_argument("--worker-id", type=int, default=0)
    drain_parser.add_argument(
        "--worker-count",
        type=int,
        default=None,
        help="Total number of drainers sharing the queue (default: AVATAR_MIGRATE_WORKER_COUNT or 1).",
    )
    drain_parser.set_defaults(func=_cmd_drain)
    return parser


def _read_file(raw_path: str) -> tuple[Path, bytes]:
    path = Path(raw_path).expanduser().resolve()
    if not path.is_file():
        console.print(f"[red]File not found: {path}[/]")
        sys.exit(2)
    return path, path.read_bytes()


def _cmd_inspect(args: argparse.Namespace) -> None:
    path, data = _read_file(args.file)
    try:
        info = classify(data)
    except IngestError as exc:
        console.print(f"[red]{exc.message}[/]")
        sys.exit(3)

    decision = evaluate(info, PolicyLimits.from_settings(get_settings()), ImageKind(args.kind))
    console.print_json(
        data={
            "file": str(path),
            "fingerprint": compute_fingerprint(data),
            "format": info.format,
            "kind": info.kind.value,
            "width": info.width,
            "height": info.height,
            "frames": info.frame_count,
            "bytes": info.byte_size,
            "decision": {
                "action": decision.action.value,
                "target_format": decision.target_format,
                "target_size": list(decision.target_size),
                "reason": decision.reason,
            },
        }
    )


def _cmd_fingerprint(args: argparse.Namespace) -> None:
    path = Path(args.file).expanduser().resolve()
    if not path.is_file():
        console.print(f"[red]File not found: {path}[/]")
        sys.exit(2)
    console.print(compute_file_fingerprint(path))


def _cmd_ingest(args: argparse.Namespace) -> None:
    path, data = _read_file(args.file)
    settings = get_settings()
    configure_logging(settings.log_level)

    async def _runner():
        async with lifespan(settings) as state:
            if args.create_schema:
                await create_schema(state["engine"])
            service = build_ingest_service(settings, state["session_factory"])
            try:
                return await service.ingest(
                    SourceImage(data=data),
                    ImageKind(args.kind),
                    Attribution(uploaded_by_account=args.uploaded_by),
                )
            finally:
                await service.aclose()

    try:
        outcome = asyncio.run(_runner())
    except IngestError as exc:
        console.print_json(data=exc.to_dict())
        sys.exit(4)

    record = outcome.record
    console.print_json(
        data={
            "file": str(path),
            "id": record.id,
            "url": record.url,
            "new": outcome.new,
            "stage": outcome.stage.value,
            "kind": outcome.kind.value,
            "width": record.width,
            "height": record.height,
            "file_size": record.file_size,
            "content_type": record.content_type,
        }
    )


def _cmd_drain(args: argparse.Namespace) -> None:
    from .workers.tasks import run_drain

    worker_count = args.worker_count or get_settings().migrate_worker_count or 1
    if not 0 <= args.worker_id < worker_count:
        console.print(f"[red]--worker-id must be in [0, {worker_count})[/]")
        sys.exit(2)
    counts = run_drain(worker_id=args.worker_id, worker_count=worker_count)

    table = Table(title=f"Migration queue (worker {args.worker_id}/{worker_count})")
    table.add_column("outcome")
    table.add_column("items", justify="right")
    for label, count in counts.items():
        table.add_row(label, str(count))
    console.print(table)


def _run_environment_check() -> None:
    """Check that the installed Pillow can decode and encode every supported format."""
    results = {label: bool(features.check(name)) for name, label in _CODEC_CHECKS.items()}

    console.rule("[bold]Environment Check")
    for label, ok in results.items():
        console.print(f"[bold]{label}[/]: {'✅' if ok else '❌'}")

    if not all(results.values()):
        console.print("[red]Missing codecs detected. Reinstall Pillow with libwebp/libjpeg/zlib support.[/]")
        sys.exit(1)
    console.print("[green]Environment looks good![/]")


if __name__ == "__main__":
    main()
