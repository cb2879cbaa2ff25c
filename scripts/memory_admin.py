"""Memory core maintenance commands.

Usage:
    python scripts/memory_admin.py rebuild-index
    python scripts/memory_admin.py backfill [--session S] [--batch-size 50]
    python scripts/memory_admin.py cleanup-memories SESSION [--keep-count N] [--min-importance N] [--dry-run]
    python scripts/memory_admin.py cleanup-conversations SESSION [--keep-days N] [--keep-count N]
    python scripts/memory_admin.py stats SESSION
    python scripts/memory_admin.py health

Reads configuration from the environment / .env like the service itself and
prints one JSON document per invocation.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from dataclasses import asdict
from pathlib import Path
from typing import TYPE_CHECKING, Any

# Allow `python scripts/memory_admin.py` from the repo root.
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from src.config.settings import get_settings  # noqa: E402
from src.core import create_memory_core  # noqa: E402
from src.infra.errors import LorekeeperError  # noqa: E402
from src.infra.logging import setup_logging  # noqa: E402

if TYPE_CHECKING:
    from src.core import MemoryCore


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Lorekeeper memory core maintenance")
    parser.add_argument("--log-level", default=None, help="Override LOG_LEVEL")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("rebuild-index", help="Re-index all active embedded memories")

    backfill_parser = subparsers.add_parser(
        "backfill", help="Embed memories missing a vector from the current model"
    )
    backfill_parser.add_argument("--session", default=None)
    backfill_parser.add_argument("--batch-size", type=int, default=None)

    cleanup_parser = subparsers.add_parser(
        "cleanup-memories", help="Apply the retention policy to one session"
    )
    cleanup_parser.add_argument("session")
    cleanup_parser.add_argument("--keep-count", type=int, default=None)
    cleanup_parser.add_argument("--min-importance", type=int, default=None)
    cleanup_parser.add_argument(
        "--dry-run", action="store_true", help="Report the plan without deactivating anything"
    )

    conv_parser = subparsers.add_parser(
        "cleanup-conversations", help="Delete old messages outside the retention window"
    )
    conv_parser.add_argument("session")
    conv_parser.add_argument("--keep-days", type=int, default=None)
    conv_parser.add_argument("--keep-count", type=int, default=None)

    stats_parser = subparsers.add_parser("stats", help="Memory and conversation stats")
    stats_parser.add_argument("session")

    subparsers.add_parser("health", help="Probe storage and the embedding provider")
    return parser


async def run_command(args: argparse.Namespace, core: MemoryCore) -> dict[str, Any]:
    """Execute one parsed command against a running core."""
    if args.command == "rebuild-index":
        return {"indexed": await core.store.rebuild_index()}
    if args.command == "backfill":
        report = await core.store.backfill_embeddings(
            session_id=args.session, batch_size=args.batch_size
        )
        return asdict(report)
    if args.command == "cleanup-memories":
        if args.dry_run:
            plan = await core.retention.evaluate(
                args.session, args.keep_count, args.min_importance
            )
            return {"dry_run": True, "keep": len(plan.keep_ids), "evict": plan.evict_ids}
        removed = await core.retention.cleanup_memories(
            args.session, args.keep_count, args.min_importance
        )
        return {"removed": removed}
    if args.command == "cleanup-conversations":
        removed = await core.conversations.cleanup_old_conversations(
            args.session, args.keep_days, args.keep_count
        )
        return {"removed": removed}
    if args.command == "stats":
        memory_stats = await core.store.get_stats(args.session)
        conversation_stats = await core.conversations.get_conversation_stats(args.session)
        return {"memory": asdict(memory_stats), "conversation": asdict(conversation_stats)}
    if args.command == "health":
        return await core.store.health_check()
    raise ValueError(f"unknown command: {args.command}")


async def _amain(args: argparse.Namespace) -> int:
    settings = get_settings()
    setup_logging(json_output=settings.log_json, log_level=args.log_level or settings.log_level)
    core = await create_memory_core(settings)
    try:
        result = await run_command(args, core)
    except LorekeeperError as exc:
        print(f"error [{exc.code}]: {exc}", file=sys.stderr)
        return 1
    finally:
        await core.close()
    print(json.dumps(result, indent=2, default=str))
    if args.command == "health" and result.get("status") != "healthy":
        return 1
    return 0


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    return asyncio.run(_amain(args))


if __name__ == "__main__":
    sys.exit(main())
