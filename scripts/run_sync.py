"""
Command line entry point for the sync orchestrator

Usage:
    python scripts/run_sync.py run --type daily [--time-budget 240]
    python scripts/run_sync.py resume <orchestrator_id>
    python scripts/run_sync.py chunk players_import --max-pages 2 [--continue-from TOKEN]
    python scripts/run_sync.py stop
    python scripts/run_sync.py status [--type history --limit 20]
    python scripts/run_sync.py serve [--host 0.0.0.0 --port 8000]
"""

import argparse
import asyncio
import json
import sys
import os
import logging
import uvicorn

# Add current directory to path to allow imports from core, models, etc.
sys.path.append(os.getcwd())

from core.config import settings
from core.database import dispose_engine
from core.exceptions import SyncError
from core.logging import setup_logging
from ingestion.runtime import build_runtime
from models.base import SyncType, StageName, ExecutionType, ExecutionStatus

setup_logging()
logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="MFL marketplace sync")
    commands = parser.add_subparsers(dest="command", required=True)

    run = commands.add_parser("run", help="Start a new sync run")
    run.add_argument("--type", choices=[t.value for t in SyncType], default=SyncType.DAILY.value)
    run.add_argument("--time-budget", type=float, default=None, help="Pause after this many seconds")

    resume = commands.add_parser("resume", help="Continue a paused run")
    resume.add_argument("orchestrator_id")
    resume.add_argument("--time-budget", type=float, default=None)

    chunk = commands.add_parser("chunk", help="Run one chunk of a chunkable stage")
    chunk.add_argument("stage", choices=[s.value for s in StageName])
    chunk.add_argument("--max-pages", type=int, default=None)
    chunk.add_argument("--continue-from", default=None)
    chunk.add_argument("--force", action="store_true")

    commands.add_parser("stop", help="Cancel every running execution")

    status = commands.add_parser("status", help="Show sync status")
    status.add_argument("--type", choices=["current", "latest", "history", "stats"], default="current")
    status.add_argument("--limit", type=int, default=10)

    serve = commands.add_parser("serve", help="Run the HTTP API (and the scheduler when enabled)")
    serve.add_argument("--host", default=settings.API_HOST)
    serve.add_argument("--port", type=int, default=settings.API_PORT)

    return parser


def _print(payload):
    print(json.dumps(payload, indent=2, default=str))


async def main(args: argparse.Namespace) -> int:
    runtime = build_runtime()
    orchestrator = runtime.orchestrator

    try:
        if args.command == "run":
            result = await orchestrator.run(
                SyncType(args.type),
                execution_type=ExecutionType.MANUAL,
                triggered_by="cli",
                time_budget_seconds=args.time_budget,
            )
            _print({
                "orchestratorId": result.orchestrator_id,
                "executionId": result.execution_id,
                "status": result.status.value,
                "isComplete": result.is_complete,
                "successfulStages": f"{result.successful_stages}/{result.total_stages}",
                "errors": result.errors,
            })
            return 0 if result.status != ExecutionStatus.FAILED else 1

        if args.command == "resume":
            result = await orchestrator.resume(args.orchestrator_id, time_budget_seconds=args.time_budget)
            _print({
                "orchestratorId": result.orchestrator_id,
                "status": result.status.value,
                "isComplete": result.is_complete,
                "errors": result.errors,
            })
            return 0 if result.status != ExecutionStatus.FAILED else 1

        if args.command == "chunk":
            run = await orchestrator.run_chunk(
                StageName(args.stage),
                max_pages=args.max_pages,
                continue_from=args.continue_from,
                force=args.force,
            )
            _print({
                "executionId": run.execution_id,
                "status": run.status.value,
                "isComplete": run.result.is_complete,
                "continueFrom": run.result.continue_from,
                "recordsProcessed": run.result.records_processed,
                "recordsFailed": run.result.records_failed,
            })
            return 0 if run.status != ExecutionStatus.FAILED else 1

        if args.command == "stop":
            stopped = await orchestrator.stop()
            _print({"stoppedExecutions": stopped.stopped_executions, "executionIds": stopped.execution_ids})
            return 0

        view = await orchestrator.status(args.type, args.limit)
        _print({
            key: (
                [v.model_dump(mode="json") for v in value] if isinstance(value, list)
                else value.model_dump(mode="json") if hasattr(value, "model_dump")
                else value
            )
            for key, value in view.items()
        })
        return 0

    except SyncError as e:
        logger.error(f"Sync command failed: {e}")
        return 2

    finally:
        await runtime.aclose()
        await dispose_engine()


if __name__ == "__main__":
    args = build_parser().parse_args()
    if args.command == "serve":
        # uvicorn owns the event loop; the app builds its own runtime at startup
        uvicorn.run("api.main:app", host=args.host, port=args.port, log_config=None)
        sys.exit(0)
    sys.exit(asyncio.run(main(args)))
