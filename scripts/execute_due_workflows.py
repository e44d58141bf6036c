"""
Run every workflow whose scheduled time has passed, once.
Meant to be invoked by cron (or any external scheduler) every few minutes.
"""
import argparse
import asyncio
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from serviceai.config import settings
from serviceai.container import build_services
from serviceai.utils.logging import setup_logging


async def execute_due_workflows(limit: int) -> int:
    services = build_services(settings)
    summary = await services.workflows.execute_due_workflows(limit=limit)

    print("=" * 70)
    print("⏰ DUE WORKFLOWS")
    print("=" * 70)
    print(f"Processed: {summary['processed']}")
    print(f"✅ Completed: {summary['completed']}")
    print(f"❌ Failed: {summary['failed']}")
    print(f"⏭️  Skipped: {summary['skipped']}")
    return 1 if summary["failed"] else 0


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Execute due SMS workflows")
    parser.add_argument("--limit", type=int, default=100, help="Maximum workflows to run")
    args = parser.parse_args()

    setup_logging()
    sys.exit(asyncio.run(execute_due_workflows(args.limit)))
