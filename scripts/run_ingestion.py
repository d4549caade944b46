#!/usr/bin/env python3
"""
Manual ingestion trigger.
Syncs the directory export into the vector index once and prints the run report.

Usage:
  python scripts/run_ingestion.py
  python scripts/run_ingestion.py --source ./data/directory.json --types member team
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from dotenv import load_dotenv

load_dotenv()

from husky.core.config import get_settings
from husky.core.errors import HuskyError
from husky.core.ingestion import IngestionPipeline, JsonDirectorySource
from husky.core.llm.client import LLMGateway, build_provider
from husky.core.models import SourceType
from husky.core.retrieval import FaissEngine, VectorIndex

logger = logging.getLogger(__name__)


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run one Husky ingestion pass")
    parser.add_argument("--source", type=Path, help="Directory export JSON file")
    parser.add_argument(
        "--types",
        nargs="+",
        choices=[t.value for t in SourceType],
        help="Collections to sync (default: all)",
    )
    return parser.parse_args()


async def main() -> int:
    args = parse_args()
    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level, format="%(asctime)s - %(levelname)s - %(message)s"
    )

    pipeline = IngestionPipeline(
        JsonDirectorySource(args.source or settings.directory_export_path),
        LLMGateway(build_provider(settings), settings),
        VectorIndex(FaissEngine(settings=settings)),
        settings,
    )
    try:
        report = await pipeline.run(args.types)
    except HuskyError as e:
        logger.error(f"Ingestion failed: {e}")
        return 1

    print(json.dumps(report.to_dict(), indent=2))
    return 1 if report.failed else 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
