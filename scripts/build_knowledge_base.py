#!/usr/bin/env python3
"""
Embed knowledge documents into per-category corpus files.
Usage: python scripts/build_knowledge_base.py [category]
"""

import asyncio
import sys

from assistant.config import settings
from assistant.logging_config import get_logger, setup_logging
from assistant.services.ai_service import generate_embedding
from assistant.services.knowledge_builder import build_all, build_category

logger = get_logger("scripts.build_knowledge_base")


async def main() -> int:
    setup_logging(settings.log_level)
    if not settings.openai_api_key:
        logger.error("OPENAI_API_KEY is not set")
        return 1

    if len(sys.argv) > 1:
        reports = [
            await build_category(
                settings.knowledge_source_dir,
                settings.knowledge_base_dir,
                sys.argv[1],
                generate_embedding,
            )
        ]
    else:
        reports = await build_all(settings.knowledge_source_dir, settings.knowledge_base_dir, generate_embedding)

    for report in reports:
        print(f"{report.category}: {len(report.new_files)} new file(s), {report.total_chunks} chunks")
    return 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
