#!/usr/bin/env python3
"""Build the knowledge base artifact from sales material.

This script loads marketing_book.txt, chats.json, price_sheet.csv and
operations_log.jsonl from the RAG data directory (each optional), embeds
every text unit and writes knowledge_base.json.

Usage:
    python scripts/build_knowledge_index.py [--data-dir data/rag] [--output path]

Environment variables:
    GEMINI_API_KEY: Required for Google embeddings (default)
    OPENAI_API_KEY: Required if using OpenAI embeddings
    EMBEDDING_PROVIDER: "google" (default), "openai" or "none"
    EMBEDDING_MODEL: Optional explicit model, skips candidate probing
    EMBED_BATCH_SIZE / EMBED_BATCH_DELAY_MS / EMBED_MAX_RETRIES: Throttling
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from dotenv import load_dotenv

# Add backend directory to path for imports
backend_dir = Path(__file__).parent.parent
sys.path.insert(0, str(backend_dir))

for env_name in (".env.local", ".env"):
    env_path = backend_dir / env_name
    if env_path.exists():
        load_dotenv(env_path)
        print(f"Loaded environment from: {env_path}")


async def main(argv: list[str] | None = None) -> int:
    """Build the knowledge base."""
    from christy.core.config import get_settings
    from christy.knowledge.compiler import KnowledgeBaseCompiler
    from christy.knowledge.embeddings import EmbeddingClient
    from christy.knowledge.errors import ConfigurationError
    from christy.knowledge.providers import create_embedding_provider
    from christy.observability import configure_logging

    settings = get_settings()

    parser = argparse.ArgumentParser(description="Build the RAG knowledge base")
    parser.add_argument("--data-dir", default=settings.rag_data_dir, help="Input directory")
    parser.add_argument("--output", default=settings.knowledge_base_path, help="Artifact path")
    args = parser.parse_args(argv)

    configure_logging(settings)
    logger = logging.getLogger("build_knowledge_index")

    try:
        provider = create_embedding_provider(settings)
    except ConfigurationError as e:
        print(f"Error: {e}")
        return 1

    client = EmbeddingClient.from_settings(provider, settings) if provider else None
    if client is None:
        logger.warning("EMBEDDING_PROVIDER=none: building a lexical-only knowledge base")

    compiler = KnowledgeBaseCompiler.from_settings(client, settings)

    print(f"Loading sources from: {args.data_dir}")
    report = await compiler.compile(Path(args.data_dir), Path(args.output))

    print("\nEntries per source:")
    for source, count in sorted(report.counts.items()):
        print(f"  {source}: {count}")

    if report.skipped_sources:
        print(f"\nSkipped (not found): {', '.join(report.skipped_sources)}")

    if report.failures:
        print(f"\n{len(report.failures)} entries stored without embeddings:")
        for failure in report.failures:
            print(f"  {failure}")

    print(f"\nEmbedding model: {report.embedding_model or 'none'}")
    print(f"Knowledge base saved to {report.output_path} with {report.total_entries} entries.")
    return 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
