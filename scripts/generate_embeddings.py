#!/usr/bin/env python
"""Generate embeddings for every chunk that does not have one yet.

Usage:
    python scripts/generate_embeddings.py               # Embed pending chunks
    python scripts/generate_embeddings.py --status      # Only show status
    python scripts/generate_embeddings.py --batch-size 20
"""
import argparse
import asyncio
import sys
from datetime import datetime
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from docqa import config, db
from docqa.llm_client import OllamaClient
from docqa.rag.embeddings import EmbeddingClient
from docqa.rag.ingest import IngestPipeline
import structlog

logger = structlog.get_logger()


class ProgressReporter:
    """Simple progress reporter for CLI."""

    def __init__(self):
        self.start_time = None

    def start(self, message: str):
        self.start_time = datetime.now()
        print(f"\n{'=' * 60}")
        print(f"  {message}")
        print(f"{'=' * 60}\n")

    def update(self, processed: int, failed: int, total: int):
        done = processed + failed
        percentage = (done / total) * 100 if total > 0 else 0
        bar_length = 40
        filled = int(bar_length * done / total) if total > 0 else 0
        bar = "█" * filled + "░" * (bar_length - filled)

        print(
            f"\r  [{bar}] {percentage:5.1f}% ({done}/{total}) failed: {failed}",
            end="",
            flush=True,
        )

    def finish(self, result: dict):
        print("\n")
        elapsed_seconds = (datetime.now() - self.start_time).total_seconds()

        print(f"{'=' * 60}")
        print("  Embedding Generation Complete!")
        print(f"{'=' * 60}\n")
        print(f"  🧮 Chunks pending:   {result['total_chunks']}")
        print(f"  ✅ Embedded:         {result['processed']}")
        print(f"  ❌ Failed:           {result['failed']}")
        print(f"  📝 Still remaining:  {result['remaining']}")
        print(f"  ⏱️  Time elapsed:     {elapsed_seconds:.1f}s")

        if result["processed"] > 0 and elapsed_seconds > 0:
            rate = result["processed"] / elapsed_seconds
            print(f"  ⚡ Rate:             {rate:.1f} chunks/sec")

        print(f"\n{'=' * 60}\n")

        if result["failed"] > 0:
            print(f"⚠️  Warning: {result['failed']} chunk(s) failed to embed.")
            print("   Run the script again to retry them.\n")


def print_status(status: dict):
    print("\n📊 Embedding status:")
    print(f"   Total chunks:        {status['total_chunks']}")
    print(f"   With embeddings:     {status['chunks_with_embeddings']}")
    print(f"   Without embeddings:  {status['chunks_without_embeddings']}")
    print(f"   Completion:          {status['completion_percentage']}%\n")


async def main():
    """Main entry point for the embedding generation script."""
    parser = argparse.ArgumentParser(
        description="Generate embeddings for chunks that have none",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python scripts/generate_embeddings.py               # Embed pending chunks
  python scripts/generate_embeddings.py --status      # Only show status
        """,
    )

    parser.add_argument(
        "--status",
        action="store_true",
        help="Show embedding status and exit",
    )

    parser.add_argument(
        "--batch-size",
        type=int,
        default=config.EMBEDDING_BATCH_SIZE,
        help=f"Chunks per embedding request (default: {config.EMBEDDING_BATCH_SIZE})",
    )

    parser.add_argument(
        "--batch-delay",
        type=float,
        default=config.EMBEDDING_BATCH_DELAY,
        help=f"Seconds between batches (default: {config.EMBEDDING_BATCH_DELAY})",
    )

    args = parser.parse_args()

    try:
        db.init_database()

        if args.status:
            print_status(db.get_embedding_status())
            return

        print("\n📋 Configuration:")
        print(f"   Database:         {db.DB_PATH}")
        print(f"   Ollama:           {config.OLLAMA_BASE_URL}")
        print(f"   Embedding model:  {config.EMBEDDING_MODEL}")
        print(f"   Batch size:       {args.batch_size}")

        progress = ProgressReporter()
        progress.start("Generating Embeddings")

        embedding_client = EmbeddingClient(OllamaClient())
        pipeline = IngestPipeline(
            embedding_client,
            batch_size=args.batch_size,
            batch_delay=args.batch_delay,
        )

        result = await pipeline.generate_missing_embeddings(progress_callback=progress.update)
        progress.finish(result)

        if result["failed"] > 0:
            sys.exit(1)

    except KeyboardInterrupt:
        print("\n\n⚠️  Embedding generation cancelled by user.\n")
        sys.exit(1)

    except Exception as e:
        print(f"\n❌ Error: {e}\n")
        logger.error("embedding_script_failed", error=str(e), error_type=type(e).__name__)
        sys.exit(1)


if __name__ == "__main__":
    asyncio.run(main())
