import asyncio
import logging
import sys
from pathlib import Path
from typing import List

# Ensure project root is on sys.path so that 'graph_brain' can be imported
CURRENT_DIR = Path(__file__).resolve().parent
PROJECT_ROOT = CURRENT_DIR.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from graph_brain.config import get_settings
from graph_brain.engine import BrainEngine


async def run(text_paths: List[Path], collection: str, question: str) -> None:
    logger = logging.getLogger(__name__)
    settings = get_settings()
    logger.info("NEO4J_URI=%s", settings.neo4j_uri)
    logger.info("EMBEDDING_BACKEND=%s", settings.embedding_backend)

    engine = BrainEngine.from_settings(settings)
    try:
        await engine.repository.ensure_unique_id_constraint()
        for path in text_paths:
            logger.info("Extracting graph from %s", path)
            extracted = await engine.ingest_text(collection, path.read_text(encoding="utf-8"))
            print(
                f"{path.name}: {len(extracted.nodes)} node(s), "
                f"{len(extracted.relationships)} relationship(s)"
            )

        if question:
            result = await engine.query(collection, question)
            print("\n=== Graph context ===")
            print("Nodes:", ", ".join(result.context.nodes))
            for edge in result.context.edges:
                print("  ", edge)
            print("\n=== Answer ===")
            print(result.answer)
    finally:
        engine.close()


def main() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        force=True,
    )

    if len(sys.argv) < 2:
        print(
            "Usage: python scripts/graphrag_from_text.py <file1.txt> [<file2.txt> ...] "
            "[--collection NAME] [--question 'text']"
        )
        sys.exit(1)

    text_paths: List[Path] = []
    collection = "documents"
    question = ""
    args_iter = iter(sys.argv[1:])
    for arg in args_iter:
        if arg in ("--collection", "--question"):
            try:
                value = next(args_iter)
            except StopIteration:
                print(f"ERROR: {arg} flag provided but no value given.")
                sys.exit(1)
            if arg == "--collection":
                collection = value
            else:
                question = value
        else:
            text_paths.append(Path(arg))

    for p in text_paths:
        if not p.is_file():
            print(f"ERROR: File not found: {p}")
            sys.exit(1)

    asyncio.run(run(text_paths, collection, question))


if __name__ == "__main__":
    main()
