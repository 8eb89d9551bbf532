"""Build the persisted embedding artifact for the knowledge corpus.

Skips the work when the artifact already matches the corpus content and the
configured model. Run after editing any file under the corpus directory.
"""

import argparse
import logging
import sys
import time

from ai.embeddings import create_embedder
from ai.index import index_items, load_index, load_or_build_index
from be.config import settings
from be.corpus import JsonCorpusProvider
from be.errors import CorpusFatal
from be.logging_config import setup_logging
from be.vocabulary import Vocabulary

logger = logging.getLogger("build_embeddings")


def build(force: bool = False) -> bool:
    """Rebuild the artifact if needed; returns True when it was (re)written."""
    vocabulary = Vocabulary.default()
    corpus = JsonCorpusProvider(
        settings.corpus.directory,
        students_file=settings.corpus.students_file,
        alumni_file=settings.corpus.alumni_file,
        faculty_file=settings.corpus.faculty_file,
    ).load()
    embedder = create_embedder(settings.embeddings)
    cache_path = settings.embeddings.cache_path

    if not force:
        current = load_index(cache_path, index_items(corpus, vocabulary), model=embedder.model_id)
        if current is not None:
            logger.info(f"Embedding artifact is up to date ({current.content_hash}); use --force to rebuild")
            return False

    start = time.perf_counter()
    index = load_or_build_index(corpus, embedder, vocabulary, cache_path=cache_path, force=True)
    logger.info(f"Built {len(index)} embeddings in {time.perf_counter() - start:.1f}s: {index.stats()}")
    return True


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("--force", action="store_true", help="Rebuild even when the artifact is current")
    args = parser.parse_args()

    setup_logging(settings.logging)
    try:
        build(force=args.force)
    except CorpusFatal as e:
        logger.error(f"Cannot build embeddings: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
