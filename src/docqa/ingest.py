from __future__ import annotations

import argparse
from dataclasses import replace
from pathlib import Path
import sys
import uuid

from docqa.config import get_settings
from docqa.db import Base, get_engine
from docqa.errors import DocQAError
from docqa.logging_config import configure_logging
from docqa.services.object_store import LocalObjectStore
from docqa.services.rag.embedding_client import OpenAICompatibleEmbeddingClient
from docqa.services.rag.extractor import PDF_CONTENT_TYPE, TEXT_CONTENT_TYPE
from docqa.services.rag.ingest import IngestionPipeline

_SUFFIX_CONTENT_TYPES = {
    ".pdf": PDF_CONTENT_TYPE,
    ".txt": TEXT_CONTENT_TYPE,
    ".md": TEXT_CONTENT_TYPE,
}


def _build_parser() -> argparse.ArgumentParser:
    settings = get_settings()

    parser = argparse.ArgumentParser(
        prog="docqa-ingest",
        description="Extract, chunk and embed one document into the search index",
    )
    parser.add_argument("--file", required=True, help="Path to a .pdf, .txt or .md document")
    parser.add_argument("--owner-id", required=True, help="Owner the document is registered to")
    parser.add_argument(
        "--document-id",
        default=None,
        help="Reprocess this document id instead of registering a new one",
    )
    parser.add_argument(
        "--chunk-size",
        type=int,
        default=settings.rag_chunk_size,
        help="Chunk size in characters",
    )
    parser.add_argument(
        "--chunk-overlap",
        type=int,
        default=settings.rag_chunk_overlap,
        help="Chunk overlap in characters",
    )
    parser.add_argument(
        "--create-tables",
        action="store_true",
        help="Create missing tables before ingesting (local sqlite setups)",
    )
    return parser


def main(argv: list[str] | None = None) -> None:
    parser = _build_parser()
    args = parser.parse_args(argv)

    settings = get_settings()
    configure_logging(settings.log_level)
    if args.chunk_size != settings.rag_chunk_size or args.chunk_overlap != settings.rag_chunk_overlap:
        settings = replace(
            settings,
            rag_chunk_size=args.chunk_size,
            rag_chunk_overlap=args.chunk_overlap,
        )

    path = Path(args.file)
    if not path.is_file():
        print(f"[docqa-ingest] file not found: {path}", file=sys.stderr, flush=True)
        raise SystemExit(2)

    engine = get_engine()
    if args.create_tables:
        Base.metadata.create_all(bind=engine)

    raw_bytes = path.read_bytes()
    document_id = args.document_id or uuid.uuid4().hex
    content_type = _SUFFIX_CONTENT_TYPES.get(path.suffix.lower())

    try:
        pipeline = IngestionPipeline(
            engine=engine,
            settings=settings,
            embedding_client=OpenAICompatibleEmbeddingClient(
                base_url=settings.embed_base_url,
                model=settings.embed_model,
                api_key=settings.llm_api_key,
                timeout_seconds=settings.upstream_timeout_seconds,
            ),
        )
        pipeline.validate_upload(raw_bytes, content_type)
        LocalObjectStore(Path(settings.object_store_dir)).put(document_id, raw_bytes)
        summary = pipeline.ingest(
            document_id,
            raw_bytes,
            args.owner_id,
            content_type=content_type,
        )
    except (DocQAError, ValueError) as exc:
        print(f"[docqa-ingest] failed: {exc}", file=sys.stderr, flush=True)
        raise SystemExit(1) from exc

    print(
        "[docqa-ingest] completed "
        f"document_id={summary.document_id} "
        f"pages={summary.total_pages} "
        f"chunks={summary.chunk_count} "
        f"duration_ms={summary.duration_ms}",
        flush=True,
    )


if __name__ == "__main__":
    main()
