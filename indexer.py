"""
Offline document indexer.

Reads documents from a local directory, optionally uploads the originals to
Azure Blob Storage, splits them into page-aware chunks and pushes the chunks
into the Azure AI Search index (creating or upgrading the index first).

Usage:
    python indexer.py [--documents-dir DIR] [--index-name NAME] [--no-blob]
"""

import re
import sys
import time
import logging
import argparse
import pathlib
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from azure.core.exceptions import HttpResponseError, ResourceExistsError
from azure.search.documents.indexes.models import (
    SearchableField,
    SearchFieldDataType,
    SearchIndex,
    SemanticConfiguration,
    SemanticField,
    SemanticPrioritizedFields,
    SemanticSearch,
    SimpleField,
)

import clients
from chunking import ALLOWED_EXTS, chunk_document, extract_document
from settings import Settings, missing_env_vars

logger = logging.getLogger("rag_app.indexer")

BATCH_SIZE = 100
SEMANTIC_CONFIG_NAME = "default"


@dataclass
class IndexingOutcome:
    key: str
    succeeded: bool
    error_message: Optional[str] = None
    status_code: Optional[int] = None


def index_fields() -> List[Any]:
    return [
        SimpleField(name="id", type=SearchFieldDataType.String, key=True, sortable=True),
        SearchableField(name="content", type=SearchFieldDataType.String),
        SearchableField(
            name="document_name",
            type=SearchFieldDataType.String,
            filterable=True,
            sortable=True,
            facetable=True,
        ),
        SimpleField(name="document_url", type=SearchFieldDataType.String),
        SimpleField(
            name="page_number",
            type=SearchFieldDataType.Int32,
            filterable=True,
            sortable=True,
            facetable=True,
        ),
        SimpleField(name="paragraph_number", type=SearchFieldDataType.Int32, filterable=True, sortable=True),
        SimpleField(name="chunk_number", type=SearchFieldDataType.Int32, filterable=True, sortable=True),
    ]


def build_index(name: str, semantic: bool = True) -> SearchIndex:
    semantic_search = None
    if semantic:
        semantic_search = SemanticSearch(
            configurations=[
                SemanticConfiguration(
                    name=SEMANTIC_CONFIG_NAME,
                    prioritized_fields=SemanticPrioritizedFields(
                        title_field=SemanticField(field_name="document_name"),
                        content_fields=[SemanticField(field_name="content")],
                        keywords_fields=[],
                    ),
                )
            ]
        )
    return SearchIndex(name=name, fields=index_fields(), semantic_search=semantic_search)


def _semantic_unsupported(exc: HttpResponseError) -> bool:
    return "semantic" in str(exc).lower() or getattr(exc, "status_code", None) == 400


def ensure_index(index_client, name: str) -> bool:
    """Create or update the index. Returns whether semantic ranking is configured."""
    logger.info("Creating/updating index %s with semantic configuration", name)
    try:
        index_client.create_or_update_index(build_index(name, semantic=True))
        logger.info("Index %s ready (semantic ranking enabled)", name)
        return True
    except HttpResponseError as exc:
        if not _semantic_unsupported(exc):
            logger.error("Index creation failed: %s", exc)
            raise
        logger.warning("Semantic configuration rejected (%s); creating plain index", exc)

    index_client.create_or_update_index(build_index(name, semantic=False))
    logger.info("Index %s ready (without semantic ranking)", name)
    return False


def upload_batch(search_client, records: List[Dict[str, Any]], batch_size: int = BATCH_SIZE) -> List[IndexingOutcome]:
    batch_size = max(1, min(batch_size, BATCH_SIZE))
    outcomes: List[IndexingOutcome] = []
    total_batches = (len(records) + batch_size - 1) // batch_size

    for i in range(0, len(records), batch_size):
        batch = records[i : i + batch_size]
        results = search_client.upload_documents(documents=batch)
        logger.info(
            "Batch %d/%d uploaded: %d records processed",
            i // batch_size + 1,
            total_batches,
            len(results),
        )
        for r in results:
            outcome = IndexingOutcome(
                key=r.key,
                succeeded=bool(r.succeeded),
                error_message=getattr(r, "error_message", None),
                status_code=getattr(r, "status_code", None),
            )
            if not outcome.succeeded:
                logger.warning("Record %s failed: %s", outcome.key, outcome.error_message)
            outcomes.append(outcome)

    return outcomes


def blob_name_for(filename: str) -> str:
    return re.sub(r"\s+", "_", filename)


def upload_original(container, path: pathlib.Path, data: bytes) -> str:
    blob_client = container.get_blob_client(blob_name_for(path.name))
    blob_client.upload_blob(data, overwrite=True)
    logger.info("  Uploaded to %s", blob_client.url)
    return blob_client.url


def index_documents(
    settings: Settings,
    index_client,
    search_client,
    container=None,
    documents_dir: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Index every supported file below ``documents_dir``.

    A file that fails to extract or upload is logged and skipped; index
    creation failures abort the run.
    """
    t0 = time.time()
    root = pathlib.Path(documents_dir or settings.documents_dir)
    if not root.exists():
        logger.info("Creating documents directory %s", root)
        root.mkdir(parents=True, exist_ok=True)

    ensure_index(index_client, settings.search_index_name)

    if container is not None:
        try:
            container.create_container()
            logger.info("Created blob container %s", settings.storage_container)
        except ResourceExistsError:
            pass

    files = sorted(p for p in root.iterdir() if p.is_file())
    if not files:
        logger.info("No documents found in %s", root)

    indexed = skipped = failed = chunks_total = records_failed = 0

    for path in files:
        if path.suffix.lower() not in ALLOWED_EXTS:
            logger.warning("Skipping unsupported file %s", path.name)
            skipped += 1
            continue

        logger.info("Processing %s", path.name)
        try:
            data = path.read_bytes()
            url = upload_original(container, path, data) if container is not None else ""
            document = extract_document(path.name, data)
            chunks = chunk_document(document, settings.chunk_size, settings.chunk_overlap)
            records = [c.to_record(url) for c in chunks]
            logger.info("  %d chunks from %d pages", len(records), document.page_count)
            outcomes = upload_batch(search_client, records)
        except Exception:
            logger.exception("Failed to index %s", path.name)
            failed += 1
            continue

        indexed += 1
        chunks_total += len(records)
        records_failed += sum(1 for o in outcomes if not o.succeeded)

    return {
        "ok": failed == 0 and records_failed == 0,
        "indexed_files": indexed,
        "skipped_files": skipped,
        "failed_files": failed,
        "chunks": chunks_total,
        "failed_records": records_failed,
        "seconds": round(time.time() - t0, 2),
    }


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Index local documents into Azure AI Search.")
    parser.add_argument("--documents-dir", help="directory with PDF/DOCX/TXT/MD/HTML files")
    parser.add_argument("--index-name", help="search index to create/update")
    parser.add_argument("--no-blob", action="store_true", help="do not upload originals to Blob Storage")
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    settings = Settings.from_env()
    logging.basicConfig(level=settings.log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    if args.index_name:
        settings.search_index_name = args.index_name

    required = ["AZURE_SEARCH_ENDPOINT", "AZURE_SEARCH_API_KEY"]
    upload_to_blob = not args.no_blob
    if upload_to_blob:
        required.append("AZURE_STORAGE_CONNECTION_STRING")
    missing = missing_env_vars(required)
    if missing:
        for name in missing:
            logger.error("Environment variable %s is not set", name)
        return 1

    container = None
    if upload_to_blob:
        container = clients.blob_service_client(settings).get_container_client(settings.storage_container)

    summary = index_documents(
        settings,
        index_client=clients.search_index_client(settings),
        search_client=clients.search_client(settings),
        container=container,
        documents_dir=args.documents_dir,
    )
    logger.info("Indexing finished: %s", summary)
    return 0 if summary["ok"] else 1


if __name__ == "__main__":
    sys.exit(main())
