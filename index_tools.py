"""Read-only diagnostics over the search index: CSV export and size audit."""

import csv
import sys
import logging
import argparse
import pathlib
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

import clients
from settings import Settings, missing_env_vars
from tokens import count_tokens, estimate_tokens

logger = logging.getLogger("rag_app.index_tools")

EXPORT_COLUMNS = ["id", "content", "title", "filepath", "filename", "url", "chunk_id"]
LARGE_DOCUMENT_TOKENS = 10000
EXPORT_ORDER_BY = ["id"]


def _first(doc: Dict[str, Any], *names: str) -> Any:
    for name in names:
        value = doc.get(name)
        if value not in (None, ""):
            return value
    return ""


def normalize_export_row(doc: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": _first(doc, "id", "document_id"),
        "content": _first(doc, "content", "text"),
        "title": _first(doc, "title", "document_name"),
        "filepath": _first(doc, "filepath", "file_path", "page_number"),
        "filename": _first(doc, "filename", "file_name", "document_name"),
        "url": _first(doc, "url", "document_url"),
        "chunk_id": _first(doc, "chunk_id", "chunk_number", "id"),
    }


def export_filename(index_name: str, now: Optional[datetime] = None) -> str:
    now = now or datetime.now(timezone.utc)
    return f"{index_name}_export_{now.strftime('%Y-%m-%dT%H-%M-%S')}.csv"


def export_index_to_csv(
    search_client,
    index_name: str,
    export_dir: str,
    max_results: int = 1000,
) -> Tuple[pathlib.Path, int]:
    out_dir = pathlib.Path(export_dir)
    out_dir.mkdir(parents=True, exist_ok=True)

    results = search_client.search(search_text="*", top=max_results, order_by=EXPORT_ORDER_BY)
    rows: List[Dict[str, Any]] = []
    for i, result in enumerate(results, start=1):
        doc = {k: v for k, v in result.items() if not k.startswith("@search")}
        if i == 1:
            logger.info("Fields in first document: %s", list(doc.keys()))
        rows.append(normalize_export_row(doc))
        if i % 100 == 0:
            logger.info("%d documents processed...", i)

    path = out_dir / export_filename(index_name)
    with path.open("w", encoding="utf-8", newline="") as f:
        writer = csv.DictWriter(f, fieldnames=EXPORT_COLUMNS)
        writer.writeheader()
        writer.writerows(rows)

    logger.info("Exported %d documents to %s", len(rows), path)
    return path, len(rows)


def check_document_sizes(search_client, sample: int = 5) -> List[Dict[str, Any]]:
    results = search_client.search(search_text="*", top=sample)
    report: List[Dict[str, Any]] = []
    for result in results:
        doc = {k: v for k, v in result.items() if not k.startswith("@search")}
        content = doc.get("content") or ""
        estimated = estimate_tokens(content)
        report.append(
            {
                "title": _first(doc, "title", "filename", "document_name") or "Unknown",
                "content_length": len(content),
                "estimated_tokens": estimated,
                "exact_tokens": count_tokens(content),
                "fields": list(doc.keys()),
                "too_large": estimated > LARGE_DOCUMENT_TOKENS,
            }
        )
    return report


def _print_size_report(report: List[Dict[str, Any]]) -> None:
    for i, entry in enumerate(report, start=1):
        print(f"Document {i}:")
        print(f"  Title: {entry['title']}")
        print(f"  Content length: {entry['content_length']} characters")
        print(f"  Estimated tokens: ~{entry['estimated_tokens']} (exact: {entry['exact_tokens']})")
        print(f"  Fields: {', '.join(entry['fields'])}")
        print("---")
    if any(e["too_large"] for e in report):
        print(f"Some documents exceed {LARGE_DOCUMENT_TOKENS} tokens; re-index with smaller chunks.")


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Search index diagnostics.")
    sub = parser.add_subparsers(dest="command", required=True)
    export = sub.add_parser("export", help="export all documents as CSV")
    export.add_argument("--export-dir")
    export.add_argument("--max-results", type=int, default=1000)
    sizes = sub.add_parser("sizes", help="show content size of sample documents")
    sizes.add_argument("--sample", type=int, default=5)
    args = parser.parse_args(argv)

    settings = Settings.from_env()
    logging.basicConfig(level=settings.log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    missing = missing_env_vars(["AZURE_SEARCH_ENDPOINT", "AZURE_SEARCH_API_KEY"])
    if missing:
        for name in missing:
            logger.error("Environment variable %s is not set", name)
        return 1

    client = clients.search_client(settings)
    if args.command == "export":
        export_index_to_csv(
            client,
            settings.search_index_name,
            args.export_dir or settings.export_dir,
            max_results=args.max_results,
        )
    else:
        print(f"Checking document sizes in index: {settings.search_index_name}")
        _print_size_report(check_document_sizes(client, sample=args.sample))
    return 0


if __name__ == "__main__":
    sys.exit(main())
