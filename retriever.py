import re
import logging
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Iterable, List, Optional, Tuple

from azure.core.exceptions import AzureError

from tokens import estimate_tokens

logger = logging.getLogger("rag_app.retriever")

UNKNOWN_DOCUMENT = "Unbekanntes Dokument"
_LEADING_INT = re.compile(r"^\s*[+-]?(\d+)")


@dataclass
class RetrievedPassage:
    content: str
    document_name: str
    page_number: int


@dataclass
class RetrievalResult:
    context_text: str = ""
    passages: List[RetrievedPassage] = field(default_factory=list)
    estimated_tokens: int = 0
    dropped: int = 0


@dataclass
class ResolvedFields:
    content: Optional[str] = None
    document: Optional[str] = None
    page: Optional[str] = None

    def select(self) -> List[str]:
        names: List[str] = []
        for name in (self.content, self.document, self.page):
            if name and name not in names:
                names.append(name)
        return names

    def to_dict(self) -> Dict[str, Optional[str]]:
        return {"contentField": self.content, "titleField": self.document, "pageField": self.page}


@dataclass
class FieldMapping:
    """Ordered candidate field names per canonical passage attribute."""

    content: List[str] = field(default_factory=lambda: ["content", "text"])
    document: List[str] = field(default_factory=lambda: ["document_name", "filename", "title"])
    page: List[str] = field(default_factory=lambda: ["page_number", "page", "filepath"])
    content_keywords: Tuple[str, ...] = ("content", "text")
    document_keywords: Tuple[str, ...] = ("name", "title")
    page_keywords: Tuple[str, ...] = ("page",)

    def with_preferred(
        self,
        content: Optional[str] = None,
        document: Optional[str] = None,
        page: Optional[str] = None,
    ) -> "FieldMapping":
        def front(name: Optional[str], names: List[str]) -> List[str]:
            if not name:
                return list(names)
            return [name] + [n for n in names if n != name]

        return replace(
            self,
            content=front(content, self.content),
            document=front(document, self.document),
            page=front(page, self.page),
        )

    def resolve(self, available: Iterable[str]) -> ResolvedFields:
        names = [n for n in available if not n.startswith("@search")]
        return ResolvedFields(
            content=_pick_field(names, self.content, self.content_keywords),
            document=_pick_field(names, self.document, self.document_keywords),
            page=_pick_field(names, self.page, self.page_keywords),
        )


def _pick_field(names: List[str], candidates: List[str], keywords: Tuple[str, ...]) -> Optional[str]:
    for candidate in candidates:
        if candidate in names:
            return candidate
    for name in names:
        if any(k in name.lower() for k in keywords):
            return name
    return None


def parse_page(value: Any) -> int:
    if isinstance(value, bool):
        return 1
    if isinstance(value, int):
        return value if value > 0 else 1
    if isinstance(value, float):
        return int(value) if value >= 1 else 1
    if isinstance(value, str):
        match = _LEADING_INT.match(value)
        if match:
            page = int(match.group(1))
            return page if page > 0 else 1
    return 1


def _document_fields(result: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in result.items() if not k.startswith("@search")}


def format_passage(passage: RetrievedPassage) -> str:
    return f"Dokument: {passage.document_name}, S.{passage.page_number}: {passage.content}\n\n"


def truncate_content(content: str, max_chars: int) -> str:
    if max_chars and len(content) > max_chars:
        return content[:max_chars] + "..."
    return content


def assemble_context(
    passages: Iterable[RetrievedPassage],
    budget: Optional[int] = None,
    max_content_chars: int = 800,
) -> RetrievalResult:
    """
    Build the context block from ranked passages within a token budget.

    Every passage is cut to ``max_content_chars`` first. Passages are taken in
    rank order until the next one would push the estimate over ``budget``;
    the result is therefore always a prefix of the input.
    """
    result = RetrievalResult()
    parts: List[str] = []
    passages = list(passages)
    for i, passage in enumerate(passages):
        trimmed = replace(passage, content=truncate_content(passage.content, max_content_chars))
        entry = format_passage(trimmed)
        entry_tokens = estimate_tokens(entry)
        if budget is not None and result.estimated_tokens + entry_tokens > budget:
            result.dropped = len(passages) - i
            logger.warning(
                "Token budget reached, dropping %d passages (%d/%d)",
                result.dropped,
                result.estimated_tokens,
                budget,
            )
            break
        parts.append(entry)
        result.passages.append(trimmed)
        result.estimated_tokens += entry_tokens
    result.context_text = "".join(parts)
    return result


class Retriever:
    def __init__(
        self,
        search_client,
        index_name: str,
        field_mapping: Optional[FieldMapping] = None,
        top_k: int = 3,
        max_content_chars: int = 800,
        use_semantic: bool = False,
        semantic_configuration: str = "default",
        query_language: str = "de-de",
    ):
        self._client = search_client
        self.index_name = index_name
        self._mapping = field_mapping or FieldMapping()
        self.top_k = top_k
        self.max_content_chars = max_content_chars
        self.use_semantic = use_semantic
        self.semantic_configuration = semantic_configuration
        self.query_language = query_language
        self._schema_fields: Optional[List[str]] = None
        self._resolved: Optional[ResolvedFields] = None

    @property
    def field_mapping(self) -> FieldMapping:
        return self._mapping

    @property
    def resolved_fields(self) -> Optional[ResolvedFields]:
        return self._resolved

    async def load_schema(self, index_client) -> Optional[ResolvedFields]:
        """Resolve canonical fields against the index definition once."""
        try:
            index = await index_client.get_index(self.index_name)
        except AzureError as exc:
            logger.warning("Could not read index schema for %s: %s", self.index_name, exc)
            return None
        self._schema_fields = [f.name for f in index.fields]
        self._resolved = self._mapping.resolve(self._schema_fields)
        logger.info("Resolved index fields: %s", self._resolved.to_dict())
        return self._resolved

    def update_field_mapping(
        self,
        content: str,
        title: Optional[str] = None,
        page: Optional[str] = None,
    ) -> FieldMapping:
        """Put the given field names first; names absent from a known schema raise ValueError."""
        if self._schema_fields is not None:
            unknown = [n for n in (content, title, page) if n and n not in self._schema_fields]
            if unknown:
                logger.warning("Field mapping rejected, not in index %s: %s", self.index_name, unknown)
                raise ValueError(f"Unknown fields for index {self.index_name}: {', '.join(unknown)}")
        self._mapping = self._mapping.with_preferred(content=content, document=title, page=page)
        if self._schema_fields is not None:
            self._resolved = self._mapping.resolve(self._schema_fields)
        else:
            self._resolved = ResolvedFields(
                content=content,
                document=title or self._mapping.document[0],
                page=page or self._mapping.page[0],
            )
        logger.info("Field mapping updated: %s", self._resolved.to_dict())
        return self._mapping

    def _to_passage(self, doc: Dict[str, Any], fields: ResolvedFields) -> RetrievedPassage:
        content = doc.get(fields.content) if fields.content else None
        name = doc.get(fields.document) if fields.document else None
        page = doc.get(fields.page) if fields.page else None
        return RetrievedPassage(
            content=str(content) if content else "",
            document_name=str(name) if name else UNKNOWN_DOCUMENT,
            page_number=parse_page(page),
        )

    async def _search(self, query: str, minimal: bool) -> List[RetrievedPassage]:
        kwargs: Dict[str, Any] = {"search_text": query, "top": self.top_k}
        if not minimal:
            if self._resolved is not None:
                kwargs["select"] = self._resolved.select()
            if self.use_semantic:
                kwargs["query_type"] = "semantic"
                kwargs["semantic_configuration_name"] = self.semantic_configuration
                kwargs["query_language"] = self.query_language
            else:
                kwargs["query_type"] = "simple"

        results = await self._client.search(**kwargs)
        passages: List[RetrievedPassage] = []
        async for result in results:
            doc = _document_fields(result)
            if not doc:
                logger.warning("Search hit without document fields")
                continue
            if minimal or self._resolved is None:
                fields = self._mapping.resolve(doc.keys())
                if self._resolved is None and self._schema_fields is None:
                    self._resolved = fields
                    logger.debug("Fields resolved from first document: %s", fields.to_dict())
            else:
                fields = self._resolved
            passages.append(self._to_passage(doc, fields))
        return passages

    async def retrieve(self, query: str, budget: Optional[int] = None) -> RetrievalResult:
        logger.debug("Searching passages for: %r", query)
        try:
            passages = await self._search(query, minimal=False)
        except AzureError as exc:
            logger.error("Search failed: %s", exc)
            logger.warning("Retrying search without field selection or semantic ranking")
            try:
                passages = await self._search(query, minimal=True)
            except AzureError:
                logger.exception("Fallback search failed for index %s", self.index_name)
                return RetrievalResult()

        result = assemble_context(passages, budget, self.max_content_chars)
        logger.info(
            "%d passages retrieved (%d kept, ~%d tokens)",
            len(passages),
            len(result.passages),
            result.estimated_tokens,
        )
        return result

    async def inspect_index(self) -> Dict[str, Any]:
        results = await self._client.search(search_text="*", top=1)
        sample: Optional[Dict[str, Any]] = None
        field_names: List[str] = []
        total = 0
        async for result in results:
            total += 1
            if sample is None:
                sample = _document_fields(result)
                field_names = list(sample.keys())
        identified = self._mapping.resolve(field_names)
        return {
            "indexName": self.index_name,
            "documentsFound": total,
            "fieldNames": field_names,
            "identifiedFields": identified.to_dict(),
            "activeFields": self._resolved.to_dict() if self._resolved else None,
            "sampleDocument": sample,
            "isConnected": True,
        }

    async def close(self) -> None:
        await self._client.close()
