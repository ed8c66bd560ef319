import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

import openai

from citations import Citation, extract_citations
from errors import CompletionError, TokenBudgetExceeded, is_context_length_error
from prompting import (
    CORRECTION_INSTRUCTION,
    GENERAL_KNOWLEDGE_LABEL,
    NO_INFORMATION_MARKER,
    SYSTEM_PROMPT,
)
from retriever import FieldMapping, truncate_content
from retry import with_retry
from settings import Settings

logger = logging.getLogger("rag_app.completion")

MIN_CORRECTABLE_LENGTH = 50


@dataclass
class CompletionResult:
    reply: str
    citations: List[Citation] = field(default_factory=list)
    corrected: bool = False


def build_data_source(settings: Settings, mapping: Optional[FieldMapping] = None) -> Dict[str, Any]:
    """Azure Search data source for the hosted ("on your data") retrieval mode."""
    mapping = mapping or FieldMapping()
    parameters: Dict[str, Any] = {
        "endpoint": settings.search_endpoint,
        "index_name": settings.search_index_name,
        "authentication": {"type": "api_key", "key": settings.search_api_key},
        "role_information": truncate_content(SYSTEM_PROMPT, 500),
        "top_n_documents": settings.top_k,
        "fields_mapping": {
            "content_fields": [mapping.content[0]],
            "title_field": mapping.document[0],
            "url_field": "document_url",
            "filepath_field": mapping.page[0],
        },
        "query_type": "semantic" if settings.use_semantic_search else "simple",
    }
    if settings.use_semantic_search:
        parameters["semantic_configuration"] = settings.semantic_configuration
    return {"type": "azure_search", "parameters": parameters}


def needs_correction(reply: str, citations: List[Citation]) -> bool:
    return (
        not citations
        and len(reply) > MIN_CORRECTABLE_LENGTH
        and NO_INFORMATION_MARKER not in reply
        and not reply.lstrip().startswith(GENERAL_KNOWLEDGE_LABEL)
    )


class CompletionClient:
    def __init__(
        self,
        client,
        deployment: str,
        max_tokens: int = 1000,
        temperature: float = 0.1,
        top_p: float = 0.95,
        correction_enabled: bool = True,
        retry_attempts: int = 3,
        retry_base_delay: float = 65.0,
        data_source: Optional[Dict[str, Any]] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._client = client
        self.deployment = deployment
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.top_p = top_p
        self.correction_enabled = correction_enabled
        self.retry_attempts = retry_attempts
        self.retry_base_delay = retry_base_delay
        self.data_source = data_source
        self._sleep = sleep

    async def _request(self, messages: List[Dict[str, str]], temperature: float) -> str:
        kwargs: Dict[str, Any] = {
            "model": self.deployment,
            "messages": messages,
            "max_tokens": self.max_tokens,
            "temperature": temperature,
            "top_p": self.top_p,
        }
        if self.data_source is not None:
            kwargs["extra_body"] = {"data_sources": [self.data_source]}

        async def call():
            return await self._client.chat.completions.create(**kwargs)

        try:
            resp = await with_retry(
                call,
                max_attempts=self.retry_attempts,
                base_delay=self.retry_base_delay,
                sleep=self._sleep,
            )
        except openai.BadRequestError as exc:
            if is_context_length_error(exc):
                raise TokenBudgetExceeded(message=str(exc)) from exc
            raise

        if not getattr(resp, "choices", None):
            raise CompletionError("Model response contained no choices")
        content = resp.choices[0].message.content
        if content is None:
            raise CompletionError("Model response contained no message content")
        return content

    async def complete(self, messages: List[Dict[str, str]]) -> CompletionResult:
        logger.info("Sending chat request to deployment %s", self.deployment)
        reply = await self._request(messages, self.temperature)
        logger.info("Model reply: %r", reply[:100])

        citations = extract_citations(reply)
        logger.info("%d unique citations extracted", len(citations))

        if not (self.correction_enabled and needs_correction(reply, citations)):
            return CompletionResult(reply=reply, citations=citations)

        logger.warning("Reply carries no citations, requesting a corrected answer")
        correction = list(messages) + [
            {"role": "assistant", "content": reply},
            {"role": "user", "content": CORRECTION_INSTRUCTION},
        ]
        try:
            corrected = await self._request(correction, 0.0)
        except (openai.OpenAIError, CompletionError, TokenBudgetExceeded) as exc:
            logger.error("Correction request failed, keeping original reply: %s", exc)
            return CompletionResult(reply=reply, citations=citations)

        corrected_citations = extract_citations(corrected)
        logger.info("%d citations after correction", len(corrected_citations))
        return CompletionResult(reply=corrected, citations=corrected_citations, corrected=True)
