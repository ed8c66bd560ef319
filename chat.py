import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from citations import Citation
from completion import CompletionClient
from errors import TokenBudgetExceeded
from prompting import (
    NO_INFORMATION_REPLY,
    SYSTEM_PROMPT,
    FallbackPolicy,
    assemble,
    check_budget,
    context_budget,
)
from retriever import RetrievalResult, Retriever

logger = logging.getLogger("rag_app.chat")


@dataclass
class ChatTurnContext:
    question: str
    context_text: str = ""
    estimated_tokens: int = 0


@dataclass
class ChatReply:
    reply: str
    sources: List[Citation] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"reply": self.reply, "sources": [s.to_dict() for s in self.sources]}


def simplify_query(question: str, words: int = 3) -> str:
    return " ".join(question.split()[:words])


class ChatService:
    """One chat turn: retrieve, assemble, complete, extract citations."""

    def __init__(
        self,
        retriever: Optional[Retriever],
        completion: CompletionClient,
        fallback_policy: FallbackPolicy = FallbackPolicy.STRICT,
        model_token_limit: int = 16000,
        reserved_completion_tokens: int = 1000,
        fallback_query_words: int = 3,
        hosted_retrieval: bool = False,
    ):
        if retriever is None and not hosted_retrieval:
            raise ValueError("A retriever is required unless hosted retrieval is enabled")
        self.retriever = retriever
        self.completion = completion
        self.fallback_policy = fallback_policy
        self.model_token_limit = model_token_limit
        self.reserved_completion_tokens = reserved_completion_tokens
        self.fallback_query_words = fallback_query_words
        self.hosted_retrieval = hosted_retrieval

    async def _retrieve_with_fallback(self, question: str, budget: int) -> RetrievalResult:
        result = await self.retriever.retrieve(question, budget)
        if result.passages or result.dropped:
            return result

        simple_query = simplify_query(question, self.fallback_query_words)
        if not simple_query or simple_query == question.strip():
            return result
        logger.info("No passages found, retrying with simplified query %r", simple_query)
        return await self.retriever.retrieve(simple_query, budget)

    async def answer(self, question: str) -> ChatReply:
        question = question.strip()
        logger.info("New chat question: %r", question)

        if self.hosted_retrieval:
            messages = [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": question},
            ]
            result = await self.completion.complete(messages)
            return ChatReply(reply=result.reply, sources=result.citations)

        budget = context_budget(question, self.model_token_limit, self.reserved_completion_tokens)
        retrieval = await self._retrieve_with_fallback(question, budget)

        if not retrieval.passages and retrieval.dropped:
            # passages exist but not even the first one fits next to the question
            raise TokenBudgetExceeded(
                message=f"{retrieval.dropped} passages found, none fits the {budget} token budget"
            )

        if not retrieval.passages and self.fallback_policy is FallbackPolicy.STRICT:
            logger.info("No relevant passages found")
            return ChatReply(reply=NO_INFORMATION_REPLY, sources=[])

        messages = assemble(question, retrieval.context_text, self.fallback_policy)
        turn = ChatTurnContext(
            question=question,
            context_text=retrieval.context_text,
            estimated_tokens=check_budget(
                messages, self.model_token_limit, self.reserved_completion_tokens
            ),
        )
        logger.debug(
            "Turn context: %d passages, %d context chars, ~%d tokens",
            len(retrieval.passages),
            len(turn.context_text),
            turn.estimated_tokens,
        )

        result = await self.completion.complete(messages)
        return ChatReply(reply=result.reply, sources=result.citations)
