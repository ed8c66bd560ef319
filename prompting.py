import enum
import logging
from typing import Dict, List

from errors import TokenBudgetExceeded
from tokens import estimate_tokens

logger = logging.getLogger("rag_app.prompting")

SYSTEM_PROMPT = (
    "Du bist ein präziser Recherche-Assistent. Du antwortest ausschließlich auf Deutsch "
    "und nur mit Informationen aus den bereitgestellten Dokumentausschnitten.\n\n"
    "Hinter jeder Information steht die Quelle in Klammern, exakt im Format "
    "(Quelle: Dokumentname, Seite X). Eine Information ohne Quellenangabe darfst du nicht nennen.\n\n"
    "Beispiel: \"Die Bank setzt einen Chatbot im Wissensmanagement ein. "
    "(Quelle: Jahresbericht 2024, Seite 4)\"\n\n"
    "Gliedere die Antwort in kurze Absätze und stelle das Wichtigste an den Anfang. "
    "Erfinde nichts. Enthalten die Ausschnitte keine Antwort, schreibe genau: "
    "\"In den verfügbaren Dokumenten konnte ich keine Informationen zu dieser Frage finden.\""
)

NO_INFORMATION_REPLY = "In den verfügbaren Dokumenten konnte ich keine Informationen zu dieser Frage finden."
NO_INFORMATION_MARKER = "keine Informationen zu dieser Frage finden"
GENERAL_KNOWLEDGE_LABEL = "Allgemeine Information (nicht aus den Dokumenten):"

CORRECTION_INSTRUCTION = (
    "Deine Antwort enthält keine Quellenangaben. Bitte wiederhole die gleiche Antwort, "
    "aber füge bei jeder Information die Quelle mit Seitenzahl im Format "
    "(Quelle: Dokumentname, Seite X) hinzu."
)

TOO_LARGE_REPLY = (
    "Die Anfrage betrifft zu viele oder zu umfangreiche Dokumente. Bitte stellen Sie "
    "eine spezifischere Frage, um genauere Ergebnisse zu erhalten."
)

RATE_LIMIT_REPLY = (
    "Ich kann derzeit leider keine Antwort geben, da das Anfragelimit erreicht ist. "
    "Bitte versuchen Sie es in einigen Minuten erneut."
)


class FallbackPolicy(str, enum.Enum):
    """What to do when retrieval found nothing."""

    STRICT = "strict"
    GENERAL_KNOWLEDGE = "general"

    @classmethod
    def parse(cls, value: str) -> "FallbackPolicy":
        try:
            return cls((value or "strict").strip().lower())
        except ValueError:
            raise ValueError(f"Unknown fallback policy {value!r}; use 'strict' or 'general'") from None


def prompt_skeleton(question: str) -> str:
    return f"Frage: {question}\nDokumentenkontext:\n"


def build_user_prompt(
    question: str,
    context_text: str,
    policy: FallbackPolicy = FallbackPolicy.STRICT,
) -> str:
    if context_text:
        return (
            "Beantworte die Frage nur mit den folgenden Dokumentausschnitten und nenne "
            "zu jeder Information Dokumentname und Seitenzahl.\n\n"
            + prompt_skeleton(question)
            + context_text
        )
    if policy is FallbackPolicy.GENERAL_KNOWLEDGE:
        return (
            f"Frage: {question}\n\n"
            "In den verfügbaren Dokumenten wurden keine passenden Ausschnitte gefunden. "
            "Du darfst mit allgemeinem Wissen antworten, musst die Antwort aber mit "
            f"\"{GENERAL_KNOWLEDGE_LABEL}\" beginnen und darfst "
            "keine Quellenangaben erfinden."
        )
    return f"Frage: {question}\n\nEs wurden keine Dokumentausschnitte gefunden."


def assemble(
    question: str,
    context_text: str,
    policy: FallbackPolicy = FallbackPolicy.STRICT,
    system_prompt: str = SYSTEM_PROMPT,
) -> List[Dict[str, str]]:
    return [
        {"role": "system", "content": system_prompt},
        {"role": "user", "content": build_user_prompt(question, context_text, policy)},
    ]


def estimate_messages(messages: List[Dict[str, str]]) -> int:
    return sum(estimate_tokens(m.get("content") or "") for m in messages)


def check_budget(
    messages: List[Dict[str, str]],
    model_token_limit: int,
    reserved_completion_tokens: int,
) -> int:
    """Raise TokenBudgetExceeded if the prompt leaves no room for the completion."""
    available = model_token_limit - reserved_completion_tokens
    estimated = estimate_messages(messages)
    logger.info("Estimated prompt tokens: %d (available %d)", estimated, available)
    if estimated > available:
        raise TokenBudgetExceeded(estimated, available)
    return estimated


def context_budget(question: str, model_token_limit: int, reserved_completion_tokens: int) -> int:
    """Tokens left for retrieved context once system prompt and question are placed."""
    fixed = estimate_tokens(SYSTEM_PROMPT) + estimate_tokens(build_user_prompt(question, " "))
    return max(0, model_token_limit - reserved_completion_tokens - fixed)
