import os
import logging
from dataclasses import dataclass, field
from typing import List, Optional

from dotenv import load_dotenv

DOTENV_LOADED = load_dotenv()
logger = logging.getLogger("rag_app")

SECRET_KEYS = {
    "AZURE_SEARCH_API_KEY",
    "AZURE_OPENAI_API_KEY",
    "AZURE_STORAGE_CONNECTION_STRING",
}

REQUIRED_SERVER_VARS = [
    "AZURE_OPENAI_API_KEY",
    "AZURE_OPENAI_ENDPOINT",
    "AZURE_OPENAI_DEPLOYMENT_NAME",
    "AZURE_SEARCH_ENDPOINT",
    "AZURE_SEARCH_API_KEY",
    "AZURE_SEARCH_INDEX_NAME",
]


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    return int(value)


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    return float(value)


def _env_list(name: str) -> List[str]:
    value = os.getenv(name) or ""
    return [v.strip() for v in value.split(",") if v.strip()]


def _format_env_value(key: str, value) -> str:
    if value is None:
        return "<unset>"
    if not isinstance(value, str):
        return str(value)
    if key in SECRET_KEYS:
        if value == "":
            return "<unset>"
        return f"****{value[-4:]}" if len(value) > 4 else "****"
    if value == "":
        return "<empty>"
    return value


def mask_key(value: Optional[str]) -> str:
    """Short preview of a key for diagnostics: first and last four characters."""
    if not value:
        return "Not Set"
    if len(value) <= 8:
        return "****"
    return f"{value[:4]}...{value[-4:]}"


@dataclass
class Settings:
    # Azure AI Search
    search_endpoint: Optional[str] = None
    search_api_key: Optional[str] = None
    search_index_name: str = "knowledge-index"
    use_semantic_search: bool = False
    semantic_configuration: str = "default"
    query_language: str = "de-de"

    # Azure OpenAI
    openai_endpoint: Optional[str] = None
    openai_api_key: Optional[str] = None
    openai_deployment: Optional[str] = None
    openai_api_version: str = "2024-02-01"
    use_data_feature: bool = False
    request_timeout: float = 120.0

    # Retrieval / prompt budget
    top_k: int = 3
    max_content_chars: int = 800
    model_token_limit: int = 16000
    max_completion_tokens: int = 1000
    temperature: float = 0.1
    citation_correction: bool = True
    no_context_policy: str = "strict"
    fallback_query_words: int = 3
    content_fields: List[str] = field(default_factory=list)
    title_fields: List[str] = field(default_factory=list)
    page_fields: List[str] = field(default_factory=list)

    # Rate limit handling
    retry_max_attempts: int = 3
    retry_base_delay: float = 65.0

    # Indexing
    storage_connection_string: Optional[str] = None
    storage_account: Optional[str] = None
    storage_container: str = "documents"
    documents_dir: str = "./documents"
    chunk_size: int = 1000
    chunk_overlap: int = 200
    export_dir: str = "./exports"

    # Process
    log_level: str = "INFO"
    port: int = 3000

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            search_endpoint=os.getenv("AZURE_SEARCH_ENDPOINT"),
            search_api_key=os.getenv("AZURE_SEARCH_API_KEY"),
            search_index_name=os.getenv("AZURE_SEARCH_INDEX_NAME", "knowledge-index"),
            use_semantic_search=_env_bool("USE_SEMANTIC_SEARCH", False),
            semantic_configuration=os.getenv("AZURE_SEARCH_SEMANTIC_CONFIG", "default"),
            query_language=os.getenv("AZURE_SEARCH_QUERY_LANGUAGE", "de-de"),
            openai_endpoint=os.getenv("AZURE_OPENAI_ENDPOINT"),
            openai_api_key=os.getenv("AZURE_OPENAI_API_KEY"),
            openai_deployment=os.getenv("AZURE_OPENAI_DEPLOYMENT_NAME"),
            openai_api_version=os.getenv("AZURE_OPENAI_API_VERSION", "2024-02-01"),
            use_data_feature=_env_bool("USE_AZURE_OPENAI_DATA_FEATURE", False),
            request_timeout=_env_float("REQUEST_TIMEOUT", 120.0),
            top_k=_env_int("RAG_TOP_K", 3),
            max_content_chars=_env_int("RAG_MAX_CONTENT_CHARS", 800),
            model_token_limit=_env_int("MODEL_TOKEN_LIMIT", 16000),
            max_completion_tokens=_env_int("MAX_COMPLETION_TOKENS", 1000),
            temperature=_env_float("OPENAI_TEMPERATURE", 0.1),
            citation_correction=_env_bool("CITATION_CORRECTION", True),
            no_context_policy=os.getenv("NO_CONTEXT_POLICY", "strict").strip().lower(),
            fallback_query_words=_env_int("FALLBACK_QUERY_WORDS", 3),
            content_fields=_env_list("FIELD_MAPPING_CONTENT"),
            title_fields=_env_list("FIELD_MAPPING_TITLE"),
            page_fields=_env_list("FIELD_MAPPING_PAGE"),
            retry_max_attempts=_env_int("RETRY_MAX_ATTEMPTS", 3),
            retry_base_delay=_env_float("RETRY_BASE_DELAY", 65.0),
            storage_connection_string=os.getenv("AZURE_STORAGE_CONNECTION_STRING"),
            storage_account=os.getenv("AZURE_STORAGE_ACCOUNT"),
            storage_container=os.getenv("AZURE_STORAGE_CONTAINER_NAME", "documents"),
            documents_dir=os.getenv("DOCUMENTS_DIR", "./documents"),
            chunk_size=_env_int("RAG_CHUNK_SIZE", 1000),
            chunk_overlap=_env_int("RAG_CHUNK_OVERLAP", 200),
            export_dir=os.getenv("EXPORT_DIR", "./exports"),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            port=_env_int("PORT", 3000),
        )

    @property
    def available_context_tokens(self) -> int:
        return self.model_token_limit - self.max_completion_tokens


def missing_env_vars(names: List[str]) -> List[str]:
    return [name for name in names if not os.getenv(name)]


def log_env_config(settings: Settings) -> None:
    values = {
        "AZURE_SEARCH_ENDPOINT": settings.search_endpoint,
        "AZURE_SEARCH_API_KEY": settings.search_api_key,
        "AZURE_SEARCH_INDEX_NAME": settings.search_index_name,
        "USE_SEMANTIC_SEARCH": settings.use_semantic_search,
        "AZURE_OPENAI_ENDPOINT": settings.openai_endpoint,
        "AZURE_OPENAI_API_KEY": settings.openai_api_key,
        "AZURE_OPENAI_DEPLOYMENT_NAME": settings.openai_deployment,
        "AZURE_OPENAI_API_VERSION": settings.openai_api_version,
        "USE_AZURE_OPENAI_DATA_FEATURE": settings.use_data_feature,
        "RAG_TOP_K": settings.top_k,
        "RAG_MAX_CONTENT_CHARS": settings.max_content_chars,
        "MODEL_TOKEN_LIMIT": settings.model_token_limit,
        "MAX_COMPLETION_TOKENS": settings.max_completion_tokens,
        "CITATION_CORRECTION": settings.citation_correction,
        "NO_CONTEXT_POLICY": settings.no_context_policy,
        "RETRY_MAX_ATTEMPTS": settings.retry_max_attempts,
        "RETRY_BASE_DELAY": settings.retry_base_delay,
        "FIELD_MAPPING_CONTENT": ",".join(settings.content_fields),
        "FIELD_MAPPING_TITLE": ",".join(settings.title_fields),
        "FIELD_MAPPING_PAGE": ",".join(settings.page_fields),
        "LOG_LEVEL": settings.log_level,
        "PORT": settings.port,
    }

    logger.info("dotenv loaded: %s", DOTENV_LOADED)
    logger.info("Environment configuration:")
    for key, value in values.items():
        logger.info("  %s=%s", key, _format_env_value(key, value))
