import sys
import time
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse, JSONResponse
from pydantic import BaseModel
from starlette.middleware.base import BaseHTTPMiddleware

import clients
from chat import ChatService
from completion import CompletionClient, build_data_source
from errors import TokenBudgetExceeded, is_rate_limit
from prompting import RATE_LIMIT_REPLY, SYSTEM_PROMPT, TOO_LARGE_REPLY, FallbackPolicy
from retriever import FieldMapping, Retriever
from settings import REQUIRED_SERVER_VARS, Settings, log_env_config, mask_key, missing_env_vars

logger = logging.getLogger("rag_app")

settings = Settings.from_env()

retriever: Optional[Retriever] = None
chat_service: Optional[ChatService] = None
_openai = None


# -----------------------------
# Helpers
# -----------------------------
def configure_logging(level: str) -> None:
    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    )
    root_logger.setLevel(level)
    root_logger.addHandler(handler)

    logging.getLogger("azure").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def field_mapping_from_settings(cfg: Settings) -> FieldMapping:
    mapping = FieldMapping()
    for name in reversed(cfg.content_fields):
        mapping = mapping.with_preferred(content=name)
    for name in reversed(cfg.title_fields):
        mapping = mapping.with_preferred(document=name)
    for name in reversed(cfg.page_fields):
        mapping = mapping.with_preferred(page=name)
    return mapping


def build_services(cfg: Settings) -> Tuple[Retriever, ChatService, Any]:
    openai = clients.openai_client(cfg)
    mapping = field_mapping_from_settings(cfg)
    search = Retriever(
        clients.async_search_client(cfg),
        index_name=cfg.search_index_name,
        field_mapping=mapping,
        top_k=cfg.top_k,
        max_content_chars=cfg.max_content_chars,
        use_semantic=cfg.use_semantic_search,
        semantic_configuration=cfg.semantic_configuration,
        query_language=cfg.query_language,
    )
    completion = CompletionClient(
        openai,
        deployment=cfg.openai_deployment,
        max_tokens=cfg.max_completion_tokens,
        temperature=cfg.temperature,
        correction_enabled=cfg.citation_correction,
        retry_attempts=cfg.retry_max_attempts,
        retry_base_delay=cfg.retry_base_delay,
        data_source=build_data_source(cfg, mapping) if cfg.use_data_feature else None,
    )
    service = ChatService(
        search,
        completion,
        fallback_policy=FallbackPolicy.parse(cfg.no_context_policy),
        model_token_limit=cfg.model_token_limit,
        reserved_completion_tokens=cfg.max_completion_tokens,
        fallback_query_words=cfg.fallback_query_words,
        hosted_retrieval=cfg.use_data_feature,
    )
    return search, service, openai


def _ensure_services() -> None:
    global retriever, chat_service, _openai
    if chat_service is None or retriever is None:
        retriever, chat_service, _openai = build_services(settings)


def get_chat_service() -> ChatService:
    _ensure_services()
    return chat_service


def get_retriever() -> Retriever:
    _ensure_services()
    return retriever


# -----------------------------
# FastAPI app
# -----------------------------
@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging(settings.log_level)
    log_env_config(settings)

    missing = missing_env_vars(REQUIRED_SERVER_VARS)
    if missing:
        for name in missing:
            logger.error("Environment variable %s is not set", name)
        raise RuntimeError(f"Missing required configuration: {', '.join(missing)}")

    _ensure_services()
    index_client = clients.async_search_index_client(settings)
    try:
        await retriever.load_schema(index_client)
    finally:
        await index_client.close()

    logger.info("System prompt configured with %d characters", len(SYSTEM_PROMPT))
    logger.info("Azure OpenAI deployment: %s", settings.openai_deployment)
    logger.info("Azure AI Search index: %s", settings.search_index_name)
    logger.info(
        "Retrieval strategy: %s",
        "hosted (your data)" if settings.use_data_feature else "manual search",
    )

    yield

    await retriever.close()
    if _openai is not None:
        await _openai.close()
    logger.info("Application shutdown")


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        start_time = time.time()
        response = await call_next(request)
        logger.info(
            "%s %s - %d (%.1f ms)",
            request.method,
            request.url.path,
            response.status_code,
            (time.time() - start_time) * 1000,
        )
        return response


app = FastAPI(title="Document Chat (Azure AI Search + Azure OpenAI)", lifespan=lifespan)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


class ChatRequest(BaseModel):
    message: Optional[str] = None


class Source(BaseModel):
    document: str
    page: int


class ChatResponse(BaseModel):
    reply: str
    sources: List[Source]


class FieldMappingRequest(BaseModel):
    contentField: Optional[str] = None
    titleField: Optional[str] = None
    pageField: Optional[str] = None


@app.get("/", response_class=HTMLResponse)
def root():
    html = """
<!doctype html>
<html>
<head>
  <meta charset="utf-8" />
  <title>Dokument-Chat</title>
  <style>
    :root { --bg: #f7f5ef; --panel: #ffffff; --ink: #1a1a1a; --muted: #5d5d5d; --line: #1d1d1d; --accent: #0f766e; }
    * { box-sizing: border-box; }
    body { font-family: "IBM Plex Mono", "Menlo", "Consolas", monospace; margin: 0; color: var(--ink); background: var(--bg); }
    header { padding: 14px 18px; background: var(--panel); border-bottom: 2px solid var(--line); display: flex; gap: 12px; align-items: center; }
    header b { font-size: 12px; letter-spacing: 0.12em; text-transform: uppercase; }
    #wrap { max-width: 900px; margin: 0 auto; padding: 16px; }
    #chat { height: 70vh; overflow: auto; background: var(--panel); border: 2px solid var(--line); padding: 12px; }
    .msg { margin: 12px 0; display: flex; }
    .bubble { padding: 10px 12px; max-width: 78%; white-space: pre-wrap; line-height: 1.35; border: 2px solid var(--line); }
    .user { justify-content: flex-end; }
    .user .bubble { background: #efefef; }
    .bot .bubble { border-style: dashed; }
    .sources { margin-top: 8px; font-size: 11px; color: var(--muted); }
    #bar { display: flex; gap: 10px; margin-top: 12px; }
    #input { flex: 1; padding: 10px 12px; border: 2px solid var(--line); outline: none; }
    #input:focus { border-color: var(--accent); }
    button { padding: 10px 12px; border: 2px solid var(--line); background: #ffffff; cursor: pointer; text-transform: uppercase; font-size: 11px; }
    .muted { color: var(--muted); font-size: 12px; }
  </style>
</head>
<body>
  <header><b>Dokument-Chat</b><span class="muted" id="status">Verbinde...</span></header>
  <div id="wrap">
    <div id="chat"></div>
    <div id="bar">
      <input id="input" placeholder="Frage stellen..." />
      <button id="send">Senden</button>
    </div>
  </div>
<script>
  function addMsg(role, text, sources) {
    const chat = document.getElementById('chat');
    const div = document.createElement('div');
    div.className = 'msg ' + role;
    const bubble = document.createElement('div');
    bubble.className = 'bubble';
    bubble.textContent = text;
    if (sources && sources.length) {
      const src = document.createElement('div');
      src.className = 'sources';
      src.textContent = 'Quellen:\\n' + sources.map(s => `- ${s.document}, Seite ${s.page}`).join('\\n');
      bubble.appendChild(src);
    }
    div.appendChild(bubble);
    chat.appendChild(div);
    chat.scrollTop = chat.scrollHeight;
  }

  async function send() {
    const inp = document.getElementById('input');
    const text = inp.value.trim();
    if (!text) return;
    inp.value = '';
    addMsg('user', text);
    try {
      const r = await fetch('/api/chat', {
        method: 'POST',
        headers: {'Content-Type': 'application/json'},
        body: JSON.stringify({ message: text })
      });
      const j = await r.json();
      addMsg('bot', j.reply || j.error || 'Keine Antwort.', j.sources || []);
    } catch (err) {
      addMsg('bot', 'Der Server ist nicht erreichbar.');
    }
  }

  document.getElementById('send').addEventListener('click', send);
  document.getElementById('input').addEventListener('keydown', (e) => { if (e.key === 'Enter') send(); });
  fetch('/health').then(r => r.json()).then(j => {
    document.getElementById('status').textContent = 'Server: ' + j.status;
  }).catch(() => { document.getElementById('status').textContent = 'Server nicht erreichbar'; });
</script>
</body>
</html>
        """
    return HTMLResponse(html)


@app.get("/health")
def health():
    return {"status": "ok", "timestamp": now_iso()}


@app.post("/api/chat", response_model=ChatResponse)
async def chat(req: Optional[ChatRequest] = None):
    msg = (req.message or "").strip() if req is not None else ""
    if not msg:
        return JSONResponse(status_code=400, content={"error": "Message is required"})

    try:
        result = await get_chat_service().answer(msg)
    except TokenBudgetExceeded as exc:
        logger.warning("Token budget exceeded: %s", exc)
        return JSONResponse(
            status_code=413,
            content={
                "error": "Zu viele Dokumente",
                "reply": TOO_LARGE_REPLY,
                "retry_suggestion": "Stellen Sie eine spezifischere Frage",
            },
        )
    except Exception as exc:
        if is_rate_limit(exc):
            logger.warning("Rate limit persisted after retries: %s", exc)
            return JSONResponse(
                status_code=429,
                content={
                    "error": "Anfragelimit erreicht",
                    "reply": RATE_LIMIT_REPLY,
                    "retry_after": "5 minutes",
                },
            )
        logger.exception("Chat request failed")
        return JSONResponse(
            status_code=500,
            content={"error": "Fehler bei der Antwort von Azure OpenAI API", "details": str(exc)},
        )

    return result.to_dict()


@app.get("/api/test-search")
async def test_search(q: str = "test query"):
    try:
        result = await get_retriever().retrieve(q)
    except Exception as exc:
        logger.exception("Test search failed")
        return JSONResponse(status_code=500, content={"error": "Error testing search", "details": str(exc)})

    return {
        "query": q,
        "documentCount": len(result.passages),
        "documents": [
            {"name": p.document_name, "page": p.page_number, "preview": p.content[:200] + "..."}
            for p in result.passages
        ],
    }


@app.get("/api/debug/search-config")
def search_config():
    resolved = retriever.resolved_fields if retriever is not None else None
    return {
        "endpoint": settings.search_endpoint,
        "indexName": settings.search_index_name,
        "keyPresent": bool(settings.search_api_key),
        "keyPreview": mask_key(settings.search_api_key),
        "semanticSearchEnabled": settings.use_semantic_search,
        "useDataFeature": settings.use_data_feature,
        "topK": settings.top_k,
        "maxContentChars": settings.max_content_chars,
        "noContextPolicy": settings.no_context_policy,
        "fieldMapping": resolved.to_dict() if resolved else None,
    }


@app.get("/api/debug/index-structure")
async def index_structure():
    try:
        return await get_retriever().inspect_index()
    except Exception as exc:
        logger.exception("Index structure check failed")
        return JSONResponse(
            status_code=500,
            content={
                "error": "Fehler beim Prüfen der Index-Struktur",
                "details": str(exc),
                "isConnected": False,
            },
        )


@app.post("/api/config/field-mapping")
def field_mapping(req: FieldMappingRequest):
    if not req.contentField:
        return JSONResponse(status_code=400, content={"error": "contentField ist erforderlich"})

    search = get_retriever()
    try:
        search.update_field_mapping(req.contentField, req.titleField, req.pageField)
    except ValueError as exc:
        return JSONResponse(status_code=400, content={"error": str(exc)})
    resolved = search.resolved_fields
    return {
        "success": True,
        "message": "Feldmappings erfolgreich aktualisiert",
        "mapping": resolved.to_dict() if resolved else None,
    }


# Entry point for: python app.py
if __name__ == "__main__":
    import uvicorn

    missing = missing_env_vars(REQUIRED_SERVER_VARS)
    if missing:
        configure_logging(settings.log_level)
        for name in missing:
            logger.error("Environment variable %s is not set", name)
        logger.error("Check your .env file and set all required variables.")
        sys.exit(1)

    uvicorn.run(app, host="0.0.0.0", port=settings.port)
