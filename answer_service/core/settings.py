import json
import os
from dataclasses import dataclass, field
from typing import Any, Dict


def _split_items(raw: str) -> list[str]:
    return [item.strip() for item in raw.split(",") if item.strip()]


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int, minimum: int = 0) -> int:
    try:
        return max(minimum, int(os.getenv(name, str(default))))
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, str(default)))
    except ValueError:
        return default


def _env_json(name: str) -> Dict[str, Dict[str, Any]]:
    raw = os.getenv(name, "").strip()
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except Exception:
        return {}
    if not isinstance(parsed, dict):
        return {}
    return {str(key): value for key, value in parsed.items() if isinstance(value, dict)}


@dataclass
class Settings:
    store_owner: str
    storage_backend: str
    db_host: str
    db_port: int
    db_name: str
    db_user: str
    db_password: str
    db_connect_timeout_ms: int
    retrieval_mode: str
    os_url: str
    knowledge_vec_alias: str
    embed_url: str
    embed_model: str
    retrieval_top_k: int
    retrieval_timeout_ms: int
    llm_provider: str
    llm_base_url: str
    llm_api_key: str
    llm_model: str
    llm_timeout_ms: int
    llm_max_tokens: int
    llm_temperature: float
    stream_token_delay_ms: int
    cleaner_window: int
    stop_markers: list[str]
    audit_log_path: str
    log_level: str
    cors_origins: list[str]
    debug_log_question: bool
    model_providers: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    embedding_providers: Dict[str, Dict[str, Any]] = field(default_factory=dict)


def load_settings() -> Settings:
    storage_backend = os.getenv("ANS_STORAGE_BACKEND", "memory").strip().lower()
    if storage_backend not in {"memory", "mysql"}:
        storage_backend = "memory"
    retrieval_mode = os.getenv("ANS_RETRIEVAL_MODE", "memory").strip().lower()
    if retrieval_mode not in {"memory", "opensearch"}:
        retrieval_mode = "memory"
    return Settings(
        store_owner=os.getenv("ANS_STORE_OWNER", "admin").strip() or "admin",
        storage_backend=storage_backend,
        db_host=os.getenv("ANS_DB_HOST", "127.0.0.1").strip(),
        db_port=_env_int("ANS_DB_PORT", 3306, minimum=1),
        db_name=os.getenv("ANS_DB_NAME", "casibase").strip(),
        db_user=os.getenv("ANS_DB_USER", "casibase").strip(),
        db_password=os.getenv("ANS_DB_PASSWORD", "casibase"),
        db_connect_timeout_ms=_env_int("ANS_DB_CONNECT_TIMEOUT_MS", 500, minimum=50),
        retrieval_mode=retrieval_mode,
        os_url=os.getenv("ANS_OS_URL", "http://localhost:9200").rstrip("/"),
        knowledge_vec_alias=os.getenv("ANS_KNOWLEDGE_VEC_ALIAS", "knowledge_vec_read"),
        embed_url=os.getenv("ANS_EMBED_URL", "http://localhost:8005").rstrip("/"),
        embed_model=os.getenv("ANS_EMBED_MODEL", "embed_default"),
        retrieval_top_k=_env_int("ANS_RETRIEVAL_TOP_K", 5, minimum=1),
        retrieval_timeout_ms=_env_int("ANS_RETRIEVAL_TIMEOUT_MS", 5000, minimum=1),
        llm_provider=os.getenv("ANS_LLM_PROVIDER", "toy").strip().lower(),
        llm_base_url=os.getenv("ANS_LLM_BASE_URL", "http://localhost:11434/v1").rstrip("/"),
        llm_api_key=os.getenv("ANS_LLM_API_KEY", ""),
        llm_model=os.getenv("ANS_LLM_MODEL", "toy-answer-v1").strip() or "toy-answer-v1",
        llm_timeout_ms=_env_int("ANS_LLM_TIMEOUT_MS", 120000, minimum=1),
        llm_max_tokens=_env_int("ANS_LLM_MAX_TOKENS", 1024),
        llm_temperature=_env_float("ANS_LLM_TEMPERATURE", 0.2),
        stream_token_delay_ms=_env_int("ANS_STREAM_TOKEN_DELAY_MS", 0),
        cleaner_window=_env_int("ANS_CLEANER_WINDOW", 6),
        stop_markers=_split_items(os.getenv("ANS_STOP_MARKERS", "<STOP>,</s>")),
        audit_log_path=os.getenv("ANS_AUDIT_LOG_PATH", "var/answer_service/audit.log"),
        log_level=os.getenv("ANS_LOG_LEVEL", "INFO").strip().upper() or "INFO",
        cors_origins=_split_items(os.getenv("ANS_CORS_ALLOW_ORIGINS", "")),
        debug_log_question=_env_bool("ANS_DEBUG_LOG_QUESTION", "false"),
        model_providers=_env_json("ANS_MODEL_PROVIDERS_JSON"),
        embedding_providers=_env_json("ANS_EMBEDDING_PROVIDERS_JSON"),
    )


SETTINGS = load_settings()
