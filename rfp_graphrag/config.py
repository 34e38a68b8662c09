import os
from dataclasses import dataclass
from pathlib import Path
from typing import Tuple

from dotenv import load_dotenv


# Load environment variables from a .env file if present.
load_dotenv()


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


@dataclass
class Settings:
    """Application configuration loaded from environment variables."""

    llm_base_url: str = "http://127.0.0.1:8000/v1"
    llm_api_key: str = "dummy"
    llm_model_name: str = "qwen-4b-instruct"
    llm_max_output_tokens: int = 1024
    llm_timeout_seconds: float = 60.0

    embedder_model_name: str = "sentence-transformers/all-MiniLM-L6-v2"
    embedder_device: str = "cpu"
    embedding_dimension: int = 384

    chunk_size: int = 500
    chunk_overlap: int = 50

    vector_store_root: Path = Path("./data/vectors")
    workflow_db_root: Path = Path("./data/workflows")
    upload_root: Path = Path("./data/uploads")

    # Tier order for the vector store: workflow, json, chroma, memory
    vector_backends: Tuple[str, ...] = ("workflow", "json", "chroma", "memory")
    chroma_host: str = "127.0.0.1"
    chroma_port: int = 8001

    neo4j_enabled: bool = False
    neo4j_uri: str = "bolt://127.0.0.1:7687"
    neo4j_username: str = "neo4j"
    neo4j_password: str = "password"
    neo4j_timeout_seconds: float = 15.0

    redis_url: str = ""
    redis_timeout_seconds: float = 2.0
    cache_workflow_ttl: int = 3600
    cache_list_ttl: int = 300

    search_vector_weight: float = 0.6
    search_graph_weight: float = 0.4
    search_timeout_seconds: float = 30.0

    stale_workflow_minutes: float = 10.0
    retry_stuck_minutes: float = 5.0
    repair_interval_seconds: float = 300.0

    agent_retry_attempts: int = 3
    agent_retry_delay_seconds: float = 1.0


_settings: Settings | None = None


def _ensure_directories(settings: Settings) -> None:
    """
    Ensure that important directories exist (created if missing).
    """
    settings.vector_store_root.mkdir(parents=True, exist_ok=True)
    settings.workflow_db_root.mkdir(parents=True, exist_ok=True)
    settings.upload_root.mkdir(parents=True, exist_ok=True)


def get_settings() -> Settings:
    """
    Return singleton Settings instance populated from environment variables.

    Environment variables (with reasonable defaults for local dev):
      - LLM_BASE_URL, LLM_API_KEY, LLM_MODEL_NAME, LLM_MAX_OUTPUT_TOKENS,
        LLM_TIMEOUT_SECONDS
      - EMBEDDER_MODEL_NAME, EMBEDDER_DEVICE, EMBEDDING_DIMENSION
      - CHUNK_SIZE, CHUNK_OVERLAP
      - DATA_ROOT, VECTOR_STORE_ROOT, WORKFLOW_DB_ROOT, UPLOAD_ROOT
      - VECTOR_BACKENDS (comma separated), CHROMA_HOST, CHROMA_PORT
      - NEO4J_ENABLED, NEO4J_URI, NEO4J_USERNAME, NEO4J_PASSWORD,
        NEO4J_TIMEOUT_SECONDS
      - REDIS_URL, REDIS_TIMEOUT_SECONDS, CACHE_WORKFLOW_TTL, CACHE_LIST_TTL
      - SEARCH_VECTOR_WEIGHT, SEARCH_GRAPH_WEIGHT, SEARCH_TIMEOUT_SECONDS
      - STALE_WORKFLOW_MINUTES, RETRY_STUCK_MINUTES, REPAIR_INTERVAL_SECONDS
      - AGENT_RETRY_ATTEMPTS, AGENT_RETRY_DELAY_SECONDS
    """
    global _settings
    if _settings is not None:
        return _settings

    data_root = Path(os.getenv("DATA_ROOT", "./data")).resolve()

    vector_backends = tuple(
        name.strip().lower()
        for name in os.getenv("VECTOR_BACKENDS", "workflow,json,chroma,memory").split(",")
        if name.strip()
    )

    _settings = Settings(
        llm_base_url=os.getenv("LLM_BASE_URL", "http://127.0.0.1:8000/v1"),
        llm_api_key=os.getenv("LLM_API_KEY", "dummy"),
        llm_model_name=os.getenv("LLM_MODEL_NAME", "qwen-4b-instruct"),
        llm_max_output_tokens=int(os.getenv("LLM_MAX_OUTPUT_TOKENS", "1024")),
        llm_timeout_seconds=float(os.getenv("LLM_TIMEOUT_SECONDS", "60")),
        embedder_model_name=os.getenv(
            "EMBEDDER_MODEL_NAME", "sentence-transformers/all-MiniLM-L6-v2"
        ),
        embedder_device=os.getenv("EMBEDDER_DEVICE", "cpu"),
        embedding_dimension=int(os.getenv("EMBEDDING_DIMENSION", "384")),
        chunk_size=int(os.getenv("CHUNK_SIZE", "500")),
        chunk_overlap=int(os.getenv("CHUNK_OVERLAP", "50")),
        vector_store_root=Path(
            os.getenv("VECTOR_STORE_ROOT", str(data_root / "vectors"))
        ).resolve(),
        workflow_db_root=Path(
            os.getenv("WORKFLOW_DB_ROOT", str(data_root / "workflows"))
        ).resolve(),
        upload_root=Path(
            os.getenv("UPLOAD_ROOT", str(data_root / "uploads"))
        ).resolve(),
        vector_backends=vector_backends,
        chroma_host=os.getenv("CHROMA_HOST", "127.0.0.1"),
        chroma_port=int(os.getenv("CHROMA_PORT", "8001")),
        neo4j_enabled=_env_bool("NEO4J_ENABLED", "false"),
        neo4j_uri=os.getenv("NEO4J_URI", "bolt://127.0.0.1:7687"),
        neo4j_username=os.getenv("NEO4J_USERNAME", "neo4j"),
        neo4j_password=os.getenv("NEO4J_PASSWORD", "password"),
        neo4j_timeout_seconds=float(os.getenv("NEO4J_TIMEOUT_SECONDS", "15")),
        redis_url=os.getenv("REDIS_URL", ""),
        redis_timeout_seconds=float(os.getenv("REDIS_TIMEOUT_SECONDS", "2")),
        cache_workflow_ttl=int(os.getenv("CACHE_WORKFLOW_TTL", "3600")),
        cache_list_ttl=int(os.getenv("CACHE_LIST_TTL", "300")),
        search_vector_weight=float(os.getenv("SEARCH_VECTOR_WEIGHT", "0.6")),
        search_graph_weight=float(os.getenv("SEARCH_GRAPH_WEIGHT", "0.4")),
        search_timeout_seconds=float(os.getenv("SEARCH_TIMEOUT_SECONDS", "30")),
        stale_workflow_minutes=float(os.getenv("STALE_WORKFLOW_MINUTES", "10")),
        retry_stuck_minutes=float(os.getenv("RETRY_STUCK_MINUTES", "5")),
        repair_interval_seconds=float(os.getenv("REPAIR_INTERVAL_SECONDS", "300")),
        agent_retry_attempts=int(os.getenv("AGENT_RETRY_ATTEMPTS", "3")),
        agent_retry_delay_seconds=float(os.getenv("AGENT_RETRY_DELAY_SECONDS", "1")),
    )

    _ensure_directories(_settings)
    return _settings


__all__ = ["Settings", "get_settings"]
