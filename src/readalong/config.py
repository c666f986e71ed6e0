# /readalong/config.py
"""
Centralized configuration for the reading-companion core.
Includes model names, storage paths, retrieval tuning and note autosave timing.
"""
import os
from pathlib import Path
from dotenv import load_dotenv
from rich.console import Console
from .observability import configure_logging

# ==============================================================================
# CONSOLE & ENVIRONMENT
# ==============================================================================
console = Console()
load_dotenv()


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return bool(default)
    return str(raw).strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int, minimum: int = 1) -> int:
    raw = os.getenv(name)
    if raw is None:
        return int(default)
    try:
        value = int(raw)
    except ValueError:
        return int(default)
    return max(minimum, value)


def _env_float(name: str, default: float, minimum: float = 0.0) -> float:
    raw = os.getenv(name)
    if raw is None:
        return float(default)
    try:
        value = float(raw)
    except ValueError:
        return float(default)
    return max(float(minimum), value)


# ==============================================================================
# GLOBAL CONFIGURATION
# ==============================================================================
# --- Model Toggles ---
USE_API_LLM = _env_bool("USE_API_LLM", False)              # True for Groq API, False for local Ollama
LOCAL_MODEL_NAME = os.getenv("LOCAL_MODEL_NAME", "qwen2.5:7b")
API_MODEL_NAME = os.getenv("API_MODEL_NAME", "llama-3.3-70b-versatile")
EMBEDDING_MODEL_NAME = os.getenv("EMBEDDING_MODEL_NAME", "intfloat/multilingual-e5-small")
EMBEDDING_DEVICE = os.getenv("EMBEDDING_DEVICE", "cpu")
LLM_TEMPERATURE = _env_float("LLM_TEMPERATURE", 0.85, minimum=0.0)
LLM_MAX_TOKENS = _env_int("LLM_MAX_TOKENS", 1200, minimum=64)

# --- Path Configuration ---
# Data directory is at ../../data relative to this file (src/readalong/config.py)
_BASE_DIR = Path(__file__).resolve().parent.parent.parent
DATA_DIR = Path(os.getenv("READALONG_DATA_DIR", str(_BASE_DIR / "data")))

STUDY_HUB_DB_PATH = Path(os.getenv("STUDY_HUB_DB_PATH", str(DATA_DIR / "study_hub.sqlite")))
LIBRARY_DB_PATH = Path(os.getenv("LIBRARY_DB_PATH", str(DATA_DIR / "library.sqlite")))
RAG_INDEX_DB_PATH = Path(os.getenv("RAG_INDEX_DB_PATH", str(DATA_DIR / "rag_index.sqlite")))

# --- Chunking Configuration ---
CHUNK_SIZE = _env_int("CHUNK_SIZE", 512, minimum=64)
CHUNK_OVERLAP = _env_int("CHUNK_OVERLAP", 64, minimum=0)
if CHUNK_OVERLAP >= CHUNK_SIZE:
    CHUNK_OVERLAP = max(0, CHUNK_SIZE // 8)
MIN_CHUNK_TEXT_LENGTH = _env_int("MIN_CHUNK_TEXT_LENGTH", 20, minimum=1)
EMBED_BATCH_SIZE = _env_int("EMBED_BATCH_SIZE", 8, minimum=1)
KEYWORD_BOOST_WEIGHT = _env_float("KEYWORD_BOOST_WEIGHT", 0.08, minimum=0.0)
MAX_QUERY_TERMS = _env_int("MAX_QUERY_TERMS", 12, minimum=1)
DEFAULT_SEARCH_TOP_K = _env_int("DEFAULT_SEARCH_TOP_K", 5, minimum=1)
DEFAULT_SEARCH_PER_BOOK_TOP_K = _env_int("DEFAULT_SEARCH_PER_BOOK_TOP_K", 2, minimum=1)

# --- Retrieval Tuning ---
COMMENT_RETRIEVAL_TOP_K = _env_int("COMMENT_RETRIEVAL_TOP_K", 3, minimum=1)
QUIZ_RETRIEVAL_TOP_K = _env_int("QUIZ_RETRIEVAL_TOP_K", 5, minimum=1)
CANDIDATE_MULTIPLIER = _env_int("CANDIDATE_MULTIPLIER", 6, minimum=1)
GLOBAL_CANDIDATES_PER_BOOK = _env_int("GLOBAL_CANDIDATES_PER_BOOK", 8, minimum=1)
GLOBAL_FALLBACK_PER_BOOK = _env_int("GLOBAL_FALLBACK_PER_BOOK", 2, minimum=1)
RETRIEVAL_QUERY_MAX_CHARS = _env_int("RETRIEVAL_QUERY_MAX_CHARS", 1200, minimum=64)
CHUNK_SEPARATOR = "\n---\n"

# --- Prompt Context ---
READING_EXCERPT_CHARS = _env_int("READING_EXCERPT_CHARS", 3000, minimum=0)

# --- Notebook / Thread / Quiz ---
MAX_SUMMON_CHARACTERS = _env_int("MAX_SUMMON_CHARACTERS", 3, minimum=1)
NOTE_AUTOSAVE_DELAY_S = _env_float("NOTE_AUTOSAVE_DELAY_S", 0.8, minimum=0.0)
OVERALL_COMMENT_PLACEHOLDER = os.getenv("OVERALL_COMMENT_PLACEHOLDER", "(Overall comment unavailable.)")

# --- Create necessary directories ---
DATA_DIR.mkdir(parents=True, exist_ok=True)
LOG_PATH = Path(os.getenv("LOG_PATH", str(DATA_DIR / "readalong.log")))
LOG_PATH.parent.mkdir(parents=True, exist_ok=True)
configure_logging(LOG_PATH)
