"""Application configuration with sensible defaults."""
import os
from pathlib import Path

# Paths
BASE_DIR = Path(__file__).parent.parent
DATA_DIR = Path(os.getenv("DATA_DIR", str(BASE_DIR / "data")))
DOCS_DIR = Path(os.getenv("DOCS_DIR", str(BASE_DIR / "docs")))

# Model backend (Ollama). An empty base URL or model name leaves the backend unconfigured.
OLLAMA_BASE_URL = os.getenv("OLLAMA_BASE_URL", "http://localhost:11434")
OLLAMA_API_KEY = os.getenv("OLLAMA_API_KEY")  # Optional bearer token for hosted gateways
CHAT_MODEL = os.getenv("CHAT_MODEL", "gemma3:12b")
EMBEDDING_MODEL = os.getenv("EMBEDDING_MODEL", "mxbai-embed-large:latest")
BACKEND_TIMEOUT = float(os.getenv("BACKEND_TIMEOUT", "60.0"))

# Chunking (character-based to avoid tokenizer inconsistencies)
CHUNK_SIZE = int(os.getenv("CHUNK_SIZE", "1000"))
CHUNK_OVERLAP = int(os.getenv("CHUNK_OVERLAP", "200"))

# Embedding batches
EMBEDDING_BATCH_SIZE = int(os.getenv("EMBEDDING_BATCH_SIZE", "10"))
EMBEDDING_BATCH_DELAY = float(os.getenv("EMBEDDING_BATCH_DELAY", "0.1"))  # seconds

# Retrieval for live questions
RETRIEVAL_TOP_K = int(os.getenv("RETRIEVAL_TOP_K", "8"))
RETRIEVAL_MIN_SIMILARITY = float(os.getenv("RETRIEVAL_MIN_SIMILARITY", "0.2"))

# Semantic response cache
CACHE_SIMILARITY_THRESHOLD = float(os.getenv("CACHE_SIMILARITY_THRESHOLD", "0.75"))
CACHE_WINDOW = int(os.getenv("CACHE_WINDOW", "500"))
CACHE_TTL_SECONDS = int(os.getenv("CACHE_TTL_SECONDS", str(7 * 24 * 3600)))
CACHE_MIN_CONFIDENCE = float(os.getenv("CACHE_MIN_CONFIDENCE", "0.7"))

# Agent-reply learning; stricter than the cache threshold since merges are permanent
DUPLICATE_THRESHOLD = float(os.getenv("DUPLICATE_THRESHOLD", "0.85"))

# Escalation
ESCALATION_THRESHOLD = float(os.getenv("ESCALATION_THRESHOLD", "0.7"))

# Conversation context
HISTORY_LIMIT = int(os.getenv("HISTORY_LIMIT", "20"))
HISTORY_WINDOW = int(os.getenv("HISTORY_WINDOW", "12"))
MAX_MESSAGE_LENGTH = int(os.getenv("MAX_MESSAGE_LENGTH", "2000"))
MAX_UPLOAD_BYTES = int(os.getenv("MAX_UPLOAD_BYTES", str(10 * 1024 * 1024)))

# URL import
URL_IMPORT_TIMEOUT = float(os.getenv("URL_IMPORT_TIMEOUT", "15.0"))
MIN_PAGE_TEXT = int(os.getenv("MIN_PAGE_TEXT", "50"))  # characters of body text

# Database
DB_PATH = Path(os.getenv("DB_PATH", str(DATA_DIR / "supportdesk.sqlite")))

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
