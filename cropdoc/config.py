import os
from dotenv import load_dotenv

# Load environment variables
load_dotenv()


def _env_flag(name: str, default: str = "1") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


# ============================================================================#
# MODEL PROVIDER (OpenRouter)
# ============================================================================#
OPENROUTER_API_KEY = os.getenv("OPENROUTER_API_KEY")
OPENROUTER_BASE_URL = os.getenv("OPENROUTER_BASE_URL", "https://openrouter.ai/api/v1")
APP_REFERER = os.getenv("APP_REFERER", "https://cropdoc.local")
APP_TITLE = os.getenv("APP_TITLE", "CropDoc")

ANALYSIS_MODEL = os.getenv("ANALYSIS_MODEL", "google/gemini-3-pro-preview")
DEEP_DIVE_MODEL = os.getenv("DEEP_DIVE_MODEL", "google/gemini-3-flash-preview")
ASSISTANT_MODEL = os.getenv("ASSISTANT_MODEL", "google/gemini-3-flash-preview")

# Timeout configuration for API calls
API_TIMEOUT = float(os.getenv("API_TIMEOUT", "60"))  # seconds, whole call
API_CONNECT_TIMEOUT = float(os.getenv("API_CONNECT_TIMEOUT", "15"))  # seconds, connection only

# ============================================================================#
# HISTORY STORE
# ============================================================================#
MAX_HISTORY_ENTRIES = 20
HISTORY_RECORD_KEY = "crop_health_history"
HISTORY_BACKEND = os.getenv("HISTORY_BACKEND", "file")  # file | redis | supabase | memory
HISTORY_FILE = os.getenv("HISTORY_FILE", os.path.join("data", "crop_health_history.json"))
HISTORY_TABLE = os.getenv("HISTORY_TABLE", "history_records")

REDIS_URL = os.getenv("REDIS_URL")
UPSTASH_REDIS_REST_URL = os.getenv("UPSTASH_REDIS_REST_URL")
UPSTASH_REDIS_REST_TOKEN = os.getenv("UPSTASH_REDIS_REST_TOKEN")
SUPABASE_URL = os.getenv("SUPABASE_URL")
SUPABASE_KEY = os.getenv("SUPABASE_KEY")

# ============================================================================#
# SESSION BEHAVIOUR
# ============================================================================#
GUARD_STALE_RESULTS = _env_flag("GUARD_STALE_RESULTS")
DEMO_MODE_ENABLED = _env_flag("DEMO_MODE_ENABLED")

# Assistant configuration
ASSISTANT_HISTORY_WINDOW = 20  # Forward last 20 chat turns to the model

# ============================================================================#
# HTTP
# ============================================================================#
# Live sessions: idle expiry and hard cap (each holds its current image in memory)
SESSION_TTL = int(os.getenv("SESSION_TTL", "3600"))  # 1 hour since last use
MAX_SESSIONS = int(os.getenv("MAX_SESSIONS", "1000"))  # Maximum live sessions

ANALYZE_RATE_LIMIT = os.getenv("ANALYZE_RATE_LIMIT", "10/minute")
CHAT_RATE_LIMIT = os.getenv("CHAT_RATE_LIMIT", "30/minute")
MAX_IMAGE_BYTES = int(os.getenv("MAX_IMAGE_BYTES", str(10 * 1024 * 1024)))
