"""
Runtime settings for the asset inventory service
"""
import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

DATA_DIR = Path(os.getenv("DATA_DIR", Path(__file__).parent.parent / "data"))
EXPORTS_DIR = Path(os.getenv("EXPORTS_DIR", DATA_DIR / "exports"))
LOCAL_CACHE_PATH = Path(os.getenv("LOCAL_CACHE_PATH", DATA_DIR / "local_cache.json"))

# Optional backend auto-connect when nothing was saved from a previous run
SUPABASE_URL = os.getenv("SUPABASE_URL", "").rstrip("/")
SUPABASE_KEY = os.getenv("SUPABASE_KEY", "")

# Text completion
GEMINI_API_KEY = os.getenv("GEMINI_API_KEY") or os.getenv("API_KEY") or ""
GEMINI_MODEL = os.getenv("GEMINI_MODEL", "gemini-2.5-flash")
GEMINI_API_BASE = os.getenv("GEMINI_API_BASE", "https://generativelanguage.googleapis.com").rstrip("/")
CHAT_CONTEXT_LIMIT = int(os.getenv("CHAT_CONTEXT_LIMIT", "50"))

CHART_TOP_N = int(os.getenv("CHART_TOP_N", "15"))
FEED_HISTORY_LIMIT = int(os.getenv("FEED_HISTORY_LIMIT", "100"))

# Browser origins allowed to call the API with credentials
CORS_ORIGINS = [
    o.strip() for o in os.getenv("CORS_ORIGINS", "http://localhost:3000,http://localhost:5173").split(",") if o.strip()
]
SESSION_COOKIE = os.getenv("SESSION_COOKIE", "asset_ops_session")

HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", "8000"))


def ensure_data_dirs():
    """Create the data and export directories if missing."""
    DATA_DIR.mkdir(parents=True, exist_ok=True)
    EXPORTS_DIR.mkdir(parents=True, exist_ok=True)
