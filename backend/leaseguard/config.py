"""Application configuration."""

import os
from pathlib import Path
from dotenv import load_dotenv

# Base paths
BASE_DIR = Path(__file__).resolve().parent.parent

# Load .env from backend root (before any os.getenv calls)
load_dotenv(BASE_DIR / ".env")
TEMP_DIR = BASE_DIR / "temp"
STORE_DIR = TEMP_DIR / "store"
PROMPTS_DIR = BASE_DIR / "prompts"
LEGAL_CATALOGUE_PATH = PROMPTS_DIR / "legal_catalogue.json"

# Model service (OpenAI-compatible chat completions)
# Leave TOGETHER_API_KEY empty to run fully offline on the deterministic fallback.
TOGETHER_API_KEY = os.getenv("TOGETHER_API_KEY", "")
LLM_BASE_URL = os.getenv("LLM_BASE_URL", "https://api.together.xyz/v1")
LLM_MODEL = os.getenv("LLM_MODEL", "meta-llama/Llama-4-Maverick-17B-128E-Instruct-FP8")
VISION_MODEL = os.getenv("VISION_MODEL", "meta-llama/Llama-4-Maverick-17B-128E-Instruct-FP8")
LLM_TIMEOUT = float(os.getenv("LLM_TIMEOUT", "120"))   # Seconds per call, no retries

# Generation defaults
LLM_DEFAULT_TEMPERATURE = 0.7
LLM_DEFAULT_MAX_TOKENS = 1000
STAGE_TEMPERATURE = 0.3          # Context / report / evaluation stages
STAGE_MAX_TOKENS = 4096

# Fallback policy: after a failed call the gateway answers locally for this long
FALLBACK_COOLDOWN_SECONDS = float(os.getenv("FALLBACK_COOLDOWN_SECONDS", "30"))

# Concurrency
COMPARISON_CONCURRENCY = int(os.getenv("COMPARISON_CONCURRENCY", "3"))  # Parallel damage comparisons

# Report / evaluation limits
EVALUATION_SUMMARY_MAX_CHARS = 150
REPORT_MIN_SECTION_MARKERS = 3   # Of the required headings, how many must appear

# Debug trace mode: set LEASEGUARD_TRACE=1 to log every recovery step
TRACE_ENABLED = os.getenv("LEASEGUARD_TRACE", "").strip().lower() in ("1", "true", "yes")

DEFAULT_JURISDICTION = "Switzerland"

SWISS_CANTONS = [
    "Aargau", "Appenzell Ausserrhoden", "Appenzell Innerrhoden", "Basel-Landschaft", "Basel-Stadt",
    "Bern", "Fribourg", "Geneva", "Glarus", "Graubünden", "Jura", "Lucerne", "Neuchâtel",
    "Nidwalden", "Obwalden", "Schaffhausen", "Schwyz", "Solothurn", "St. Gallen", "Thurgau",
    "Ticino", "Uri", "Valais", "Vaud", "Zug", "Zurich",
]
