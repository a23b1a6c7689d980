import os

from dotenv import load_dotenv

# ------------------ ENV & CONFIG ------------------
load_dotenv()

# Keys are checked when a generator is built, so the pipeline can be imported
# (and tested) without credentials.
GEMINI_API_KEY = os.getenv("GEMINI_API_KEY") or os.getenv("API_KEY")
FAL_API_KEY = os.getenv("FAL_API_KEY")

# "gemini" (default) or "fal"
IMAGE_GEN_PROVIDER = os.getenv("IMAGE_GEN_PROVIDER", "gemini").lower()

# Models (override via env if your account uses different names)
NANO_IMAGE_MODEL = os.getenv("NANO_IMAGE_MODEL", "gemini-2.5-flash-image")
FAL_IMAGE_MODEL = os.getenv("FAL_IMAGE_MODEL", "fal-ai/nano-banana")
FAL_EDIT_MODEL = os.getenv("FAL_EDIT_MODEL", "fal-ai/nano-banana/edit")

PANEL_COUNT = int(os.getenv("PANEL_COUNT", "20"))
BLANK_PANEL_SIZE = int(os.getenv("BLANK_PANEL_SIZE", "1024"))
BLANK_PANEL_COLOR = "white"
DEFAULT_STYLE = "Korean Webtoon Style, High Quality, Detailed"

# 0-1 lossy hint for the composite and placeholder JPEGs
STITCH_QUALITY = float(os.getenv("STITCH_QUALITY", "0.95"))
COMPOSITE_MIME = "image/jpeg"
DOWNLOAD_NAME = "nano-webtoon.jpg"

# Used when the provider does not report a MIME type for its image
FALLBACK_MIME = "image/png"

# Seconds; unset or 0 waits indefinitely on the provider
GENERATION_TIMEOUT = float(os.getenv("GENERATION_TIMEOUT", "0")) or None

PRINT_PROMPTS = os.getenv("PRINT_PROMPTS", "1") == "1"
PROMPT_LOG_FILE = os.getenv("PROMPT_LOG_FILE")

HOST = os.getenv("HOST", "127.0.0.1")
PORT = int(os.getenv("PORT", "5001"))
