"""Configuration loading and defaults.

Reads from config.toml at the project root, with environment variable overrides.
"""

from __future__ import annotations

import os
import tomllib
from pathlib import Path

from dotenv import load_dotenv

# Look for .env in the package's parent directory (project root)
_project_root = Path(__file__).resolve().parent.parent
load_dotenv(_project_root / ".env")
load_dotenv()  # also check cwd

# ---------------------------------------------------------------------------
# Load config.toml
# ---------------------------------------------------------------------------

_toml_path = Path(os.getenv("GENFLOW_CONFIG", str(_project_root / "config.toml")))
_cfg: dict = {}
if _toml_path.exists():
    with open(_toml_path, "rb") as f:
        _cfg = tomllib.load(f)

_server = _cfg.get("server", {})
_storage = _cfg.get("storage", {})
_engine = _cfg.get("engine", {})
_defaults = _cfg.get("defaults", {})

# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------

DATA_DIR = Path(os.getenv("GENFLOW_DATA_DIR", _storage.get("data_dir", str(Path.cwd() / "data"))))
STORE_BACKEND = os.getenv("GENFLOW_STORE", _storage.get("backend", "memory"))  # memory | json

# ---------------------------------------------------------------------------
# Provider API keys (env-only, never in toml)
# ---------------------------------------------------------------------------

ANTHROPIC_API_KEY = os.getenv("ANTHROPIC_API_KEY", "")
OPENAI_API_KEY = os.getenv("OPENAI_API_KEY", "")
OPENAI_ORG_ID = os.getenv("OPENAI_ORG_ID", "")

PROVIDER_CREDENTIALS = {
    "anthropic": {"api_key": ANTHROPIC_API_KEY},
    "openai": {"api_key": OPENAI_API_KEY, "organization": OPENAI_ORG_ID},
}

# ---------------------------------------------------------------------------
# Global adaptor defaults: the last step of the resolution chain
# ---------------------------------------------------------------------------

DEFAULT_ADAPTOR = os.getenv("GENFLOW_DEFAULT_ADAPTOR", _defaults.get("adaptor", "anthropic"))
DEFAULT_TEXT_MODEL = os.getenv("GENFLOW_DEFAULT_TEXT_MODEL", _defaults.get("text_model", "claude-sonnet-4-5"))
DEFAULT_IMAGE_ADAPTOR = os.getenv("GENFLOW_DEFAULT_IMAGE_ADAPTOR", _defaults.get("image_adaptor", "openai"))
DEFAULT_IMAGE_MODEL = os.getenv("GENFLOW_DEFAULT_IMAGE_MODEL", _defaults.get("image_model", "gpt-image-1"))
DEFAULT_VIDEO_ADAPTOR = os.getenv("GENFLOW_DEFAULT_VIDEO_ADAPTOR", _defaults.get("video_adaptor", "openai"))
DEFAULT_VIDEO_MODEL = os.getenv("GENFLOW_DEFAULT_VIDEO_MODEL", _defaults.get("video_model", "sora-2"))

DEFAULT_ADAPTORS: dict[str, tuple[str, str]] = {
    "textGeneration": (DEFAULT_ADAPTOR, DEFAULT_TEXT_MODEL),
    "imageGeneration": (DEFAULT_IMAGE_ADAPTOR, DEFAULT_IMAGE_MODEL),
    "videoGeneration": (DEFAULT_VIDEO_ADAPTOR, DEFAULT_VIDEO_MODEL),
}

# ---------------------------------------------------------------------------
# Engine defaults
# ---------------------------------------------------------------------------

DEFAULT_NODE_TIMEOUT_MS = int(os.getenv("GENFLOW_NODE_TIMEOUT_MS", _engine.get("node_timeout_ms", 120000)))
DEFAULT_EXECUTION_TIMEOUT_MS = int(os.getenv("GENFLOW_EXECUTION_TIMEOUT_MS", _engine.get("execution_timeout_ms", 600000)))
DEFAULT_BACKOFF_MS = int(os.getenv("GENFLOW_BACKOFF_MS", _engine.get("backoff_ms", 1000)))
DEFAULT_BACKOFF_MULTIPLIER = float(os.getenv("GENFLOW_BACKOFF_MULTIPLIER", _engine.get("backoff_multiplier", 2.0)))
MAX_BACKOFF_MS = int(os.getenv("GENFLOW_MAX_BACKOFF_MS", _engine.get("max_backoff_ms", 30000)))
MAX_CONCURRENT_PER_PROVIDER = int(os.getenv("GENFLOW_MAX_PER_PROVIDER", _engine.get("max_concurrent_per_provider", 2)))
HEALTH_CHECK_TIMEOUT_MS = int(os.getenv("GENFLOW_HEALTH_CHECK_TIMEOUT_MS", _engine.get("health_check_timeout_ms", 10000)))
DEFAULT_TEMPERATURE = float(os.getenv("GENFLOW_TEMPERATURE", _engine.get("temperature", 0.7)))
DEFAULT_MAX_TOKENS = int(os.getenv("GENFLOW_MAX_TOKENS", _engine.get("max_tokens", 4096)))

# ---------------------------------------------------------------------------
# Server
# ---------------------------------------------------------------------------

SERVER_HOST = os.getenv("GENFLOW_HOST", _server.get("host", "0.0.0.0"))
SERVER_PORT = int(os.getenv("GENFLOW_PORT", _server.get("port", 8000)))
SEED_FILE = os.getenv("GENFLOW_SEED_FILE", _server.get("seed_file", ""))
