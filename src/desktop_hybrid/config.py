"""Configuration for the hybrid desktop engine."""

import os
from pathlib import Path
from typing import Any, Dict, Tuple

from dotenv import load_dotenv

from .models import EngineConfig, ProviderConfig, RunMode

# Load environment variables from a .env file when present.
load_dotenv()

CONTROL_TOOL = os.getenv("DESKTOP_HYBRID_TOOL", "agent-browser")

DEFAULT_ENDPOINT = os.getenv("DESKTOP_HYBRID_ENDPOINT", "9222")

DEFAULT_TIMEOUT_MS = int(os.getenv("DESKTOP_HYBRID_TIMEOUT_MS", "30000"))

DEFAULT_MODE = os.getenv("DESKTOP_HYBRID_MODE", RunMode.HYBRID.value).lower()

BRIDGE_DIR = Path(os.getenv("DESKTOP_HYBRID_BRIDGE_DIR", ".agent-test-screenshots"))

SCREENSHOT_DIR = Path(os.getenv("DESKTOP_HYBRID_SCREENSHOT_DIR", "screenshots"))

BRIDGE_RESPONSE_VAR = "AGENT_VLM_RESPONSE"

DEFAULT_MODELS: Dict[str, str] = {
    "anthropic": "claude-sonnet-4-20250514",
    "openai": "gpt-4o",
    "volcengine": "doubao-1-5-vision-pro",
    "doubao": "doubao-1-5-vision-pro",
    "agent": "host-agent",
}

FALLBACK_MODEL = "gpt-4o"

DEFAULT_BASE_URLS: Dict[str, str] = {
    "volcengine": "https://ark.cn-beijing.volces.com/api/v3",
    "doubao": "https://ark.cn-beijing.volces.com/api/v3",
}

API_KEY_ENV_VARS: Dict[str, Tuple[str, ...]] = {
    "anthropic": ("ANTHROPIC_API_KEY",),
    "openai": ("OPENAI_API_KEY",),
    "volcengine": ("VOLCENGINE_API_KEY", "DOUBAO_API_KEY"),
    "doubao": ("DOUBAO_API_KEY", "VOLCENGINE_API_KEY"),
    "custom": ("CUSTOM_VLM_API_KEY",),
}

DEFAULT_MAX_TOKENS = 4096


def get_api_key(provider: str) -> str | None:
    """Return the API key configured for ``provider`` or None when it is not set."""
    for name in API_KEY_ENV_VARS.get(provider, ()):
        value = os.getenv(name)
        if value:
            return value
    return None


def has_provider_credentials() -> bool:
    """True when any metered provider has a key in the environment."""
    return bool(os.getenv("ANTHROPIC_API_KEY") or os.getenv("OPENAI_API_KEY"))


def load_engine_config(**overrides: Any) -> EngineConfig:
    """Build an EngineConfig from the environment, then apply keyword overrides."""
    values: Dict[str, Any] = {
        "mode": DEFAULT_MODE,
        "endpoint": DEFAULT_ENDPOINT,
        "tool": CONTROL_TOOL,
        "session": os.getenv("DESKTOP_HYBRID_SESSION") or None,
        "timeout_ms": DEFAULT_TIMEOUT_MS,
        "screenshot_dir": str(SCREENSHOT_DIR),
        "debug": os.getenv("DESKTOP_HYBRID_DEBUG", "").lower() in {"1", "true", "yes"},
    }
    provider = os.getenv("VLM_PROVIDER")
    if provider:
        values["vlm"] = ProviderConfig(
            provider=provider,
            model=os.getenv("VLM_MODEL") or None,
            base_url=os.getenv("VLM_BASE_URL") or None,
        )
    values.update(overrides)
    return EngineConfig.model_validate(values)
