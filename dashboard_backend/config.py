from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

BASE_DIR = Path(__file__).resolve().parent


@dataclass(frozen=True)
class Settings:
    """Configuration container for model providers, stores, and collaborators."""
    gemini_api_key: str
    gemini_model: str
    gemini_fallback_model: str
    openai_api_key: str
    openai_model: str
    anthropic_api_key: str
    anthropic_model: str
    model_temperature: float
    model_timeout: float
    history_limit: int
    history_path: Optional[Path]
    prompts_dir: Path
    weather_api_key: str
    weather_api_base: str
    mediamtx_control_base: str
    mediamtx_user: str
    mediamtx_pass: str
    mediamtx_hls_base: str
    mediamtx_webrtc_base: str
    stream_ready_timeout: float
    stream_poll_interval: float


def load_settings() -> Settings:
    """Purpose: Load configuration from environment variables and defaults.
    Inputs/Outputs: No inputs; returns a Settings instance.
    Side Effects / State: Reads environment variables and filesystem paths.
    Dependencies: Uses os.getenv and BASE_DIR for the prompt directory.
    Failure Modes: Invalid numeric env values (HISTORY_LIMIT, MODEL_TIMEOUT, ...) raise ValueError.
    If Removed: The app cannot configure providers or stores and fails at startup.
    Testing Notes: Verify defaults and overrides via environment variables.
    """
    # Resolve optional paths, then build Settings.
    history_path = os.getenv("HISTORY_PATH")
    history_limit = int(os.getenv("HISTORY_LIMIT", "20"))
    if history_limit <= 0:
        raise ValueError("HISTORY_LIMIT must be positive")

    return Settings(
        gemini_api_key=os.getenv("GEMINI_API_KEY") or os.getenv("GOOGLE_API_KEY", ""),
        gemini_model=os.getenv("GEMINI_MODEL") or os.getenv("GOOGLE_GEMINI_MODEL", "gemini-2.5-flash"),
        gemini_fallback_model=os.getenv("GEMINI_FALLBACK_MODEL", "gemini-2.5-flash"),
        openai_api_key=os.getenv("OPENAI_API_KEY", ""),
        openai_model=os.getenv("OPENAI_MODEL", "gpt-4o-mini"),
        anthropic_api_key=os.getenv("ANTHROPIC_API_KEY", ""),
        anthropic_model=os.getenv("ANTHROPIC_MODEL", "claude-3-5-sonnet-20240620"),
        model_temperature=float(os.getenv("MODEL_TEMPERATURE", "0.3")),
        model_timeout=float(os.getenv("MODEL_TIMEOUT", "60")),
        history_limit=history_limit,
        history_path=Path(history_path) if history_path else None,
        prompts_dir=(BASE_DIR / "prompts").resolve(),
        weather_api_key=os.getenv("WEATHER_API_KEY", ""),
        weather_api_base=os.getenv("WEATHER_API_BASE", "https://api.openweathermap.org"),
        mediamtx_control_base=os.getenv("MEDIAMTX_CONTROL_BASE", "http://mediamtx:9997"),
        mediamtx_user=os.getenv("MEDIAMTX_USER", "admin"),
        mediamtx_pass=os.getenv("MEDIAMTX_PASS", "admin"),
        mediamtx_hls_base=os.getenv("MEDIAMTX_HLS_BASE", "http://localhost:8888"),
        mediamtx_webrtc_base=os.getenv("MEDIAMTX_WEBRTC_BASE", "http://localhost:8889"),
        stream_ready_timeout=float(os.getenv("STREAM_READY_TIMEOUT", "10")),
        stream_poll_interval=float(os.getenv("STREAM_POLL_INTERVAL", "1")),
    )
