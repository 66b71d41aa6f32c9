"""
Application configuration via environment variables.
"""
from pydantic_settings import BaseSettings
from typing import List


class Settings(BaseSettings):
    """Application settings loaded from environment / .env file."""

    # App
    app_name: str = "Consensus Engine"
    debug: bool = True
    privacy_mode: bool = False  # suppresses prompt/answer text in logs

    # CORS
    cors_origins: List[str] = [
        "http://localhost:3000",
        "http://localhost:5173",
    ]

    # Language-model backend (OpenAI-compatible chat completions)
    llm_base_url: str = "https://generativelanguage.googleapis.com/v1beta/openai/"
    llm_api_key: str = ""
    llm_max_tokens: int = 4096
    fast_model_id: str = "gemini-3-flash-preview"
    pro_model_id: str = "gemini-3-pro-preview"
    judge_thinking_budget: int = 2048
    # Framing and routing: short JSON replies with thinking switched off
    structured_max_tokens: int = 1024
    structured_thinking_budget: int = 0

    # Media backend (google-genai)
    media_api_key: str = ""
    video_api_key: str = ""  # video generation needs its own paid credential
    image_model_id: str = "gemini-2.5-flash-image"
    video_model_id: str = "veo-3.1-fast-generate-preview"
    media_poll_interval_seconds: float = 10.0

    # Worker pool
    worker_stagger_seconds: float = 1.5
    rate_limit_max_attempts: int = 5
    rate_limit_base_delay: float = 2.0  # seconds, doubles on each retry
    rate_limit_max_jitter: float = 1.0
    enable_web_search: bool = True

    # Routing / context
    router_max_experts: int = 4
    history_window: int = 3
    degraded_mode: bool = False  # route to a single generalist only

    # Persistence
    sessions_file: str = "./data/consensus_store.json"

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
    }


settings = Settings()
