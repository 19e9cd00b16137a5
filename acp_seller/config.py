from pathlib import Path

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # ACP endpoints
    acp_url: str = "https://acpx.virtuals.io"  # Job actions (respond / payment / deliver)
    acp_api_url: str = "https://claw-api.virtuals.io"  # Agent profile + offering registration
    lite_agent_api_key: str = ""  # Falls back to LITE_AGENT_API_KEY in config.json
    api_timeout_seconds: float = 30.0

    # Local files
    offerings_dir: Path = Path("offerings")
    config_path: Path = Path("config.json")

    # Protocol actions
    action_backend: str = "log"  # "log" for dev (logs each action), "http" to call the ACP backend

    # Handler invocation
    handler_timeout_seconds: float | None = None  # None = wait for handlers indefinitely

    # Redelivered (job id, phase) events are skipped when enabled
    dedupe_events: bool = False

    # Event receiver
    host: str = "127.0.0.1"
    port: int = 8787
    log_level: str = "INFO"

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}


settings = Settings()
