"""Configuration loading from environment variables."""

import os
from dataclasses import dataclass, field
from pathlib import Path


@dataclass
class Config:
    db_path: Path = field(default_factory=lambda: Path.home() / ".daily_playbook" / "playbook.db")
    user_id: str = "local"
    tick_interval: float = 1.0
    poll_interval: float = 1.0
    persist_every: int = 10
    chat_url: str | None = None
    llm_base_url: str = "https://api.openai.com/v1"
    llm_api_key: str | None = None
    llm_model: str = "gpt-4o-mini"
    chat_timeout: float = 30.0

    @classmethod
    def from_env(cls) -> "Config":
        config = cls()

        if db := os.environ.get("PB_DB_PATH"):
            config.db_path = Path(db)

        if user := os.environ.get("PB_USER_ID"):
            config.user_id = user

        if tick := os.environ.get("PB_TICK_INTERVAL"):
            config.tick_interval = float(tick)

        if poll := os.environ.get("PB_POLL_INTERVAL"):
            config.poll_interval = float(poll)

        if every := os.environ.get("PB_PERSIST_EVERY"):
            config.persist_every = int(every)

        config.chat_url = os.environ.get("PB_CHAT_URL")

        if base := os.environ.get("PB_LLM_BASE_URL"):
            config.llm_base_url = base.rstrip("/")

        config.llm_api_key = os.environ.get("PB_LLM_API_KEY") or os.environ.get("OPENAI_API_KEY")

        if model := os.environ.get("PB_LLM_MODEL"):
            config.llm_model = model

        if timeout := os.environ.get("PB_CHAT_TIMEOUT"):
            config.chat_timeout = float(timeout)

        return config


def get_config() -> Config:
    return Config.from_env()
