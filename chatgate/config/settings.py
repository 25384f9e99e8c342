"""Runtime settings."""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="CHATGATE_", extra="ignore")

    app_name: str = "ChatGate"
    env: str = "dev"
    log_level: str = "info"
    # Full request bodies are only logged at DEBUG when this is on.
    log_full_request_body: bool = False
    host: str = "127.0.0.1"
    port: int = 5000

    providers_path: str = "config/providers.yaml"
    command_rules_path: str = "config/commands.yaml"
    command_locales: str = "bn,en"
    default_city: str = "Dhaka"

    token_budget: int = Field(default=3000, ge=1)
    default_max_tokens: int = 500
    default_temperature: float = Field(default=0.7, ge=0.0, le=2.0)

    upstream_timeout_seconds: float = 30.0
    upstream_max_connections: int = 100
    upstream_max_keepalive_connections: int = 20

    command_timeout_seconds: float = 10.0
    weather_base_url: str = "https://wttr.in"
    news_feed_url: str = "https://feeds.bbci.co.uk/bengali/rss.xml"
    news_max_items: int = 5
    book_search_url: str = "https://openlibrary.org/search.json"
    book_max_results: int = 3
    web_search_url: str = "https://api.duckduckgo.com/"

    chat_store_backend: str = "sqlite"  # sqlite | redis
    sqlite_db_path: str = "logs/chatgate.db"
    redis_url: str = "redis://127.0.0.1:6379/0"
    redis_key_prefix: str = "chatgate"
    enable_thread_offload: bool = True

    max_request_body_bytes: int = 2_000_000
    max_messages_count: int = 200
    max_content_length_per_message: int = 50_000

    audit_log_path: str = "logs/audit.jsonl"  # empty string disables the audit file

    @property
    def expose_error_detail(self) -> bool:
        return self.env.strip().lower() not in {"prod", "production"}

    def locales(self) -> list[str]:
        return [item.strip().lower() for item in self.command_locales.split(",") if item.strip()]


settings = Settings()
