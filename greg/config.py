from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # OpenRouter
    openrouter_api_key: str = ""
    openrouter_base_url: str = "https://openrouter.ai/api/v1"
    openrouter_site_url: str = ""
    openrouter_app_name: str = "Greg"
    default_model: str = "openai/gpt-4o-mini"
    free_model_suffix: str = ":free"  # models ending with this auto-continue

    # Tool loop
    max_tool_calls: int = 3
    query_min_chars: int = 10
    query_min_tokens: int = 2
    web_gate_enabled: bool = True
    auto_continue_enabled: bool = True

    # URL extraction
    url_max_urls: int = 3
    url_max_chars_per_url: int = 9000
    search_max_urls: int = 5
    search_max_chars_per_url: int = 4500
    fetch_timeout_s: float = 12.0
    text_proxy_base_url: str = "https://r.jina.ai/"
    text_proxy_timeout_s: float = 15.0

    # Web search
    search_timeout_s: float = 8.0
    search_result_count: int = 6

    # Images
    image_probe_timeout_s: float = 6.5
    image_cache_ttl_s: int = 1200
    image_probe_concurrency: int = 4

    # Prompts
    instructions_file: str = ""  # empty uses the packaged greg/prompts/DEFAULT_GREG_INSTRUCTIONS.md
    creator_name: str = ""
    creator_url: str = ""

    # Conversation diagnostics (JSONL per conversation)
    conversation_logs_enabled: bool = False
    conversation_logs_dir: str = "logs/conversations"

    # App
    cors_origins: str = "http://localhost:3000"
    app_log_level: str = "INFO"
    noisy_log_level: str = "WARNING"
    log_dir: str = "logs"
    log_retention: str = "7 days"

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }

    @property
    def cors_origin_list(self) -> list[str]:
        return [o.strip() for o in self.cors_origins.split(",")]


settings = Settings()
