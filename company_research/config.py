from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Completion service (OpenAI-compatible; used for extraction and synthesis)
    openai_api_key: str = ""
    openai_base_url: str = ""  # empty = api.openai.com
    extraction_model: str = "gpt-4o-mini"
    synthesis_model: str = ""  # optional override, falls back to extraction_model
    extraction_max_tokens: int = 2000
    extraction_temperature: float = 0.3

    # Research provider (Perplexity)
    perplexity_api_key: str = ""
    perplexity_base_url: str = "https://api.perplexity.ai"
    perplexity_model: str = "sonar-pro"
    perplexity_temperature: float = 0.2
    perplexity_max_tokens: int = 4000
    perplexity_request_timeout_s: float = 300.0
    perplexity_max_retries: int = 3
    perplexity_backoff_ms: int = 1000
    perplexity_max_requests_per_minute: int = 20
    perplexity_max_requests_per_hour: int = 200

    # Session defaults
    default_max_concurrent_queries: int = 3
    default_max_cost_usd: float = 5.0
    default_timeout_ms: int = 120000

    # Pacing between progress phases (ms); set to 0 to disable
    phase_delay_analysis_ms: int = 800
    phase_delay_discovery_ms: int = 600
    phase_delay_sources_ms: int = 400
    phase_delay_classification_ms: int = 600

    # Supabase persistence (optional; empty disables it)
    supabase_url: str = ""
    supabase_service_role_key: str = ""

    # App
    app_log_level: str = "INFO"
    noisy_log_level: str = "WARNING"
    log_dir: str = "logs"
    log_to_file: bool = True

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }

    @property
    def completion_configured(self) -> bool:
        return bool(self.openai_api_key.strip())

    @property
    def persistence_configured(self) -> bool:
        return bool(self.supabase_url.strip() and self.supabase_service_role_key.strip())


settings = Settings()
