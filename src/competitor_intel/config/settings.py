"""Configuration management using Pydantic Settings."""

from __future__ import annotations

from pydantic_settings import BaseSettings, SettingsConfigDict


class CompetitorIntelSettings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Service
    service_name: str = "competitor-intel-service"

    # FastAPI (internal-only surface)
    http_enable: bool = True
    http_host: str = "127.0.0.1"
    http_port: int = 8000
    http_access_log: bool = False
    http_graceful_shutdown_seconds: float = 10.0

    # Fetcher
    fetch_timeout_seconds: float = 10.0
    fetch_max_retries: int = 3
    fetch_retry_backoff_seconds: float = 1.0
    fetch_max_backoff_seconds: float = 30.0
    fetch_max_html_bytes: int = 5 * 1024 * 1024
    desktop_user_agent: str = (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/121.0.0.0 Safari/537.36"
    )
    mobile_user_agent: str = (
        "Mozilla/5.0 (iPhone; CPU iPhone OS 16_6 like Mac OS X) AppleWebKit/605.1.15 "
        "(KHTML, like Gecko) Version/16.6 Mobile/15E148 Safari/604.1"
    )
    accept_language: str = "en-US,en;q=0.5"

    # Content quality: below this the page is treated as an empty shell
    min_word_count: int = 20

    # Rate limiting (per-domain politeness)
    enable_rate_limiting: bool = True
    rate_limit_per_domain_rps: float = 2.0

    # robots.txt + sitemaps
    respect_robots_txt: bool = True
    robots_cache_ttl_seconds: int = 3600
    sitemap_max_depth: int = 3
    sitemap_max_urls: int = 5000
    well_known_sitemap_paths: list[str] = [
        "/sitemap.xml",
        "/sitemap_index.xml",
        "/sitemap/sitemap.xml",
        "/sitemaps/sitemap.xml",
        "/product-sitemap.xml",
        "/products-sitemap.xml",
        "/category-sitemap.xml",
    ]

    # Managed crawl fallback: "spider" | "playwright" | "none"
    crawl_fallback: str = "spider"
    spider_api_key: str | None = None
    spider_base_url: str = "https://api.spider.cloud"
    playwright_timeout_ms: int = 30000

    # Discovery
    domain_discovery_budget_seconds: float = 45.0
    discovery_run_budget_seconds: float = 600.0
    max_main_content_chars: int = 15000
    deep_crawl_max_depth: int = 3
    deep_crawl_pages_per_depth: int = 10
    deep_crawl_llm_threshold: int = 50
    deep_crawl_trigger_score: int = 70
    max_concurrent_analyses: int = 5
    max_pricing_queries: int = 5

    # Search API (ValueSERP)
    valueserp_api_key: str | None = None
    valueserp_base_url: str = "https://api.valueserp.com"
    search_google_domain: str = "google.com"
    search_gl: str = "us"
    search_hl: str = "en"
    search_default_location: str = "United States"
    search_timeout_seconds: float = 15.0
    search_max_retries: int = 2

    # LLM providers
    groq_api_key: str | None = None
    groq_base_url: str = "https://api.groq.com/openai/v1"
    gemini_api_key: str | None = None
    gemini_base_url: str = "https://generativelanguage.googleapis.com/v1beta/openai/"
    openai_api_key: str | None = None
    openai_base_url: str | None = None
    ollama_enable: bool = False
    ollama_host: str = "localhost"
    ollama_port: int = 11434

    # Model router
    router_batch_size: int = 10
    router_batch_window_seconds: float = 10.0
    router_inter_request_delay_seconds: float = 0.1
    router_retry_delays_seconds: list[float] = [1.0, 2.0, 4.0, 8.0, 16.0]
    router_max_queue_size: int = 500
    router_usage_window_seconds: float = 60.0
    router_preferred_model: str | None = None
    # Optional JSON list of model descriptors replacing the built-in catalog
    model_catalog_json: str | None = None

    llm_temperature_default: float = 0.1
    llm_max_tokens_default: int = 4096
    llm_timeout_seconds: int = 60

    # Logging
    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    def validate(self) -> None:
        if self.http_port <= 0:
            raise ValueError("http_port must be > 0")
        if self.http_graceful_shutdown_seconds < 0:
            raise ValueError("http_graceful_shutdown_seconds must be >= 0")
        if self.fetch_timeout_seconds <= 0:
            raise ValueError("fetch_timeout_seconds must be > 0")
        if self.fetch_max_retries < 0:
            raise ValueError("fetch_max_retries must be >= 0")
        if self.fetch_retry_backoff_seconds < 0:
            raise ValueError("fetch_retry_backoff_seconds must be >= 0")
        if self.min_word_count < 0:
            raise ValueError("min_word_count must be >= 0")
        if self.robots_cache_ttl_seconds <= 0:
            raise ValueError("robots_cache_ttl_seconds must be > 0")
        if self.sitemap_max_depth <= 0:
            raise ValueError("sitemap_max_depth must be > 0")
        if self.crawl_fallback not in ("spider", "playwright", "none"):
            raise ValueError("crawl_fallback must be one of: spider, playwright, none")
        if self.domain_discovery_budget_seconds <= 0:
            raise ValueError("domain_discovery_budget_seconds must be > 0")
        if self.discovery_run_budget_seconds <= 0:
            raise ValueError("discovery_run_budget_seconds must be > 0")
        if self.max_concurrent_analyses <= 0:
            raise ValueError("max_concurrent_analyses must be > 0")
        if not 0 <= self.deep_crawl_trigger_score <= 100:
            raise ValueError("deep_crawl_trigger_score must be within [0, 100]")
        if self.search_timeout_seconds <= 0:
            raise ValueError("search_timeout_seconds must be > 0")
        if self.router_batch_size <= 0:
            raise ValueError("router_batch_size must be > 0")
        if self.router_batch_window_seconds <= 0:
            raise ValueError("router_batch_window_seconds must be > 0")
        if self.router_inter_request_delay_seconds < 0:
            raise ValueError("router_inter_request_delay_seconds must be >= 0")
        if any(d < 0 for d in self.router_retry_delays_seconds):
            raise ValueError("router_retry_delays_seconds must be >= 0")
        if self.router_max_queue_size <= 0:
            raise ValueError("router_max_queue_size must be > 0")
        if self.router_usage_window_seconds <= 0:
            raise ValueError("router_usage_window_seconds must be > 0")
        if self.llm_max_tokens_default <= 0:
            raise ValueError("llm_max_tokens_default must be > 0")
        if self.llm_timeout_seconds <= 0:
            raise ValueError("llm_timeout_seconds must be > 0")


_settings: CompetitorIntelSettings | None = None


def get_settings() -> CompetitorIntelSettings:
    global _settings
    if _settings is None:
        _settings = CompetitorIntelSettings()
        _settings.validate()
    return _settings


def reset_settings() -> None:
    global _settings
    _settings = None
