"""
Configuration management for the signal aggregator.

This module handles:
- Centralized configuration
- Environment variable support
- Sandbox/fallback mode resolution
- Configuration validation
"""

import os
import json
import logging
from dataclasses import dataclass, field, asdict
from typing import Optional, Dict, Any

from .models import RateLimitWindow

logger = logging.getLogger(__name__)

PRICE_SERVICE = "coingecko"
SOCIAL_SERVICE = "twitter"
NEWS_SERVICE = "newsapi"

SERVICES = (PRICE_SERVICE, SOCIAL_SERVICE, NEWS_SERVICE)


def _env_flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


@dataclass
class ApiConfig:
    """Upstream API endpoints and credentials."""
    coingecko_base_url: str = "https://api.coingecko.com/api/v3"
    coingecko_api_key: Optional[str] = None
    twitter_base_url: str = "https://api.twitter.com/2"
    twitter_bearer_token: Optional[str] = None
    newsapi_base_url: str = "https://newsapi.org/v2"
    newsapi_key: Optional[str] = None


@dataclass
class CacheConfig:
    """Response cache configuration."""
    max_size: int = 1000
    default_ttl_ms: int = 5 * 60 * 1000
    # Longest matching prefix wins
    prefix_ttl_ms: Dict[str, int] = field(default_factory=lambda: {
        "coingecko:simple/price": 60 * 1000,
        "coingecko:coins/list": 24 * 60 * 60 * 1000,
        "coingecko:volume": 5 * 60 * 1000,
        "coingecko:coins": 2 * 60 * 1000,
        "twitter:tweets/search": 10 * 60 * 1000,
        "newsapi:everything": 30 * 60 * 1000,
    })


@dataclass
class RateLimitConfig:
    """Quota window for a single upstream service."""
    max_requests: int
    window_duration_ms: int
    retry_after_ms: int


def _default_rate_limits() -> Dict[str, RateLimitConfig]:
    return {
        PRICE_SERVICE: RateLimitConfig(10, 60 * 1000, 60 * 1000),
        SOCIAL_SERVICE: RateLimitConfig(300, 15 * 60 * 1000, 15 * 60 * 1000),
        NEWS_SERVICE: RateLimitConfig(100, 24 * 60 * 60 * 1000, 60 * 60 * 1000),
    }


@dataclass
class SandboxConfig:
    """Fallback (synthetic data) mode switches."""
    enabled: bool = False
    twitter_mock_enabled: bool = False
    news_mock_enabled: bool = False
    price_simulation_enabled: bool = False

    @property
    def mode(self) -> str:
        return "sandbox" if self.enabled else "production"

    @property
    def notification_prefix(self) -> str:
        return "[SANDBOX] " if self.enabled else ""

    @classmethod
    def from_env(cls) -> 'SandboxConfig':
        """
        Resolve sandbox mode from the environment.

        FORCE_PRODUCTION_DATA always wins. Otherwise SANDBOX_MODE may be
        enabled/true, disabled/false or auto, where auto turns sandbox on
        only when APP_ENV is development.
        """
        sandbox_mode = os.getenv("SANDBOX_MODE", "auto").strip().lower()
        app_env = os.getenv("APP_ENV", "development").strip().lower()

        if _env_flag("FORCE_PRODUCTION_DATA"):
            enabled = False
        elif sandbox_mode in ("enabled", "true"):
            enabled = True
        elif sandbox_mode in ("disabled", "false"):
            enabled = False
        else:
            enabled = app_env == "development"

        return cls(
            enabled=enabled,
            twitter_mock_enabled=enabled and os.getenv("TWITTER_MOCK_ENABLED", "true").lower() != "false",
            news_mock_enabled=enabled and os.getenv("NEWS_MOCK_ENABLED", "true").lower() != "false",
            price_simulation_enabled=enabled and os.getenv("PRICE_SIMULATION_ENABLED", "true").lower() != "false",
        )


@dataclass
class AggregatorConfig:
    """Unified aggregator settings."""
    cache_ttl_ms: int = 5 * 60 * 1000
    max_results_per_query: int = 100
    correlation_window_days: int = 30
    # Serve synthetic posts when the social upstream is exhausted or down
    degrade_on_failure: bool = False


@dataclass
class Config:
    """Main configuration class."""
    api: ApiConfig = field(default_factory=ApiConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    rate_limits: Dict[str, RateLimitConfig] = field(default_factory=_default_rate_limits)
    sandbox: SandboxConfig = field(default_factory=SandboxConfig)
    aggregator: AggregatorConfig = field(default_factory=AggregatorConfig)

    # Request settings
    retry_attempts: int = 3
    retry_delay: float = 1.0
    request_timeout: int = 10
    connection_pool_size: int = 20

    # Logging
    log_level: str = "INFO"
    log_file: Optional[str] = None

    @classmethod
    def from_env(cls) -> 'Config':
        """Create configuration from environment variables."""
        defaults = _default_rate_limits()
        rate_limits = {}
        for service, default in defaults.items():
            prefix = service.upper()
            rate_limits[service] = RateLimitConfig(
                max_requests=int(os.getenv(f"{prefix}_MAX_REQUESTS", str(default.max_requests))),
                window_duration_ms=int(os.getenv(f"{prefix}_WINDOW_MS", str(default.window_duration_ms))),
                retry_after_ms=int(os.getenv(f"{prefix}_RETRY_AFTER_MS", str(default.retry_after_ms))),
            )

        return cls(
            api=ApiConfig(
                coingecko_base_url=os.getenv("COINGECKO_BASE_URL", "https://api.coingecko.com/api/v3"),
                coingecko_api_key=os.getenv("COINGECKO_API_KEY"),
                twitter_base_url=os.getenv("TWITTER_BASE_URL", "https://api.twitter.com/2"),
                twitter_bearer_token=os.getenv("TWITTER_BEARER_TOKEN"),
                newsapi_base_url=os.getenv("NEWSAPI_BASE_URL", "https://newsapi.org/v2"),
                newsapi_key=os.getenv("NEWSAPI_KEY"),
            ),
            cache=CacheConfig(
                max_size=int(os.getenv("CACHE_MAX_SIZE", "1000")),
                default_ttl_ms=int(os.getenv("CACHE_DEFAULT_TTL_MS", str(5 * 60 * 1000))),
            ),
            rate_limits=rate_limits,
            sandbox=SandboxConfig.from_env(),
            aggregator=AggregatorConfig(
                cache_ttl_ms=int(os.getenv("AGGREGATOR_CACHE_TTL_MS", str(5 * 60 * 1000))),
                max_results_per_query=int(os.getenv("AGGREGATOR_MAX_RESULTS", "100")),
                correlation_window_days=int(os.getenv("CORRELATION_WINDOW_DAYS", "30")),
                degrade_on_failure=_env_flag("DEGRADE_ON_FAILURE"),
            ),
            retry_attempts=int(os.getenv("RETRY_ATTEMPTS", "3")),
            retry_delay=float(os.getenv("RETRY_DELAY", "1.0")),
            request_timeout=int(os.getenv("REQUEST_TIMEOUT", "10")),
            connection_pool_size=int(os.getenv("CONNECTION_POOL_SIZE", "20")),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_file=os.getenv("LOG_FILE"),
        )

    @classmethod
    def from_file(cls, file_path: str) -> 'Config':
        """Create configuration from JSON file."""
        with open(file_path, 'r') as f:
            config_data = json.load(f)

        rate_limits = _default_rate_limits()
        for service, values in config_data.get('rate_limits', {}).items():
            rate_limits[service] = RateLimitConfig(**values)

        cache_data = dict(config_data.get('cache', {}))
        cache = CacheConfig(**cache_data)

        return cls(
            api=ApiConfig(**config_data.get('api', {})),
            cache=cache,
            rate_limits=rate_limits,
            sandbox=SandboxConfig(**config_data.get('sandbox', {})),
            aggregator=AggregatorConfig(**config_data.get('aggregator', {})),
            **{k: v for k, v in config_data.items()
               if k not in ['api', 'cache', 'rate_limits', 'sandbox', 'aggregator']}
        )

    def to_file(self, file_path: str):
        """Save configuration to JSON file."""
        with open(file_path, 'w') as f:
            json.dump(asdict(self), f, indent=2)

    def rate_limit_windows(self) -> Dict[str, RateLimitWindow]:
        """Build the immutable per-service windows used by the rate limiter."""
        return {
            service: RateLimitWindow(
                service_name=service,
                max_requests=limit.max_requests,
                window_duration_ms=limit.window_duration_ms,
                retry_after_ms=limit.retry_after_ms,
            )
            for service, limit in self.rate_limits.items()
        }

    def validate(self):
        """Validate configuration values."""
        errors = []

        for name in ("coingecko_base_url", "twitter_base_url", "newsapi_base_url"):
            if not getattr(self.api, name).startswith(('http://', 'https://')):
                errors.append(f"{name} must start with http:// or https://")

        if self.cache.max_size <= 0:
            errors.append("Cache max size must be positive")

        if self.cache.default_ttl_ms <= 0:
            errors.append("Cache default TTL must be positive")

        for service, limit in self.rate_limits.items():
            if limit.max_requests <= 0:
                errors.append(f"{service}: max requests must be positive")
            if limit.window_duration_ms <= 0:
                errors.append(f"{service}: window duration must be positive")
            if limit.retry_after_ms < 0:
                errors.append(f"{service}: retry after must not be negative")

        if self.aggregator.cache_ttl_ms <= 0:
            errors.append("Aggregator cache TTL must be positive")

        if self.aggregator.correlation_window_days <= 0:
            errors.append("Correlation window must be positive")

        if self.retry_attempts <= 0:
            errors.append("Retry attempts must be positive")

        if self.retry_delay < 0:
            errors.append("Retry delay must not be negative")

        if self.request_timeout <= 0:
            errors.append("Request timeout must be positive")

        if self.connection_pool_size <= 0:
            errors.append("Connection pool size must be positive")

        if errors:
            raise ValueError(f"Configuration validation failed: {'; '.join(errors)}")

        logger.info("Configuration validation passed")

    def setup_logging(self):
        """Set up logging based on configuration."""
        level = getattr(logging, self.log_level.upper())
        logging.basicConfig(level=level)

        if self.log_file:
            handler = logging.FileHandler(self.log_file)
            handler.setLevel(level)
            formatter = logging.Formatter(
                '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
            )
            handler.setFormatter(formatter)
            logging.getLogger().addHandler(handler)

        logger.info(f"Logging configured with level {self.log_level}")
        if self.sandbox.enabled:
            logger.warning("Sandbox mode enabled: synthetic data replaces upstream calls")
