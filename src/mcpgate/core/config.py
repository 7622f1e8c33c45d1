"""Configuration management for the mcpgate gateway.

Uses Pydantic Settings for type-safe, environment-based configuration.
"""

import ipaddress
import shlex
from decimal import Decimal
from pathlib import Path

from dotenv import load_dotenv
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Load environment variables from .env file
load_dotenv(override=False)

IPNetwork = ipaddress.IPv4Network | ipaddress.IPv6Network


class Settings(BaseSettings):
    """Application settings with environment variable support."""

    # App configuration
    app_name: str = Field("mcpgate", alias="MCPGATE_APP_NAME")
    debug: bool = Field(False, alias="MCPGATE_DEBUG")
    version: str = Field("0.1.0", alias="MCPGATE_APP_VERSION")
    environment: str = Field("development", alias="MCPGATE_ENVIRONMENT")

    # API configuration
    api_v1_prefix: str = "/api/v1"
    api_host: str = Field("127.0.0.1", alias="MCPGATE_API_HOST")
    api_port: int = Field(8080, alias="MCPGATE_API_PORT")

    # Logging configuration
    log_level: str = Field("INFO", alias="MCPGATE_LOG_LEVEL")
    log_format: str = Field("text", alias="MCPGATE_LOG_FORMAT")  # text or json
    log_dir: str | None = Field(None, alias="MCPGATE_LOG_DIR")  # unset = console only
    log_retention_days: int = Field(14, alias="MCPGATE_LOG_RETENTION_DAYS")

    # Redis configuration
    # Set MCPGATE_REDIS_URL to share cache/ledger state across nodes; omit for in-memory.
    redis_url: str | None = Field(None, alias="MCPGATE_REDIS_URL")
    redis_required: bool = Field(False, alias="MCPGATE_REDIS_REQUIRED")
    redis_fallback_enabled: bool = Field(True, alias="MCPGATE_REDIS_FALLBACK_ENABLED")
    redis_connection_timeout: int = Field(5, alias="MCPGATE_REDIS_CONNECTION_TIMEOUT")
    redis_socket_timeout: int = Field(5, alias="MCPGATE_REDIS_SOCKET_TIMEOUT")
    cache_max_entries: int = Field(10000, alias="MCPGATE_CACHE_MAX_ENTRIES")  # in-memory only, 0 = unbounded

    # Result cache TTLs (seconds)
    cache_ttl_search: int = Field(300, alias="MCPGATE_CACHE_TTL_SEARCH")
    cache_ttl_config: int = Field(3600, alias="MCPGATE_CACHE_TTL_CONFIG")
    cache_ttl_validate: int = Field(3600, alias="MCPGATE_CACHE_TTL_VALIDATE")
    # How long the latest validation per slug is kept for the deploy precondition
    validation_record_retention: int = Field(7 * 24 * 3600, alias="MCPGATE_VALIDATION_RECORD_RETENTION")

    # Billing (fixed price per billable event, USD)
    price_basic_query: Decimal = Field(Decimal("0.001"), alias="MCPGATE_PRICE_BASIC_QUERY")
    price_detail_lookup: Decimal = Field(Decimal("0.003"), alias="MCPGATE_PRICE_DETAIL_LOOKUP")
    price_validation: Decimal = Field(Decimal("0.05"), alias="MCPGATE_PRICE_VALIDATION")
    price_deployment: Decimal = Field(Decimal("0.50"), alias="MCPGATE_PRICE_DEPLOYMENT")
    # When true, results served from the cache are still charged
    bill_cached_results: bool = Field(False, alias="MCPGATE_BILL_CACHED_RESULTS")
    # Retention of stored outcomes used to replay duplicate requests
    billing_outcome_retention: int = Field(24 * 3600, alias="MCPGATE_BILLING_OUTCOME_RETENTION")

    # Rate limiting
    enable_rate_limiting: bool = Field(True, alias="MCPGATE_ENABLE_RATE_LIMITING")
    deploy_rate_limit_per_hour: int = Field(10, alias="MCPGATE_DEPLOY_RATE_LIMIT_PER_HOUR")
    anonymous_rate_limit_per_hour: int = Field(600, alias="MCPGATE_ANONYMOUS_RATE_LIMIT_PER_HOUR")
    # Comma-separated proxy networks whose X-Forwarded-For header is honoured
    trusted_proxies: str = Field("", alias="MCPGATE_TRUSTED_PROXIES")

    # Installer
    work_root: str | None = Field(None, alias="MCPGATE_WORK_ROOT")  # unset = system temp dir
    npm_executable: str = Field("npm", alias="MCPGATE_NPM_EXECUTABLE")
    docker_executable: str = Field("docker", alias="MCPGATE_DOCKER_EXECUTABLE")
    install_timeout_seconds: float = Field(60.0, alias="MCPGATE_INSTALL_TIMEOUT_SECONDS")
    # Extra flags for `docker run` when launching container plugins
    docker_run_flags: str = Field("--network none --memory 512m --cpus 1", alias="MCPGATE_DOCKER_RUN_FLAGS")

    # Validator
    reachability_timeout_seconds: float = Field(10.0, alias="MCPGATE_REACHABILITY_TIMEOUT_SECONDS")
    handshake_timeout_seconds: float = Field(10.0, alias="MCPGATE_HANDSHAKE_TIMEOUT_SECONDS")
    process_kill_grace_seconds: float = Field(2.0, alias="MCPGATE_PROCESS_KILL_GRACE_SECONDS")
    require_tools: bool = Field(True, alias="MCPGATE_REQUIRE_TOOLS")
    max_frame_bytes: int = Field(2 * 1024 * 1024, alias="MCPGATE_MAX_FRAME_BYTES")
    max_stdout_bytes: int = Field(8 * 1024 * 1024, alias="MCPGATE_MAX_STDOUT_BYTES")

    # Deployer / hosting platform
    hosting_api_base_url: str = Field("https://api.apify.com/v2", alias="MCPGATE_HOSTING_API_BASE_URL")
    hosting_request_timeout: float = Field(30.0, alias="MCPGATE_HOSTING_REQUEST_TIMEOUT")
    hosting_credential_pattern: str = Field(r"^apify_api_[A-Za-z0-9]{20,64}$", alias="MCPGATE_HOSTING_CREDENTIAL_PATTERN")
    hosting_endpoint_path: str = Field("/sse", alias="MCPGATE_HOSTING_ENDPOINT_PATH")
    hosting_stdio_bridge: str = Field("npx -y supergateway --port 4321 --stdio", alias="MCPGATE_HOSTING_STDIO_BRIDGE")
    deploy_poll_interval_seconds: float = Field(5.0, alias="MCPGATE_DEPLOY_POLL_INTERVAL_SECONDS")
    deploy_poll_budget_seconds: float = Field(180.0, alias="MCPGATE_DEPLOY_POLL_BUDGET_SECONDS")

    # Registry (external collaborator)
    registry_api_url: str = Field("http://localhost:3001/v1", alias="MCPGATE_REGISTRY_API_URL")
    registry_timeout: float = Field(10.0, alias="MCPGATE_REGISTRY_TIMEOUT")
    search_max_limit: int = Field(50, alias="MCPGATE_SEARCH_MAX_LIMIT")

    @property
    def redis_enabled(self) -> bool:
        """Whether Redis should be used, based on MCPGATE_REDIS_URL being set."""
        return bool(self.redis_url)

    @property
    def resolved_work_root(self) -> Path | None:
        if not self.work_root:
            return None
        path = Path(self.work_root).expanduser().resolve()
        path.mkdir(parents=True, exist_ok=True)
        return path

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Log level must be one of: {valid_levels}")
        return v.upper()

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        """Validate log format."""
        valid_formats = ["text", "json"]
        if v.lower() not in valid_formats:
            raise ValueError(f"Log format must be one of: {valid_formats}")
        return v.lower()

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        """Validate environment setting."""
        valid_environments = ["development", "staging", "production"]
        if v.lower() not in valid_environments:
            raise ValueError(f"Environment must be one of: {valid_environments}")
        return v.lower()

    @property
    def docker_run_flag_list(self) -> list[str]:
        return shlex.split(self.docker_run_flags or "")

    @property
    def trusted_proxy_networks(self) -> list[IPNetwork]:
        return [ipaddress.ip_network(part.strip(), strict=False) for part in self.trusted_proxies.split(",") if part.strip()]

    @field_validator(
        "install_timeout_seconds",
        "handshake_timeout_seconds",
        "reachability_timeout_seconds",
        "deploy_poll_interval_seconds",
        "deploy_poll_budget_seconds",
    )
    @classmethod
    def validate_positive_timeout(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("timeouts and intervals must be positive")
        return v

    @field_validator("trusted_proxies")
    @classmethod
    def validate_trusted_proxies(cls, v: str) -> str:
        for part in filter(None, (p.strip() for p in v.split(","))):
            try:
                ipaddress.ip_network(part, strict=False)
            except ValueError:
                raise ValueError(f"Invalid trusted proxy network: {part}") from None
        return v

    @field_validator("price_basic_query", "price_detail_lookup", "price_validation", "price_deployment")
    @classmethod
    def validate_price(cls, v: Decimal) -> Decimal:
        if v < 0:
            raise ValueError("prices cannot be negative")
        return v

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        populate_by_name=True,
        extra="ignore",
    )


def get_settings() -> Settings:
    """Build a fresh settings instance from the environment."""
    return Settings()  # type: ignore[call-arg]


# Global settings instance - will be created when first accessed
settings = None


def get_settings_instance() -> Settings:
    """Get the global settings instance, creating it if necessary."""
    global settings  # noqa: PLW0603
    if settings is None:
        settings = get_settings()
    return settings


def reset_settings_instance() -> None:
    """Drop the cached settings (for testing only)."""
    global settings  # noqa: PLW0603
    settings = None
