"""Configuration management using pydantic-settings."""

from enum import Enum

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Endpoint presets
REST_API_ENDPOINT = "https://api.binance.com"
WS_ENDPOINT = "wss://stream.binance.com:9443"
TESTNET_REST_API_ENDPOINT = "https://testnet.binance.vision"
TESTNET_WS_ENDPOINT = "wss://testnet.binance.vision"
US_REST_API_ENDPOINT = "https://api.binance.us"
US_WS_ENDPOINT = "wss://stream.binance.us:9443"

DEFAULT_RECV_WINDOW = 5000


class Profile(str, Enum):
    """Base-URL profile."""

    PRODUCTION = "production"
    TESTNET = "testnet"
    US = "us"


PROFILE_ENDPOINTS: dict[Profile, tuple[str, str]] = {
    Profile.PRODUCTION: (REST_API_ENDPOINT, WS_ENDPOINT),
    Profile.TESTNET: (TESTNET_REST_API_ENDPOINT, TESTNET_WS_ENDPOINT),
    Profile.US: (US_REST_API_ENDPOINT, US_WS_ENDPOINT),
}


class OverflowPolicy(str, Enum):
    """What a full subscriber buffer does with a new message."""

    DROP_OLDEST = "drop_oldest"
    BLOCK = "block"


class StreamSettings(BaseSettings):
    """WebSocket session, reconnect and listen-key settings."""

    model_config = SettingsConfigDict(env_prefix="BSK_STREAM_")

    connect_timeout: float = Field(default=10.0, description="Handshake timeout in seconds")
    heartbeat_interval: float = Field(
        default=30.0, description="Idle seconds before a ping is sent"
    )
    pong_timeout: float = Field(default=10.0, description="Seconds to wait for a pong")
    max_streams_per_connection: int = Field(
        default=200, description="Topics multiplexed on a single socket"
    )

    # Reconnect policy
    reconnect_base_delay: float = Field(default=1.0, description="First backoff delay")
    reconnect_max_delay: float = Field(default=60.0, description="Backoff cap in seconds")
    reconnect_multiplier: float = Field(default=2.0, description="Backoff growth factor")
    reconnect_jitter: float = Field(default=0.3, description="Jitter as fraction of delay")
    reconnect_max_attempts: int = Field(
        default=10, description="Reconnect attempts per outage before topics fail"
    )
    stability_threshold: float = Field(
        default=60.0, description="Seconds of healthy OPEN that reset the attempt counter"
    )

    # Subscriber buffers
    buffer_capacity: int = Field(default=1000, description="Per-topic delivery buffer size")
    overflow_policy: OverflowPolicy = Field(
        default=OverflowPolicy.DROP_OLDEST, description="Policy on a full buffer"
    )

    # Listen key
    listen_key_validity: float = Field(
        default=3600.0, description="Server-side listen key lifetime in seconds"
    )
    listen_key_renew_fraction: float = Field(
        default=0.5, description="Fraction of the lifetime after which to renew"
    )

    @field_validator("listen_key_renew_fraction")
    @classmethod
    def check_fraction(cls, v: float) -> float:
        """Renewal must happen strictly before expiry."""
        if not 0.0 < v < 1.0:
            raise ValueError("listen_key_renew_fraction must be in (0, 1)")
        return v

    @field_validator("buffer_capacity", "max_streams_per_connection")
    @classmethod
    def check_positive(cls, v: int) -> int:
        """Capacities must be positive."""
        if v < 1:
            raise ValueError("must be >= 1")
        return v


class Settings(BaseSettings):
    """Main client settings."""

    model_config = SettingsConfigDict(
        env_prefix="BSK_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    profile: Profile = Field(default=Profile.PRODUCTION, description="Endpoint profile")
    rest_base_url: str | None = Field(default=None, description="Override REST base URL")
    ws_base_url: str | None = Field(default=None, description="Override WebSocket base URL")

    recv_window: int = Field(
        default=DEFAULT_RECV_WINDOW, description="Receive window in ms (0 to omit)"
    )

    # HTTP client settings
    http_timeout: float = Field(default=10.0, description="HTTP request timeout in seconds")
    http_retries: int = Field(default=3, description="Retries for transient REST failures")
    backoff_base: float = Field(default=0.25, description="REST retry base delay")
    backoff_max: float = Field(default=3.0, description="REST retry delay cap")

    stream: StreamSettings = Field(default_factory=StreamSettings)

    @field_validator("recv_window")
    @classmethod
    def check_recv_window(cls, v: int) -> int:
        """The venue rejects receive windows above 60 seconds."""
        if v < 0 or v > 60000:
            raise ValueError("recv_window must be between 0 and 60000 ms")
        return v

    @property
    def rest_endpoint(self) -> str:
        """Effective REST base URL."""
        return (self.rest_base_url or PROFILE_ENDPOINTS[self.profile][0]).rstrip("/")

    @property
    def ws_endpoint(self) -> str:
        """Effective WebSocket base URL."""
        return (self.ws_base_url or PROFILE_ENDPOINTS[self.profile][1]).rstrip("/")


# Global settings instance (lazy loaded)
_settings: Settings | None = None


def get_settings() -> Settings:
    """Get or create settings instance."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reset_settings() -> None:
    """Reset settings instance (useful for testing)."""
    global _settings
    _settings = None
