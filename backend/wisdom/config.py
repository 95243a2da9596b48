from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def split_addr(addr: str) -> tuple[str | None, int]:
    """Split ``host:port`` (or ``:port``) into its parts.

    An empty host means all interfaces.
    """
    host, sep, port = addr.rpartition(":")
    if not sep or not port.isdigit():
        raise ValueError(f"invalid address {addr!r}, expected host:port")
    host = host.strip("[]")
    return (host or None), int(port)


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="WOW_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Listener
    addr: str = ":8080"
    conn_timeout: float = 30.0  # end-to-end deadline per connection

    # Proof of Work
    bits: int = Field(default=22, ge=0, le=256)
    expires: int = Field(default=60, gt=0)  # challenge TTL in seconds
    resource: str = "quote"

    # Rate Limiting
    rate_limit: int = Field(default=0, ge=0)  # requests/sec per IP, 0 disables
    adaptive_bits: bool = False
    sweep_interval: float = 300.0

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"

    @field_validator("addr")
    @classmethod
    def validate_addr(cls, v):
        split_addr(v)
        return v


class ClientSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="WOW_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    server_addr: str = Field(
        default="127.0.0.1:8080",
        validation_alias=AliasChoices("SERVER_ADDR", "WOW_ADDR"),
    )
    solve_timeout: float = 120.0
    connect_timeout: float = 10.0

    log_level: str = "INFO"
    log_format: str = "console"


settings = Settings()
