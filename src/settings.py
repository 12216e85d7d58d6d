from functools import lru_cache
from typing import Any

from pydantic import BaseModel, Field, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict


class ConfigError(RuntimeError):
    """Configuration-related error."""


class GossipSettings(BaseModel):
    interval_s: float = Field(
        0.3, gt=0, description="Seconds between gossip rounds."
    )
    resend_cap: int = Field(
        10,
        ge=0,
        description=(
            "Expected number of already-known values resent to each neighbor "
            "per round, to repair values lost in transit."
        ),
    )


class AppSettings(BaseSettings):
    """
    Node configuration.

    Precedence (highest → lowest):

    1. Init kwargs (tests/overrides)
    2. Environment variables, e.g. MAELSTROM_GOSSIP__INTERVAL_S
    3. .env and .env.local
    4. Defaults in this class
    """

    model_config = SettingsConfigDict(
        env_prefix="MAELSTROM_",
        env_file=(".env", ".env.local"),
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
        validate_default=True,
    )

    verbose: bool = False
    gossip: GossipSettings = GossipSettings()


@lru_cache(maxsize=1)
def get_settings(**overrides: Any) -> AppSettings:
    """
    Cached accessor for process-wide settings.

    `overrides` are init kwargs → highest precedence (handy in tests).
    """
    try:
        return AppSettings(**overrides)
    except ValidationError as e:
        raise ConfigError(f"Invalid node settings: {e}") from e
