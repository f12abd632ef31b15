import os
import enum
from typing import Mapping, Optional, FrozenSet, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator


DEFAULT_MODEL = "claude-haiku-4-5"
ALLOWED_MODELS = frozenset(
    [
        "claude-haiku-4-5",
        "claude-sonnet-4-5",
        "claude-opus-4-5",
    ]
)
UPSTREAM_API_URL = "https://api.anthropic.com/v1/messages"
ANTHROPIC_VERSION = "2023-06-01"

DEFAULT_TEMPERATURE = 0.3
DEFAULT_MAX_TOKENS = 800
MAX_BODY_BYTES = 1024 * 1024


class ConfigError(Exception):
    pass


class RewritePolicy(str, enum.Enum):
    """How provider mentions in generated text are handled."""

    REDACT = "redact"
    REBRAND = "rebrand"


class ProxyConfig(BaseModel):
    """
    Read-only snapshot of everything the proxy needs, built once at startup
    and handed to each component.
    """

    model_config = ConfigDict(frozen=True)

    api_key: str = Field(min_length=1)
    host: str = "0.0.0.0"
    port: int = 3000
    unix_socket_path: Optional[str] = None

    upstream_url: str = UPSTREAM_API_URL
    anthropic_version: str = ANTHROPIC_VERSION
    default_model: str = DEFAULT_MODEL
    allowed_models: FrozenSet[str] = ALLOWED_MODELS

    brand_model: str = "ClaudeX"
    brand_maker: str = "M Alkindi"
    rewrite_policy: RewritePolicy = RewritePolicy.REBRAND
    identity_override: Optional[bool] = None

    default_temperature: float = DEFAULT_TEMPERATURE
    default_max_tokens: int = DEFAULT_MAX_TOKENS

    allowed_origins: Tuple[str, ...] = ()
    rate_limit_per_minute: int = Field(default=45, ge=0)
    max_body_bytes: int = MAX_BODY_BYTES
    static_dir: Optional[str] = "public"

    @field_validator("allowed_origins", mode="before")
    @classmethod
    def split_origins(cls, value):
        if isinstance(value, str):
            value = value.split(",")
        return tuple(origin.strip() for origin in value if origin and origin.strip())

    @property
    def identity_override_enabled(self) -> bool:
        if self.identity_override is None:
            return self.rewrite_policy is RewritePolicy.REBRAND
        return self.identity_override

    @property
    def default_system(self) -> str:
        if self.rewrite_policy is RewritePolicy.REBRAND:
            return (
                f"You are {self.brand_model}, made by {self.brand_maker}.\n"
                "Do not mention any underlying model provider.\n"
                f'If asked what you are, reply exactly: "I am {self.brand_model}, '
                f'made by {self.brand_maker}."'
            )
        # Neutral prompt, no personal identity to expose
        return (
            "You are a helpful assistant. Do not mention any underlying model "
            "provider. If asked what you are, say you are a custom AI assistant."
        )


def _env_flag(value: Optional[str]) -> Optional[bool]:
    if value is None or not value.strip():
        return None
    return value.strip().lower() in ("1", "true", "yes", "on")


def load_config(environ: Mapping[str, str] = os.environ) -> ProxyConfig:
    """
    Build the configuration snapshot from environment variables.

    Raises ConfigError if the upstream credential is missing or a value does
    not validate.
    """
    if not environ.get("ANTHROPIC_API_KEY"):
        raise ConfigError("Missing ANTHROPIC_API_KEY in environment")

    values = {
        "api_key": environ["ANTHROPIC_API_KEY"],
        "host": environ.get("HOST", "0.0.0.0"),
        "port": environ.get("PORT", "3000"),
        "unix_socket_path": environ.get("UNIX_SOCKET_PATH") or None,
        "upstream_url": environ.get("UPSTREAM_API_URL", UPSTREAM_API_URL),
        "anthropic_version": environ.get("ANTHROPIC_VERSION", ANTHROPIC_VERSION),
        "default_model": environ.get("MODEL", DEFAULT_MODEL),
        "brand_model": environ.get("BRAND_MODEL", "ClaudeX"),
        "brand_maker": environ.get("BRAND_MAKER", "M Alkindi"),
        "rewrite_policy": environ.get("REWRITE_POLICY", "rebrand").strip().lower(),
        "identity_override": _env_flag(environ.get("IDENTITY_OVERRIDE")),
        "allowed_origins": environ.get("ALLOWED_ORIGINS", ""),
        "rate_limit_per_minute": environ.get("RATE_LIMIT_PER_MINUTE", "45"),
        "static_dir": environ.get("STATIC_DIR", "public") or None,
    }
    try:
        return ProxyConfig.model_validate(values)
    except ValueError as error:
        raise ConfigError(f"Invalid configuration: {error}") from error
