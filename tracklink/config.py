from __future__ import annotations

from pathlib import Path
from typing import Any, Literal

from pydantic import AliasChoices, Field, ValidationInfo, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

CONSTRAINED_HOSTING_FETCH_CAP_MS = 2_400
_BOOLEAN_COERCION_FIELDS: tuple[str, ...] = (
    "constrained_hosting",
    "debug",
    "provisional_reply_enabled",
    "process_before_response",
    "telemetry_enabled",
)


def _parse_bool_with_default(value: Any, *, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        if value == 1:
            return True
        if value == 0:
            return False
        return default
    if not isinstance(value, str):
        return default

    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


def _normalize_optional_text(value: Any) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        return None
    normalized = value.strip()
    if normalized:
        return normalized
    return None


def _env(name: str, *legacy: str) -> AliasChoices:
    return AliasChoices(f"TRACKLINK_{name}", *legacy)


class AppSettings(BaseSettings):
    """
    Canonical runtime configuration.

    Every option reads `TRACKLINK_*` first. The bare names used by earlier
    deployments (`SLACK_BOT_TOKEN`, `ALLOWED_CHANNELS`, `ODESLI_TIMEOUT_MS`,
    `VERCEL`, `DEBUG`, ...) are still honoured as fallbacks.
    """

    model_config = SettingsConfigDict(
        env_prefix="TRACKLINK_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        frozen=True,
        populate_by_name=True,
    )

    # Slack.
    slack_bot_token: str | None = Field(
        default=None,
        validation_alias=_env("SLACK_BOT_TOKEN", "SLACK_BOT_TOKEN"),
        description="Bot token used for chat.postMessage / chat.update / chat.postEphemeral.",
    )
    slack_signing_secret: str | None = Field(
        default=None,
        validation_alias=_env("SLACK_SIGNING_SECRET", "SLACK_SIGNING_SECRET"),
        description="Signing secret for inbound request verification. Unset disables verification.",
    )
    slack_api_base_url: str = Field(
        default="https://slack.com/api",
        validation_alias=_env("SLACK_API_BASE_URL"),
        description="Slack Web API base URL.",
    )
    slack_http_timeout_seconds: float = Field(
        default=3.0,
        validation_alias=_env("SLACK_HTTP_TIMEOUT_SECONDS"),
        description="HTTP timeout for Slack Web API calls.",
    )
    slack_signature_max_age_seconds: int = Field(
        default=300,
        ge=1,
        validation_alias=_env("SLACK_SIGNATURE_MAX_AGE_SECONDS"),
        description="Maximum accepted age of a signed Slack request.",
    )
    allowed_channels: str = Field(
        default="",
        validation_alias=_env("ALLOWED_CHANNELS", "ALLOWED_CHANNELS"),
        description="Comma-separated channel ids that trigger processing. Empty means all channels.",
    )
    provisional_reply_enabled: bool = Field(
        default=True,
        validation_alias=_env("PROVISIONAL_REPLY_ENABLED"),
        description="Post a placeholder reply immediately and edit it once links are resolved.",
    )
    process_before_response: bool = Field(
        default=True,
        validation_alias=_env("PROCESS_BEFORE_RESPONSE"),
        description=(
            "Handle the event before acknowledging the HTTP request. Required on "
            "serverless hosts that freeze the process after the response."
        ),
    )

    # Equivalence lookup (Odesli / song.link).
    odesli_base_url: str = Field(
        default="https://api.song.link/v1-alpha.1",
        validation_alias=_env("ODESLI_BASE_URL"),
        description="Equivalence-lookup API base URL.",
    )
    odesli_user_country: str = Field(
        default="US",
        validation_alias=_env("ODESLI_USER_COUNTRY"),
        description="Country hint sent with every lookup.",
    )
    odesli_timeout_ms: int = Field(
        default=5_000,
        ge=1,
        validation_alias=_env("ODESLI_TIMEOUT_MS", "ODESLI_TIMEOUT_MS"),
        description="Lookup timeout before the constrained-hosting cap is applied.",
    )
    http_user_agent: str = Field(
        default="tracklink-musicbot/1.0",
        validation_alias=_env("HTTP_USER_AGENT"),
        description="User-Agent sent to the lookup and metadata APIs.",
    )
    constrained_hosting: bool = Field(
        default=False,
        validation_alias=_env("CONSTRAINED_HOSTING", "VERCEL"),
        description=(
            "Running on a host with a short upstream response deadline (Vercel). "
            f"Caps the lookup timeout at {CONSTRAINED_HOSTING_FETCH_CAP_MS}ms."
        ),
    )
    metadata_probe_timeout_ms: int = Field(
        default=1_500,
        ge=1,
        validation_alias=_env("METADATA_PROBE_TIMEOUT_MS"),
        description="Upper bound for the fallback metadata probe (never above the lookup timeout).",
    )

    # Race budget.
    global_deadline_margin_ms: int = Field(
        default=200,
        ge=0,
        validation_alias=_env("GLOBAL_DEADLINE_MARGIN_MS"),
        description="Extra time granted over the lookup timeout before the race gives up.",
    )
    global_deadline_ceiling_ms: int = Field(
        default=2_600,
        ge=1,
        validation_alias=_env("GLOBAL_DEADLINE_CEILING_MS"),
        description="Absolute upper bound for a single resolution.",
    )
    fallback_grace_ms: int = Field(
        default=250,
        ge=0,
        validation_alias=_env("FALLBACK_GRACE_MS"),
        description=(
            "How long a finished fallback is held back so a fast lookup can still win. "
            "0 picks whichever branch finishes first."
        ),
    )

    # In-memory stores.
    cache_ttl_seconds: int = Field(
        default=600,
        ge=1,
        validation_alias=_env("CACHE_TTL_SECONDS"),
        description="Freshness window for cached lookup results.",
    )
    cache_max_entries: int = Field(
        default=2_000,
        ge=1,
        validation_alias=_env("CACHE_MAX_ENTRIES"),
        description="Cache size that triggers a wholesale clear.",
    )
    dedup_max_entries: int = Field(
        default=2_000,
        ge=1,
        validation_alias=_env("DEDUP_MAX_ENTRIES"),
        description="Processed-event set size that triggers a wholesale clear.",
    )

    # Logging.
    debug: bool = Field(
        default=False,
        validation_alias=_env("DEBUG", "DEBUG"),
        description="Verbose console logging.",
    )
    log_level: str = Field(
        default="INFO",
        validation_alias=_env("LOG_LEVEL"),
        description="Console log level when debug is off.",
    )
    log_dir: Path | None = Field(
        default=None,
        validation_alias=_env("LOG_DIR"),
        description="Directory for the JSON log file. Unset logs to stdout only.",
    )

    # Telemetry.
    telemetry_enabled: bool = Field(
        default=True,
        validation_alias=_env("TELEMETRY_ENABLED"),
        description="Enable lightweight internal telemetry events.",
    )
    telemetry_sink: Literal["none", "log"] = Field(
        default="log",
        validation_alias=_env("TELEMETRY_SINK"),
        description="`log` emits structured telemetry locally; `none` disables sink output.",
    )

    @field_validator("telemetry_sink", mode="before")
    @classmethod
    def _normalize_telemetry_sink(cls, value: Any) -> str:
        if not isinstance(value, str):
            raise ValueError("TRACKLINK_TELEMETRY_SINK must be a string.")
        normalized = value.strip().lower()
        if normalized in {"none", "log"}:
            return normalized
        raise ValueError("TRACKLINK_TELEMETRY_SINK must be set to: none, log.")

    @field_validator("slack_api_base_url", "odesli_base_url", mode="before")
    @classmethod
    def _normalize_base_url(cls, value: Any, info: ValidationInfo) -> str:
        if not isinstance(value, str):
            raise ValueError(f"{info.field_name} must be a string.")
        normalized = value.strip().rstrip("/")
        if not normalized:
            raise ValueError(f"{info.field_name} must not be empty.")
        return normalized

    @field_validator("odesli_user_country", mode="before")
    @classmethod
    def _normalize_country(cls, value: Any) -> str:
        if not isinstance(value, str) or not value.strip():
            return "US"
        return value.strip().upper()

    @field_validator("log_dir", mode="before")
    @classmethod
    def _normalize_log_dir(cls, value: Any) -> Any:
        if value is None:
            return None
        if isinstance(value, str) and not value.strip():
            return None
        return Path(value).expanduser().resolve()

    @field_validator(*_BOOLEAN_COERCION_FIELDS, mode="before")
    @classmethod
    def _normalize_booleans(cls, value: Any, info: ValidationInfo) -> bool:
        field_name = info.field_name
        assert field_name is not None
        default_value = cls.model_fields[field_name].default
        assert isinstance(default_value, bool)
        if field_name == "constrained_hosting" and isinstance(value, str):
            # Vercel only guarantees the variable is present and non-empty.
            return _parse_bool_with_default(value, default=bool(value.strip()))
        return _parse_bool_with_default(value, default=default_value)

    @field_validator("slack_bot_token", "slack_signing_secret", mode="before")
    @classmethod
    def _normalize_optional_strings(cls, value: Any) -> str | None:
        return _normalize_optional_text(value)

    @property
    def allowed_channel_ids(self) -> frozenset[str]:
        return frozenset(
            channel.strip() for channel in self.allowed_channels.split(",") if channel.strip()
        )

    @property
    def effective_fetch_timeout_ms(self) -> int:
        if self.constrained_hosting:
            return min(self.odesli_timeout_ms, CONSTRAINED_HOSTING_FETCH_CAP_MS)
        return self.odesli_timeout_ms

    @property
    def effective_probe_timeout_ms(self) -> int:
        return min(self.metadata_probe_timeout_ms, self.effective_fetch_timeout_ms)

    @property
    def global_deadline_ms(self) -> int:
        return min(
            self.effective_fetch_timeout_ms + self.global_deadline_margin_ms,
            self.global_deadline_ceiling_ms,
        )


def load_settings() -> AppSettings:
    return AppSettings()
