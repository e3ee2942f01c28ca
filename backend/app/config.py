from __future__ import annotations

from pathlib import Path
from typing import Any, Literal

from pydantic import Field, ValidationInfo, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_DATA_DIR = ".vibe-digest"
DEFAULT_NEWSLETTER_SENDERS = (
    "theneuron.ai,aibreakfast,dan@tldrnewsletter.com,tldrnewsletter.com,therundown.ai,neuron"
)
_DATA_DIR_RELATIVE_DEFAULTS: tuple[tuple[str, Path], ...] = (
    ("db_path", Path("catalog.db")),
    ("gmail_token_path", Path("gmail-token.json")),
    ("gmail_client_secret_path", Path("gmail-client-secret.json")),
    ("log_dir", Path("logs")),
)
_PATH_FIELDS: tuple[str, ...] = (
    "data_dir",
    *(field_name for field_name, _ in _DATA_DIR_RELATIVE_DEFAULTS),
)
_BOOLEAN_COERCION_FIELDS: tuple[str, ...] = (
    "resurrect_deleted_videos",
    "telemetry_enabled",
)
_OPTIONAL_TEXT_FIELDS: tuple[str, ...] = (
    "youtube_api_key",
    "google_api_key",
    "supadata_api_key",
    "admin_api_key",
)


def _default_in_data_dir(relative_path: Path) -> Path:
    return Path(DEFAULT_DATA_DIR) / relative_path


def _data_dir_default_note(relative_path: Path) -> str:
    return f"Defaults to `${{VIBE_DIGEST_DATA_DIR}}/{relative_path}` when not explicitly set."


def _resolve_path(value: str | Path) -> Path:
    return Path(value).expanduser().resolve()


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


class AppSettings(BaseSettings):
    """
    Canonical runtime configuration.

    Every option is read from a `VIBE_DIGEST_*` environment variable (or `.env`);
    the field description documents what it controls.
    """

    model_config = SettingsConfigDict(
        env_prefix="VIBE_DIGEST_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        frozen=True,
    )

    # Core paths.
    data_dir: Path = Field(
        default=Path(DEFAULT_DATA_DIR),
        description="Root runtime directory for the catalog database, logs, and OAuth artifacts.",
    )
    db_path: Path = Field(
        default=_default_in_data_dir(Path("catalog.db")),
        description=f"SQLite catalog path. {_data_dir_default_note(Path('catalog.db'))}",
    )

    # Provider credentials.
    youtube_api_key: str | None = Field(
        default=None,
        description="YouTube Data API key. Falls back to `google_api_key` when unset.",
    )
    google_api_key: str | None = Field(
        default=None,
        description="Google API key used for Gemini classification (and YouTube fallback).",
    )
    gemini_model: str = Field(
        default="gemini-1.5-flash-latest",
        description="Gemini model used by the generative classification strategy.",
    )
    supadata_api_key: str | None = Field(
        default=None,
        description="Supadata API key for transcript retrieval. Transcripts are skipped when unset.",
    )
    supadata_base_url: str = Field(
        default="https://api.supadata.ai/v1",
        description="Supadata API base URL.",
    )
    supadata_http_timeout_seconds: float = Field(
        default=30.0,
        description="HTTP timeout for Supadata requests.",
    )

    # Gmail newsletter source.
    gmail_token_path: Path = Field(
        default=_default_in_data_dir(Path("gmail-token.json")),
        description=f"Gmail OAuth token JSON path. {_data_dir_default_note(Path('gmail-token.json'))}",
    )
    gmail_client_secret_path: Path = Field(
        default=_default_in_data_dir(Path("gmail-client-secret.json")),
        description=(
            "Gmail OAuth client secret JSON path. "
            f"{_data_dir_default_note(Path('gmail-client-secret.json'))}"
        ),
    )
    newsletter_senders: str = Field(
        default=DEFAULT_NEWSLETTER_SENDERS,
        description="Comma-separated sender terms used in the Gmail `from:(...)` query.",
    )
    gmail_max_results: int = Field(
        default=50,
        ge=1,
        le=500,
        description="Maximum messages listed per discovery slice.",
    )

    # Reconciliation behavior.
    discovery_weeks: int = Field(
        default=12,
        ge=1,
        le=104,
        description="Number of trailing slices scanned for newsletter email on each run.",
    )
    discovery_slice_days: int = Field(
        default=7,
        ge=1,
        le=31,
        description="Width of one discovery slice in days.",
    )
    discovery_pause_seconds: float = Field(
        default=0.5,
        ge=0.0,
        description="Minimum pause between consecutive email slice requests.",
    )
    metadata_batch_size: int = Field(
        default=50,
        ge=1,
        le=50,
        description="Video ids per YouTube `videos.list` call (capped by the API at 50).",
    )
    classification_max_workers: int = Field(
        default=4,
        ge=1,
        le=32,
        description="Worker threads used for per-video transcript and classification work.",
    )
    description_excerpt_chars: int = Field(
        default=300,
        ge=0,
        description="Description characters embedded in the classification prompt.",
    )
    transcript_excerpt_chars: int = Field(
        default=15_000,
        ge=0,
        description="Transcript characters embedded in the classification prompt.",
    )
    repair_max_attempts: int = Field(
        default=5,
        ge=1,
        description="Failed metadata repairs tolerated before a record is flagged for review.",
    )
    resurrect_deleted_videos: bool = Field(
        default=False,
        description="Re-create deleted videos when a newsletter mentions them again.",
    )

    # HTTP surface.
    admin_api_key: str | None = Field(
        default=None,
        description="When set, `DELETE /videos/{id}` requires a matching `X-Admin-Key` header.",
    )

    # Logging.
    log_dir: Path = Field(
        default=_default_in_data_dir(Path("logs")),
        description=f"Directory for backend log files. {_data_dir_default_note(Path('logs'))}",
    )
    log_level: str = Field(
        default="INFO",
        description="Console log level (stdout).",
    )

    # Telemetry.
    telemetry_enabled: bool = Field(
        default=True,
        description="Enable lightweight internal telemetry events.",
    )
    telemetry_sink: Literal["none", "log"] = Field(
        default="log",
        description=(
            "Telemetry sink backend. `log` emits structured telemetry locally; "
            "`none` disables sink output."
        ),
    )

    @property
    def resolved_youtube_api_key(self) -> str | None:
        return self.youtube_api_key or self.google_api_key

    @property
    def newsletter_sender_list(self) -> list[str]:
        return [sender.strip() for sender in self.newsletter_senders.split(",") if sender.strip()]

    @field_validator("telemetry_sink", mode="before")
    @classmethod
    def _normalize_telemetry_sink(cls, value: Any) -> str:
        if not isinstance(value, str):
            raise ValueError("VIBE_DIGEST_TELEMETRY_SINK must be a string.")
        normalized = value.strip().lower()
        if normalized in {"none", "log"}:
            return normalized
        raise ValueError("VIBE_DIGEST_TELEMETRY_SINK must be set to: none, log.")

    @field_validator("supadata_base_url", mode="before")
    @classmethod
    def _normalize_supadata_base_url(cls, value: Any) -> str:
        if not isinstance(value, str):
            raise ValueError("VIBE_DIGEST_SUPADATA_BASE_URL must be a string.")
        normalized = value.strip().rstrip("/")
        if not normalized:
            raise ValueError("VIBE_DIGEST_SUPADATA_BASE_URL must not be empty.")
        return normalized

    @field_validator("newsletter_senders", mode="before")
    @classmethod
    def _normalize_newsletter_senders(cls, value: Any) -> str:
        if not isinstance(value, str):
            raise ValueError("VIBE_DIGEST_NEWSLETTER_SENDERS must be a comma-separated string.")
        senders = [sender.strip() for sender in value.split(",") if sender.strip()]
        if not senders:
            raise ValueError("VIBE_DIGEST_NEWSLETTER_SENDERS must name at least one sender.")
        return ",".join(senders)

    @field_validator(*_PATH_FIELDS, mode="before")
    @classmethod
    def _normalize_paths(cls, value: Any) -> Any:
        if value is None:
            return None
        return _resolve_path(value)

    @field_validator(*_BOOLEAN_COERCION_FIELDS, mode="before")
    @classmethod
    def _normalize_booleans(cls, value: Any, info: ValidationInfo) -> bool:
        field_name = info.field_name
        assert field_name is not None
        default_value = cls.model_fields[field_name].default
        assert isinstance(default_value, bool)
        return _parse_bool_with_default(value, default=default_value)

    @field_validator(*_OPTIONAL_TEXT_FIELDS, mode="before")
    @classmethod
    def _normalize_optional_strings(cls, value: Any) -> str | None:
        return _normalize_optional_text(value)


def _apply_path_defaults(settings: AppSettings) -> AppSettings:
    updates: dict[str, Path] = {}
    for field_name, relative_default in _DATA_DIR_RELATIVE_DEFAULTS:
        if field_name in settings.model_fields_set:
            continue
        updates[field_name] = settings.data_dir / relative_default
    if not updates:
        return settings
    return settings.model_copy(update=updates)


def _resolve_path_fields(settings: AppSettings) -> AppSettings:
    resolved_updates = {
        field_name: _resolve_path(getattr(settings, field_name))
        for field_name in _PATH_FIELDS
    }
    return settings.model_copy(update=resolved_updates)


def load_settings() -> AppSettings:
    settings = AppSettings()
    settings = _apply_path_defaults(settings)
    return _resolve_path_fields(settings)
