"""Typed orchestration settings loaded from the environment.

:class:`GramforgeSettings` wraps ``pydantic_settings.BaseSettings`` so run
options can come from ``GRAMFORGE_*`` environment variables as well as from
the project file. Values read from the project file are passed to the
constructor; environment variables take precedence over them. Validation
failures surface as :class:`~gramforge.errors.ConfigurationError`.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import TYPE_CHECKING

from pydantic import Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from gramforge.errors import ConfigurationError

if TYPE_CHECKING:
    from pydantic_settings import PydanticBaseSettingsSource

__all__ = ["GramforgeSettings", "load_settings"]


class GramforgeSettings(BaseSettings):
    """Run options shared by every goal."""

    model_config = SettingsConfigDict(
        env_prefix="GRAMFORGE_", case_sensitive=False, extra="ignore"
    )

    grammar_encoding: str | None = Field(
        default=None,
        description="Encoding of grammar files; the platform default applies when unset.",
    )
    timestamp_delta_ms: int = Field(
        default=0,
        description="Slack added to generated-file timestamps; negative forces regeneration.",
    )
    keep_intermediate_directory: bool = Field(
        default=False,
        description="Keep intermediate output directories for debugging.",
    )
    skip: bool = Field(default=False, description="Skip the execution entirely.")
    fail_on_plugin_error: bool = Field(
        default=True,
        description="Abort on configuration errors; otherwise skip the current execution.",
    )
    fail_on_grammar_error: str = Field(
        default="first",
        description="Escalation mode for grammar reading errors: first, last or ignore.",
    )
    fail_on_processor_error: str = Field(
        default="first",
        description="Escalation mode for processor errors: first, last or ignore.",
    )
    max_workers: int = Field(
        default=1,
        ge=1,
        description="Units processed concurrently.",
    )
    stage_timeout_seconds: float | None = Field(
        default=None,
        gt=0,
        description="Timeout applied to each external stage invocation.",
    )
    log_level: str = Field(default="INFO", description="Logging threshold for the CLI.")

    @field_validator("log_level")
    @classmethod
    def _normalise_level(cls, value: str) -> str:
        return value.upper()

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        """Let environment variables override project-file values."""
        del settings_cls
        return (env_settings, init_settings, dotenv_settings, file_secret_settings)


def load_settings(file_values: Mapping[str, object] | None = None) -> GramforgeSettings:
    """Build settings from project-file values overlaid by the environment.

    Parameters
    ----------
    file_values : Mapping[str, object] | None, optional
        Options read from the project file; unknown keys are ignored.

    Returns
    -------
    GramforgeSettings
        Validated settings.

    Raises
    ------
    ConfigurationError
        If any value fails validation.
    """
    known = GramforgeSettings.model_fields
    values = {key: value for key, value in (file_values or {}).items() if key in known}
    try:
        return GramforgeSettings(**values)
    except ValidationError as exc:
        fields = sorted({".".join(str(part) for part in err["loc"]) for err in exc.errors()})
        message = f"Invalid gramforge settings: {', '.join(fields)}"
        raise ConfigurationError(
            message, cause=exc, context={"fields": fields}
        ) from exc
