"""Settings for the refork supervisor.

``ReforkSettings`` is the single validated configuration object the
control loop consumes.  Values come, lowest precedence first, from field
defaults, ``REFORK_*`` environment variables (and ``.env``), an optional
Python config module, and explicit overrides (the CLI flags).

Manifesto:
    Configuration should be explicit, validated, and environment-driven.
    A bad threshold or a typo in a hook name must stop the supervisor
    before it forks anything, with exit status 2.

    - **Pydantic validation:** Type-checked at startup, not at refork time
    - **Environment-driven:** ``REFORK_WORKER_PROCESSES=4`` works out of the box
    - **Config modules:** plain Python files with settings and hook functions

Examples:
    >>> from refork.core.settings import load_config
    >>> config = load_config(worker_processes=2, refork_after=[50, 100])
    >>> config.settings.worker_processes
    2

    A config module::

        # refork.conf.py
        worker_processes = 4
        refork_after = [50, 100, 1000]

        def after_mold_fork(server, mold):
            warm_caches()

Tags:
    settings, configuration, pydantic, environment, refork

Doc-Types:
    - API Reference
    - Configuration Guide
"""

from __future__ import annotations

import runpy
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

from pydantic import Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from refork.core.errors import ConfigError, InvalidConfigError
from refork.supervision.hooks import HOOK_NAMES, Hooks

ThresholdEntry = int | list[int] | None


class ReforkSettings(BaseSettings):
    """Validated supervisor settings.

    Fields
    ──────
    worker_processes      : Number of worker slots
    refork_after          : Request-count thresholds, see ``refork_threshold_mode``
    refork_threshold_mode : ``per_generation`` or ``per_worker``
    spawn_timeout         : Seconds a child may take to become ready
    backoff_delay         : Seconds before a retry or after an abandoned transition
    shutdown_timeout      : Grace period for children after SIGTERM
    kill_timeout          : Wait after SIGKILL before giving up on stragglers
    tick_interval         : Upper bound on one loop iteration
    mold_retirement       : When the outgoing mold is terminated
    listen                : Addresses the workers serve on
    app                   : WSGI application as ``module:callable``
    log_level             : Structlog log level
    log_format            : ``console`` or ``json``
    """

    model_config = SettingsConfigDict(
        env_prefix="REFORK_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Pool ─────────────────────────────────────────────────────
    worker_processes: int = Field(default=1, ge=1)

    # ── Reforking ────────────────────────────────────────────────
    refork_after: list[ThresholdEntry] = Field(default_factory=list)
    refork_threshold_mode: Literal["per_generation", "per_worker"] = "per_generation"
    mold_retirement: Literal["on_promotion", "after_rollout"] = "on_promotion"

    # ── Timing ───────────────────────────────────────────────────
    spawn_timeout: float = Field(default=20.0, gt=0)
    backoff_delay: float = Field(default=10.0, ge=0)
    shutdown_timeout: float = Field(default=30.0, ge=0)
    kill_timeout: float = Field(default=5.0, ge=0)
    tick_interval: float = Field(default=0.5, gt=0)

    # ── Serving ──────────────────────────────────────────────────
    listen: list[str] = Field(default_factory=lambda: ["127.0.0.1:8080"])
    app: str | None = None

    # ── Observability ────────────────────────────────────────────
    log_level: str = "INFO"
    log_format: Literal["console", "json"] = "console"

    @field_validator("refork_after")
    @classmethod
    def _positive_thresholds(cls, value: list[ThresholdEntry]) -> list[ThresholdEntry]:
        for entry in value:
            counts = entry if isinstance(entry, list) else [entry]
            if isinstance(entry, list) and not entry:
                raise ValueError("per-worker threshold lists must not be empty")
            for count in counts:
                if count is not None and count < 1:
                    raise ValueError(f"thresholds must be positive, got {count}")
        return value

    @field_validator("listen")
    @classmethod
    def _parseable_addresses(cls, value: list[str]) -> list[str]:
        from refork.runtime.listeners import parse_address

        if not value:
            raise ValueError("at least one listen address is required")
        for address in value:
            try:
                parse_address(address)
            except ConfigError as exc:
                raise ValueError(exc.message) from exc
        return value

    @field_validator("log_level")
    @classmethod
    def _known_level(cls, value: str) -> str:
        level = value.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"unknown log level {value!r}")
        return level


@dataclass(frozen=True)
class Config:
    """Settings plus the hook functions loaded with them."""

    settings: ReforkSettings
    hooks: Hooks = field(default_factory=Hooks)
    source: Path | None = None


def _read_module(path: Path) -> dict[str, Any]:
    if not path.is_file():
        raise ConfigError(f"Config file not found: {path}")
    try:
        return runpy.run_path(str(path), run_name="refork_config")
    except Exception as exc:
        raise ConfigError(f"Config file {path} failed to load: {exc}", cause=exc) from exc


def load_config(path: str | Path | None = None, **overrides: Any) -> Config:
    """Load and validate the supervisor configuration.

    Args:
        path: Optional Python module whose module-level names provide
            settings fields and hook functions
        **overrides: Settings that win over every other source; ``None``
            values are ignored

    Raises:
        ConfigError: On any unreadable module, invalid value or
            non-callable hook
    """
    values: dict[str, Any] = {}
    hook_values: dict[str, Any] = {}
    source = Path(path) if path is not None else None

    if source is not None:
        namespace = _read_module(source)
        for name in ReforkSettings.model_fields:
            if name in namespace:
                values[name] = namespace[name]
        for name in HOOK_NAMES:
            hook = namespace.get(name)
            if hook is None:
                continue
            if not callable(hook):
                raise InvalidConfigError(name, hook, f"Hook {name} in {source} is not callable")
            hook_values[name] = hook

    unknown = set(overrides) - set(ReforkSettings.model_fields)
    if unknown:
        raise ConfigError(f"Unknown settings: {', '.join(sorted(unknown))}")
    values.update({key: value for key, value in overrides.items() if value is not None})

    try:
        settings = ReforkSettings(**values)
    except ValidationError as exc:
        raise ConfigError(f"Invalid configuration: {exc}", cause=exc) from exc

    return Config(settings=settings, hooks=Hooks(**hook_values), source=source)


__all__ = ["ReforkSettings", "Config", "load_config", "ThresholdEntry"]
