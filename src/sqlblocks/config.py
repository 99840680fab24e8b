"""Runtime configuration for engine sessions, output handling and events.

Defaults are overridden by ``~/.config/sqlblocks/config.toml``::

    [engine]
    executable = "duckdb"
    args = ["-unsigned"]
    database = "analytics.duckdb"
    startup_timeout = 10

    [session]
    mode = "box"
    headers = true
    nullvalue = "NULL"

    [output]
    max_result_lines = 500
    sync_timeout = 60
    retain_finished = 1000

    [events]
    redis_url = "redis://localhost:6379/0"

and then by ``SQLBLOCKS_*`` environment variables.
"""

from __future__ import annotations

import dataclasses
import logging
import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from sqlblocks.paths import DEFAULT_CONFIG_PATH

log = logging.getLogger(__name__)

READY_SENTINEL = "SQLBLOCKS_READY"


@dataclass(slots=True)
class EngineSettings:
    """How the engine CLI is launched and brought up."""

    executable: str = "duckdb"
    args: tuple[str, ...] = ()
    database: str | None = None
    startup_timeout: float = 10.0
    shutdown_grace: float = 1.0
    ready_pattern: str = READY_SENTINEL


@dataclass(slots=True)
class DirectiveSettings:
    """Dot-command directives sent before every query."""

    mode: str = "box"
    headers: bool = True
    nullvalue: str = ""
    separator: str = "|"
    timer: bool = False
    echo: bool = False
    bail: bool = False
    prompt: str = ""


@dataclass(slots=True)
class OutputSettings:
    """Result handling and waiting limits."""

    max_result_lines: int = 0
    sync_timeout: float = 60.0
    live_display: bool = False
    temp_dir: Path | None = None
    # Finished executions kept queryable by id; older ones are forgotten.
    retain_finished: int = 1000


@dataclass(slots=True)
class EventSettings:
    """Optional Redis Stream publication of lifecycle events."""

    redis_url: str | None = None
    stream_maxlen: int = 1000


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    engine: EngineSettings = field(default_factory=EngineSettings)
    directives: DirectiveSettings = field(default_factory=DirectiveSettings)
    output: OutputSettings = field(default_factory=OutputSettings)
    events: EventSettings = field(default_factory=EventSettings)

    @classmethod
    def load(cls, config_path: Path | None = None) -> Settings:
        """Build settings from defaults, the TOML config file, then the environment."""
        settings = cls()
        data = load_config_file(config_path or DEFAULT_CONFIG_PATH)
        if data:
            settings = settings.merged(data)
        return settings.with_env()

    def merged(self, data: dict[str, Any]) -> Settings:
        """Return a copy with TOML tables applied over the current values."""
        engine_table = dict(data.get("engine", {}))
        if "args" in engine_table:
            engine_table["args"] = tuple(str(arg) for arg in engine_table["args"])
        output_table = dict(data.get("output", {}))
        if output_table.get("temp_dir"):
            output_table["temp_dir"] = Path(output_table["temp_dir"]).expanduser()
        return Settings(
            engine=_replace_known(self.engine, engine_table, "engine"),
            directives=_replace_known(self.directives, data.get("session", {}), "session"),
            output=_replace_known(self.output, output_table, "output"),
            events=_replace_known(self.events, data.get("events", {}), "events"),
        )

    def with_env(self) -> Settings:
        """Return a copy with ``SQLBLOCKS_*`` environment overrides applied."""
        engine = self.engine
        output = self.output
        events = self.events
        executable = os.getenv("SQLBLOCKS_EXECUTABLE")
        if executable:
            engine = dataclasses.replace(engine, executable=executable)
        database = os.getenv("SQLBLOCKS_DATABASE")
        if database:
            engine = dataclasses.replace(engine, database=database)
        startup_timeout = os.getenv("SQLBLOCKS_STARTUP_TIMEOUT")
        if startup_timeout:
            engine = dataclasses.replace(engine, startup_timeout=float(startup_timeout))
        sync_timeout = os.getenv("SQLBLOCKS_SYNC_TIMEOUT")
        if sync_timeout:
            output = dataclasses.replace(output, sync_timeout=float(sync_timeout))
        max_lines = os.getenv("SQLBLOCKS_MAX_RESULT_LINES")
        if max_lines:
            output = dataclasses.replace(output, max_result_lines=int(max_lines))
        live = os.getenv("SQLBLOCKS_LIVE_DISPLAY")
        if live is not None:
            output = dataclasses.replace(
                output, live_display=_env_bool("SQLBLOCKS_LIVE_DISPLAY", default=False)
            )
        redis_url = os.getenv("SQLBLOCKS_REDIS_URL")
        if redis_url:
            events = dataclasses.replace(events, redis_url=redis_url)
        return Settings(engine=engine, directives=self.directives, output=output, events=events)

    def validate(self) -> None:
        """Raise ``ValueError`` for settings the engine cannot run with."""
        if not self.engine.executable.strip():
            raise ValueError("engine.executable must not be empty.")
        if self.engine.startup_timeout <= 0:
            raise ValueError("engine.startup_timeout must be > 0.")
        if self.output.sync_timeout <= 0:
            raise ValueError("output.sync_timeout must be > 0.")
        if self.output.max_result_lines < 0:
            raise ValueError("output.max_result_lines must be >= 0.")
        if self.output.retain_finished < 1:
            raise ValueError("output.retain_finished must be >= 1.")


def load_config_file(path: Path) -> dict[str, Any] | None:
    """Load the TOML config file.

    Returns the parsed dict, or None if the file doesn't exist or is invalid.
    """
    if not path.exists():
        return None
    try:
        with open(path, "rb") as f:
            return tomllib.load(f)
    except (OSError, tomllib.TOMLDecodeError):
        log.warning("Failed to parse %s", path, exc_info=True)
        return None


def _replace_known(section: Any, table: dict[str, Any], table_name: str) -> Any:
    names = {f.name for f in dataclasses.fields(section)}
    known = {key: value for key, value in table.items() if key in names}
    for key in table.keys() - names:
        log.warning("config: unknown key '%s' in [%s]", key, table_name)
    return dataclasses.replace(section, **known)


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
