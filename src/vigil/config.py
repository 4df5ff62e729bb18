"""Daemon configuration.

Values resolve with priority env > file > default. The file lives at
``<base>/config.yaml`` unless a path is given, and ``<base>/.env`` is
loaded into the environment first so it can carry the overrides.

Example:
    >>> config = load_config()
    >>> config.mode
    'local'
    >>> config.paths.sessions_dir
    PosixPath('/home/me/.vigil/monitor/sessions')
"""

from __future__ import annotations

import json
import os
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv

MODES = ("local", "redis")

DEFAULT_SOCKET_PATH = "/tmp/vigil-monitor.sock"
DEFAULT_BASE_DIR = "~/.vigil/monitor"


@dataclass
class RedisConfig:
    """Connection settings for the pub/sub transport."""

    host: str = "localhost"
    port: int = 6379
    password: str | None = None
    channel: str = "vigil:events"


@dataclass
class PersistenceConfig:
    enabled: bool = True
    type: str = "file"


@dataclass
class WrapperConfig:
    """Wrapper supervisor tuning.

    Attributes:
        program: Program each wrapper runs.
        cols: Default terminal width.
        rows: Default terminal height.
        idle_threshold: Seconds of quiet output before prompt detection.
        startup_delay: Seconds before a starting wrapper counts as processing.
        kill_timeout: Seconds between SIGTERM and SIGKILL.
    """

    program: str = "claude"
    cols: int = 120
    rows: int = 40
    idle_threshold: float = 0.75
    startup_delay: float = 1.0
    kill_timeout: float = 5.0


@dataclass(frozen=True)
class MonitorPaths:
    """On-disk layout under the base directory."""

    base_dir: Path

    @property
    def sessions_dir(self) -> Path:
        return self.base_dir / "sessions"

    @property
    def processed_dir(self) -> Path:
        return self.base_dir / "processed"

    @property
    def raw_dir(self) -> Path:
        return self.base_dir / "raw"

    @property
    def wrappers_file(self) -> Path:
        return self.base_dir / "wrappers.json"

    @property
    def config_file(self) -> Path:
        return self.base_dir / "config.yaml"

    @property
    def env_file(self) -> Path:
        return self.base_dir / ".env"


@dataclass
class DaemonConfig:
    """Complete daemon configuration.

    Attributes:
        mode: Transport to use, "local" (unix socket) or "redis".
        socket_path: Unix socket path for local mode.
        base_dir: Root of all persisted state.
        redis: Redis settings, used in redis mode.
        persistence: Event log settings.
        wrapper: Wrapper supervisor settings.
        watch_raw: Follow raw/ while running, not only replay it at start.
    """

    mode: str = "local"
    socket_path: str = DEFAULT_SOCKET_PATH
    base_dir: Path = field(default_factory=lambda: Path(DEFAULT_BASE_DIR).expanduser())
    redis: RedisConfig = field(default_factory=RedisConfig)
    persistence: PersistenceConfig = field(default_factory=PersistenceConfig)
    wrapper: WrapperConfig = field(default_factory=WrapperConfig)
    watch_raw: bool = True

    def __post_init__(self) -> None:
        if self.mode not in MODES:
            raise ValueError(f"Unknown mode: {self.mode!r} (expected one of {', '.join(MODES)})")
        self.base_dir = Path(self.base_dir).expanduser()

    @property
    def paths(self) -> MonitorPaths:
        return MonitorPaths(self.base_dir)

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-serializable dict. The redis password is masked."""
        data = asdict(self)
        data["base_dir"] = str(self.base_dir)
        if data["redis"].get("password"):
            data["redis"]["password"] = "***"
        return data


def _read_config_file(path: Path) -> dict[str, Any]:
    """Read a YAML or JSON config file.

    Raises:
        ValueError: If the file cannot be read or is not a mapping.
    """
    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ValueError(f"Cannot read config file {path}: {e}") from e

    try:
        if path.suffix == ".json":
            data = json.loads(content)
        else:
            data = yaml.safe_load(content)
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise ValueError(f"Invalid config file {path}: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"Config file {path} must contain a mapping")
    return data


def _section(data: dict[str, Any], key: str) -> dict[str, Any]:
    value = data.get(key) or {}
    if not isinstance(value, dict):
        raise ValueError(f"Config section '{key}' must be a mapping")
    return value


def _env_bool(value: str) -> bool:
    return value.strip().lower() not in ("0", "false", "no", "off", "")


def load_config(path: str | Path | None = None) -> DaemonConfig:
    """Load configuration from defaults, file and environment.

    Args:
        path: Config file. Defaults to ``<base>/config.yaml``, where base is
            ``VIGIL_HOME`` or ``~/.vigil/monitor``.

    Returns:
        The resolved DaemonConfig.

    Raises:
        ValueError: If the file is invalid or a value is out of range.
    """
    base_dir = Path(os.environ.get("VIGIL_HOME") or DEFAULT_BASE_DIR).expanduser()
    paths = MonitorPaths(base_dir)

    if paths.env_file.exists():
        load_dotenv(paths.env_file, override=False)
        base_dir = Path(os.environ.get("VIGIL_HOME") or base_dir).expanduser()
        paths = MonitorPaths(base_dir)

    config_path = Path(path).expanduser() if path else paths.config_file
    file_config: dict[str, Any] = {}
    if config_path.exists():
        file_config = _read_config_file(config_path)
    elif path:
        raise ValueError(f"Config file not found: {config_path}")

    redis_file = _section(file_config, "redis")
    persistence_file = _section(file_config, "persistence")
    wrapper_file = _section(file_config, "wrapper")

    try:
        redis = RedisConfig(**redis_file)
        persistence = PersistenceConfig(**persistence_file)
        wrapper = WrapperConfig(**wrapper_file)
    except TypeError as e:
        raise ValueError(f"Invalid config section: {e}") from e

    env = os.environ
    if env.get("VIGIL_REDIS_HOST"):
        redis.host = env["VIGIL_REDIS_HOST"]
    if env.get("VIGIL_REDIS_PORT"):
        try:
            redis.port = int(env["VIGIL_REDIS_PORT"])
        except ValueError as e:
            raise ValueError(f"Invalid VIGIL_REDIS_PORT: {env['VIGIL_REDIS_PORT']!r}") from e
    if env.get("VIGIL_REDIS_PASSWORD"):
        redis.password = env["VIGIL_REDIS_PASSWORD"]
    if env.get("VIGIL_REDIS_CHANNEL"):
        redis.channel = env["VIGIL_REDIS_CHANNEL"]
    if env.get("VIGIL_PERSISTENCE"):
        persistence.enabled = _env_bool(env["VIGIL_PERSISTENCE"])
    if env.get("VIGIL_PROGRAM"):
        wrapper.program = env["VIGIL_PROGRAM"]

    return DaemonConfig(
        mode=env.get("VIGIL_MODE") or file_config.get("mode", "local"),
        socket_path=env.get("VIGIL_SOCKET_PATH")
        or file_config.get("socket_path", DEFAULT_SOCKET_PATH),
        base_dir=Path(file_config["base_dir"]).expanduser()
        if file_config.get("base_dir") and not env.get("VIGIL_HOME")
        else base_dir,
        redis=redis,
        persistence=persistence,
        wrapper=wrapper,
        watch_raw=_env_bool(env["VIGIL_WATCH_RAW"])
        if env.get("VIGIL_WATCH_RAW")
        else bool(file_config.get("watch_raw", True)),
    )
