"""Configuration management for taskwatch.

This module loads configuration from defaults, a TOML config file, environment
variables and CLI arguments, and turns the ``[targets.*]`` tables into
immutable :class:`~taskwatch.models.WatchTarget` objects.

Priority Order:
    1. CLI Arguments
    2. Environment Variables
    3. Config File (per-target ``options`` tables override the global ``[options]``)
    4. Defaults

A global option set on the command line or in the environment applies to
every target, including targets that set it in their own ``options`` table.

Config File Lookup:
    1. ``--config`` / ``TASKWATCH_CONFIG`` (must exist)
    2. ``./taskwatch.toml``
    3. ``$XDG_CONFIG_HOME/taskwatch/taskwatch.toml`` (Linux/macOS),
       ``%APPDATA%\\taskwatch\\taskwatch.toml`` (Windows),
       ``~/.config/taskwatch/taskwatch.toml`` (fallback)

Example file::

    [options]
    debounce_delay = 0.5
    dot = false

    [targets.scripts]
    files = ["lib/*.js", "!lib/vendor/**"]
    tasks = ["npm test"]
    cwd = "frontend"

    [targets.scripts.options]
    interrupt = true

Supported Environment Variables:
    * ``TASKWATCH_CONFIG``: Path to the config file.
    * ``TASKWATCH_LOG_FILE`` / ``TASKWATCH_LOG_LEVEL``: Logging output.
    * ``TASKWATCH_DEBOUNCE_DELAY``: Quiet period in seconds.
    * ``TASKWATCH_INTERRUPT`` / ``TASKWATCH_SPAWN`` / ``TASKWATCH_AT_BEGIN``: Run policy.
    * ``TASKWATCH_FORCE_RESTART``: Re-execute the process when the config changes.
    * ``TASKWATCH_CONCURRENT``: One execution slot per target.
    * ``TASKWATCH_MAX_CONSECUTIVE_FATALS``: Exit after N fatal runs in a row (0 = never).
    * ``TASKWATCH_POLL_INTERVAL``: Use a polling observer with this interval.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, FrozenSet, List, Optional, Sequence, Set

import tomli

from taskwatch.models import ALL_KINDS, DEFAULT_DATE_FORMAT, ChangeKind, WatchTarget

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

__all__ = ["Config", "load_config", "CONFIG_FILE_NAME"]

CONFIG_FILE_NAME = "taskwatch.toml"
ADHOC_TARGET_NAME = "default"

_TRUE = ("true", "1", "yes", "on")
_FALSE = ("false", "0", "no", "off")

# Options that targets inherit and may override.
TARGET_OPTIONS = ("debounce_delay", "interrupt", "spawn", "at_begin", "date_format", "events", "reload", "dot")


@dataclass
class Config:
    """Define the application configuration structure.

    Attributes:
        targets (List[WatchTarget]): Selected targets in declaration order.
        config_path (Optional[str]): Absolute path of the loaded config file.
        log_file (Optional[str]): Absolute path to the log file. Defaults to None.
        log_level (str): Logging level (e.g., INFO, DEBUG). Defaults to "INFO".
        debounce_delay (float): Global quiet period in seconds. Defaults to 0.5.
        interrupt (bool): Global interrupt policy. Defaults to False.
        spawn (bool): Global spawn (interrupt-capable) policy. Defaults to True.
        at_begin (bool): Run every target once at startup. Defaults to False.
        force_restart (bool): Re-execute the process when the config file changes.
        concurrent (bool): Allow one running task per target instead of one overall.
        max_consecutive_fatals (int): Stop after this many fatal runs in a row; 0 disables.
        poll_interval (float): Polling observer interval; 0 uses native notifications.
        kill_timeout (float): Seconds between terminating and killing a task process.
    """

    targets: List[WatchTarget]
    config_path: Optional[str] = None
    log_file: Optional[str] = None
    log_level: str = "INFO"
    debounce_delay: float = 0.5
    interrupt: bool = False
    spawn: bool = True
    at_begin: bool = False
    force_restart: bool = False
    concurrent: bool = False
    max_consecutive_fatals: int = 0
    poll_interval: float = 0.0
    kill_timeout: float = 5.0
    target_names: List[str] = field(default_factory=list)

    def target(self, name: str) -> WatchTarget:
        for target in self.targets:
            if target.name == name:
                return target
        raise KeyError(name)


def _get_config_file_paths() -> List[str]:
    """Return a list of potential config file paths in order of priority."""
    paths = [CONFIG_FILE_NAME]

    xdg_config_home = os.environ.get("XDG_CONFIG_HOME")
    if xdg_config_home:
        paths.append(os.path.join(os.path.expanduser(xdg_config_home), "taskwatch", CONFIG_FILE_NAME))
    elif os.name == "nt" and os.environ.get("APPDATA"):
        paths.append(os.path.join(os.path.expanduser(os.environ["APPDATA"]), "taskwatch", CONFIG_FILE_NAME))
    else:
        paths.append(os.path.join(os.path.expanduser("~"), ".config", "taskwatch", CONFIG_FILE_NAME))
    return paths


def _read_config_file(path: Path) -> Dict[str, Any]:
    """Parse a TOML config file.

    Raises:
        ValueError: If the file cannot be read or is not valid TOML.
    """
    try:
        with path.open("rb") as f:
            return tomli.load(f)
    except tomli.TOMLDecodeError as e:
        raise ValueError(f"Failed to parse config file {path}: {e}") from e
    except OSError as e:
        raise ValueError(f"Cannot read config file {path}: {e}") from e


def _to_bool(key: str, value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in _TRUE:
            return True
        if lowered in _FALSE:
            return False
    if isinstance(value, int):
        return bool(value)
    raise ValueError(f"Invalid boolean for {key}: {value!r}")


def _to_float(key: str, value: Any, minimum: float = 0.0) -> float:
    if isinstance(value, bool):
        raise ValueError(f"Invalid float for {key}: {value!r}")
    try:
        result = float(value)
    except (TypeError, ValueError) as e:
        raise ValueError(f"Invalid float for {key}: {value!r}") from e
    if result < minimum:
        raise ValueError(f"{key} must be non-negative, got {result}")
    return result


def _to_int(key: str, value: Any) -> int:
    if isinstance(value, bool):
        raise ValueError(f"Invalid integer for {key}: {value!r}")
    try:
        result = int(value)
    except (TypeError, ValueError) as e:
        raise ValueError(f"Invalid integer for {key}: {value!r}") from e
    if result < 0:
        raise ValueError(f"{key} must be non-negative, got {result}")
    return result


def _to_str_list(key: str, value: Any) -> List[str]:
    if isinstance(value, str):
        items = [value]
    elif isinstance(value, (list, tuple)):
        items = list(value)
    else:
        raise ValueError(f"{key} must be a string or a list of strings, got {type(value).__name__}")
    if not all(isinstance(item, str) for item in items):
        raise ValueError(f"{key} must only contain strings")
    return [item for item in (i.strip() for i in items) if item]


def _to_events(key: str, value: Any) -> FrozenSet[ChangeKind]:
    if isinstance(value, str) and "," in value:
        value = value.split(",")
    names = _to_str_list(key, value)
    if "all" in names:
        return ALL_KINDS
    try:
        return frozenset(ChangeKind(name.lower()) for name in names)
    except ValueError as e:
        valid = ", ".join(k.value for k in ChangeKind)
        raise ValueError(f"Invalid event kind in {key}: {names} (expected: {valid} or all)") from e


def _coerce_option(key: str, value: Any) -> Any:
    """Cast one option value to its expected type."""
    if key in ("interrupt", "spawn", "at_begin", "reload", "dot", "force_restart", "concurrent"):
        return _to_bool(key, value)
    if key in ("debounce_delay", "poll_interval", "kill_timeout"):
        return _to_float(key, value)
    if key == "max_consecutive_fatals":
        return _to_int(key, value)
    if key == "events":
        return _to_events(key, value)
    if key == "date_format":
        if not isinstance(value, str) or not value:
            raise ValueError(f"date_format must be a non-empty string, got {value!r}")
        return value
    return value


def _build_target(
    name: str,
    table: Dict[str, Any],
    defaults: Dict[str, Any],
    explicit: Set[str],
    base_dir: Path,
) -> WatchTarget:
    """Create a WatchTarget from its config table."""
    if not isinstance(table, dict):
        raise ValueError(f"Target {name} must be a table")
    if "files" not in table:
        raise ValueError(f"Target {name} has no 'files' patterns")
    patterns = _to_str_list(f"targets.{name}.files", table["files"])
    if not patterns:
        raise ValueError(f"Target {name} has no 'files' patterns")
    tasks = _to_str_list(f"targets.{name}.tasks", table.get("tasks", []))

    cwd = base_dir
    if table.get("cwd"):
        raw_cwd = Path(os.path.expanduser(str(table["cwd"])))
        cwd = raw_cwd if raw_cwd.is_absolute() else base_dir / raw_cwd
    cwd = Path(os.path.abspath(cwd))

    options = table.get("options", {})
    if not isinstance(options, dict):
        raise ValueError(f"targets.{name}.options must be a table")
    for key in options:
        if key not in TARGET_OPTIONS:
            logger.warning(f"Ignoring unknown option '{key}' for target {name}")
    for key in table:
        if key not in ("files", "tasks", "cwd", "options"):
            logger.warning(f"Ignoring unknown key '{key}' in target {name}")

    values: Dict[str, Any] = {}
    for key in TARGET_OPTIONS:
        if key in options and key not in explicit:
            values[key] = _coerce_option(f"targets.{name}.options.{key}", options[key])
        else:
            values[key] = defaults[key]

    return WatchTarget(
        name=name,
        patterns=tuple(patterns),
        tasks=tuple(tasks),
        cwd=cwd,
        debounce_delay=values["debounce_delay"],
        interrupt=values["interrupt"],
        spawn=values["spawn"],
        at_begin=values["at_begin"],
        date_format=values["date_format"],
        events=values["events"],
        reload=values["reload"],
        dot=values["dot"],
    )


def load_config(args: Dict[str, Any]) -> Config:
    """Load and validate configuration with strict priority, returning a Config object.

    Args:
        args (Dict[str, Any]): Parsed CLI arguments (typically
            ``vars(parser.parse_args())``). Keys match Config attributes, plus
            ``config`` (config file path), ``targets`` (names to run),
            ``files``/``run`` (ad-hoc target) and ``debug``. Values of None
            are ignored so lower-priority sources take effect.

    Returns:
        Config: The fully resolved and validated configuration object.

    Raises:
        ValueError: If a value is invalid, the config file is missing or
            malformed, no target is configured, or an unknown target is selected.

    Examples:
        >>> import os
        >>> config = load_config({"files": ["src/**/*.py"], "run": ["pytest -q"]})  # doctest: +SKIP
        >>> config.targets[0].name  # doctest: +SKIP
        'default'
    """
    # 1. Defaults
    config_values: Dict[str, Any] = {
        "log_file": None,
        "log_level": "INFO",
        "debounce_delay": 0.5,
        "interrupt": False,
        "spawn": True,
        "at_begin": False,
        "date_format": DEFAULT_DATE_FORMAT,
        "events": ALL_KINDS,
        "reload": False,
        "dot": False,
        "force_restart": False,
        "concurrent": False,
        "max_consecutive_fatals": 0,
        "poll_interval": 0.0,
        "kill_timeout": 5.0,
    }
    explicit: Set[str] = set()

    # 2. Config File
    config_path: Optional[Path] = None
    requested = args.get("config") or os.getenv("TASKWATCH_CONFIG")
    if requested:
        config_path = Path(os.path.expanduser(str(requested)))
        if not config_path.is_file():
            raise ValueError(f"Config file not found: {config_path}")
    elif not args.get("files"):
        for candidate in _get_config_file_paths():
            if os.path.isfile(candidate):
                config_path = Path(candidate)
                break

    file_data: Dict[str, Any] = {}
    if config_path is not None:
        config_path = Path(os.path.abspath(config_path))
        logger.debug(f"Loading config from {config_path}")
        file_data = _read_config_file(config_path)
        options = file_data.get("options", {})
        if not isinstance(options, dict):
            raise ValueError("[options] must be a table")
        for key, value in options.items():
            if key in config_values:
                config_values[key] = value
            else:
                logger.warning(f"Ignoring unknown option '{key}' in {config_path}")

    # 3. Environment Variables
    env_map = {
        "TASKWATCH_LOG_FILE": "log_file",
        "TASKWATCH_LOG_LEVEL": "log_level",
        "TASKWATCH_DEBOUNCE_DELAY": "debounce_delay",
        "TASKWATCH_INTERRUPT": "interrupt",
        "TASKWATCH_SPAWN": "spawn",
        "TASKWATCH_AT_BEGIN": "at_begin",
        "TASKWATCH_FORCE_RESTART": "force_restart",
        "TASKWATCH_CONCURRENT": "concurrent",
        "TASKWATCH_MAX_CONSECUTIVE_FATALS": "max_consecutive_fatals",
        "TASKWATCH_POLL_INTERVAL": "poll_interval",
    }
    for env_var, config_key in env_map.items():
        val = os.getenv(env_var)
        if val is not None and val != "":
            config_values[config_key] = val
            explicit.add(config_key)

    # 4. CLI Arguments (override if not None)
    for key, value in args.items():
        if value is not None and key in config_values:
            config_values[key] = value
            explicit.add(key)

    # Type casting
    for key in list(config_values):
        if key in ("log_file", "log_level"):
            continue
        config_values[key] = _coerce_option(key, config_values[key])

    if args.get("debug"):
        config_values["log_level"] = "DEBUG"
    level = str(config_values["log_level"]).upper()
    if not isinstance(getattr(logging, level, None), int):
        raise ValueError(f"Invalid log level: {config_values['log_level']}")
    config_values["log_level"] = level

    if config_values["log_file"]:
        config_values["log_file"] = os.path.abspath(os.path.expanduser(str(config_values["log_file"])))

    # Targets
    base_dir = config_path.parent if config_path is not None else Path.cwd()
    targets: List[WatchTarget] = []
    raw_targets = file_data.get("targets", {})
    if not isinstance(raw_targets, dict):
        raise ValueError("[targets] must be a table of tables")
    for name, table in raw_targets.items():
        targets.append(_build_target(name, table, config_values, explicit, base_dir))

    if args.get("files"):
        adhoc = {"files": list(args["files"]), "tasks": list(args.get("run") or [])}
        targets = [t for t in targets if t.name != ADHOC_TARGET_NAME]
        targets.append(_build_target(ADHOC_TARGET_NAME, adhoc, config_values, explicit, Path.cwd()))

    if not targets:
        raise ValueError(
            f"No targets configured. Create {CONFIG_FILE_NAME} with [targets.<name>] tables "
            "or pass --files."
        )

    selected: Sequence[str] = args.get("targets") or []
    if selected:
        known = {t.name for t in targets}
        unknown = [name for name in selected if name not in known]
        if unknown:
            raise ValueError(f"Unknown target(s): {', '.join(unknown)} (configured: {', '.join(sorted(known))})")
        targets = [t for t in targets if t.name in set(selected)]

    return Config(
        targets=targets,
        config_path=str(config_path) if config_path is not None else None,
        log_file=config_values["log_file"],
        log_level=config_values["log_level"],
        debounce_delay=config_values["debounce_delay"],
        interrupt=config_values["interrupt"],
        spawn=config_values["spawn"],
        at_begin=config_values["at_begin"],
        force_restart=config_values["force_restart"],
        concurrent=config_values["concurrent"],
        max_consecutive_fatals=config_values["max_consecutive_fatals"],
        poll_interval=config_values["poll_interval"],
        kill_timeout=config_values["kill_timeout"],
        target_names=[t.name for t in targets],
    )
