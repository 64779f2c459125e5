"""
Runtime settings for flashguard.

Settings are layered: built-in defaults, then flashguard.ini in the project
directory, then FLASHGUARD_* environment variables. CLI options are applied
last by the caller with dataclasses.replace(). The resolved settings travel
inside the job ticket so the detached job never re-reads the environment.
"""

import os
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

from ..deploy.programmer import DEFAULT_STRATEGIES, DEFAULT_STRATEGY_ORDER, StrategyConfig
from .ini_parser import CONFIG_FILENAME, FlashConfigError, FlashIniConfig

ENV_PREFIX = "FLASHGUARD_"
CAPTURE_MODES = ("off", "auto", "always")
LAUNCHER_PREFERENCES = ("auto", "background", "terminal")


def default_state_dir() -> Path:
    return Path.home() / ".flashguard"


@dataclass
class FlashSettings:
    """Resolved configuration for one flash invocation.

    Attributes:
        project_dir: Repository root; relative paths below resolve against it
        board_dir: Crate directory the compiler runs in
        target_dir: Directory holding <artifact>.elf after a build
        compiler: Compiler driver executable
        objcopy: ELF to HEX converter executable
        programmer: Device programmer executable
        strategy_order: Programmer strategies to try, in order
        strategies: Known strategies by name
        timeout: Orchestrator deadline in seconds
        poll_interval: Seconds between status polls
        start_timeout: Seconds to wait for the detached session to start
        linger_seconds: Grace given to a finished session before it is killed
        build_timeout: Compile step limit in seconds
        flash_timeout: Single programmer attempt limit in seconds
        recovery_grace: Seconds holders get between SIGTERM and SIGKILL
        launcher: auto, background or terminal
        state_dir: Directory for status, ticket, pid, lock and log files
        serial_capture: off, auto or always
        capture_seconds: Serial capture duration
        capture_baud: Serial capture baud rate
    """

    project_dir: Path = field(default_factory=Path.cwd)
    board_dir: Path = Path("boards/arduino-uno")
    target_dir: Path = Path("target/avr-none/release")
    compiler: str = "cargo"
    objcopy: str = "avr-objcopy"
    programmer: str = "avrdude"
    strategy_order: list[str] = field(default_factory=lambda: list(DEFAULT_STRATEGY_ORDER))
    strategies: dict[str, StrategyConfig] = field(default_factory=lambda: dict(DEFAULT_STRATEGIES))
    timeout: int = 300
    poll_interval: float = 1.0
    start_timeout: float = 10.0
    linger_seconds: float = 5.0
    build_timeout: float = 600.0
    flash_timeout: float = 120.0
    recovery_grace: float = 2.0
    launcher: str = "auto"
    state_dir: Path = field(default_factory=default_state_dir)
    serial_capture: str = "off"
    capture_seconds: float = 10.0
    capture_baud: int = 9600

    def resolve(self, path: Path) -> Path:
        """Resolve a possibly relative path against the project directory."""
        return path if path.is_absolute() else (self.project_dir / path)

    @property
    def board_path(self) -> Path:
        return self.resolve(self.board_dir)

    @property
    def target_path(self) -> Path:
        return self.resolve(self.target_dir)

    @property
    def logs_dir(self) -> Path:
        return self.state_dir / "logs"

    def validate(self) -> None:
        """
        Check cross-field consistency.

        Raises:
            FlashConfigError: On an invalid value
        """
        if self.serial_capture not in CAPTURE_MODES:
            raise FlashConfigError(f"serial_capture must be one of {', '.join(CAPTURE_MODES)}, got '{self.serial_capture}'")
        if self.launcher not in LAUNCHER_PREFERENCES:
            raise FlashConfigError(f"launcher must be one of {', '.join(LAUNCHER_PREFERENCES)}, got '{self.launcher}'")
        if self.timeout <= 0:
            raise FlashConfigError(f"timeout must be positive, got {self.timeout}")
        if self.poll_interval <= 0:
            raise FlashConfigError(f"poll_interval must be positive, got {self.poll_interval}")
        unknown = [name for name in self.strategy_order if name not in self.strategies]
        if unknown:
            raise FlashConfigError(f"Unknown programmer strategies in order: {', '.join(unknown)}. Known: {', '.join(sorted(self.strategies))}")
        if not self.strategy_order:
            raise FlashConfigError("strategy_order must name at least one strategy")

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        result = asdict(self)
        for key in ("project_dir", "board_dir", "target_dir", "state_dir"):
            result[key] = str(result[key])
        result["strategies"] = {name: s.to_dict() for name, s in self.strategies.items()}
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "FlashSettings":
        """Create FlashSettings from dictionary."""
        defaults = cls()
        strategies = {name: StrategyConfig.from_dict(s) for name, s in data.get("strategies", {}).items()} or dict(DEFAULT_STRATEGIES)
        return cls(
            project_dir=Path(data.get("project_dir", defaults.project_dir)),
            board_dir=Path(data.get("board_dir", defaults.board_dir)),
            target_dir=Path(data.get("target_dir", defaults.target_dir)),
            compiler=data.get("compiler", defaults.compiler),
            objcopy=data.get("objcopy", defaults.objcopy),
            programmer=data.get("programmer", defaults.programmer),
            strategy_order=list(data.get("strategy_order", defaults.strategy_order)),
            strategies=strategies,
            timeout=int(data.get("timeout", defaults.timeout)),
            poll_interval=float(data.get("poll_interval", defaults.poll_interval)),
            start_timeout=float(data.get("start_timeout", defaults.start_timeout)),
            linger_seconds=float(data.get("linger_seconds", defaults.linger_seconds)),
            build_timeout=float(data.get("build_timeout", defaults.build_timeout)),
            flash_timeout=float(data.get("flash_timeout", defaults.flash_timeout)),
            recovery_grace=float(data.get("recovery_grace", defaults.recovery_grace)),
            launcher=data.get("launcher", defaults.launcher),
            state_dir=Path(data.get("state_dir", defaults.state_dir)),
            serial_capture=data.get("serial_capture", defaults.serial_capture),
            capture_seconds=float(data.get("capture_seconds", defaults.capture_seconds)),
            capture_baud=int(data.get("capture_baud", defaults.capture_baud)),
        )


def parse_order(value: str) -> list[str]:
    """Split a comma separated strategy list ("stk500v1, arduino")."""
    return [name.strip() for name in value.split(",") if name.strip()]


def _apply_options(settings: FlashSettings, options: dict[str, str], source: str) -> None:
    path_keys = {"board_dir", "target_dir", "state_dir"}
    str_keys = {"compiler", "objcopy", "programmer", "launcher", "serial_capture"}
    int_keys = {"timeout", "capture_baud"}
    float_keys = {"poll_interval", "start_timeout", "linger_seconds", "build_timeout", "flash_timeout", "recovery_grace", "capture_seconds"}

    for key, value in options.items():
        if value == "":
            continue
        try:
            if key in path_keys:
                setattr(settings, key, Path(value).expanduser())
            elif key in str_keys:
                setattr(settings, key, value)
            elif key in int_keys:
                setattr(settings, key, int(value))
            elif key in float_keys:
                setattr(settings, key, float(value))
            elif key == "strategy_order":
                settings.strategy_order = parse_order(value)
            else:
                raise FlashConfigError(f"Unknown option '{key}' in {source}")
        except ValueError as e:
            raise FlashConfigError(f"Invalid value for '{key}' in {source}: {value}") from e


def load_settings(
    project_dir: Path | None = None,
    config_path: Path | None = None,
    env: dict[str, str] | None = None,
) -> FlashSettings:
    """
    Build settings from defaults, flashguard.ini and the environment.

    Args:
        project_dir: Repository root (current directory when None)
        config_path: Explicit ini file; <project_dir>/flashguard.ini is used if present
        env: Environment mapping (os.environ when None)

    Returns:
        Validated FlashSettings

    Raises:
        FlashConfigError: If the ini file or an environment value is invalid
    """
    environ = os.environ if env is None else env
    settings = FlashSettings(project_dir=(project_dir or Path.cwd()).resolve())

    ini_path = config_path or (settings.project_dir / CONFIG_FILENAME)
    if config_path is not None or ini_path.exists():
        ini = FlashIniConfig(ini_path)
        _apply_options(settings, ini.get_flash_options(), str(ini_path))
        settings.strategies.update(ini.get_strategies())

    env_options = {}
    for key in ("state_dir", "strategy_order", "timeout", "launcher"):
        value = environ.get(f"{ENV_PREFIX}{key.upper()}", "").strip()
        if value:
            env_options[key] = value
    _apply_options(settings, env_options, "environment")

    settings.validate()
    return settings
