"""
Device programmer adapter.

Wraps one avrdude invocation profile ("strategy") per call. Every strategy is
fully non-interactive: stdin is closed, progress bars are suppressed and
stderr is captured together with stdout so the job log keeps everything the
tool printed.

The adapter never retries. Falling back to the next strategy is the job
runner's decision.
"""

import logging
import re
import subprocess
from dataclasses import asdict, dataclass, field
from typing import Any

from ..build.builder import BuildArtifact

DEFAULT_SUCCESS_PATTERN = r"bytes of flash (written|verified)"


@dataclass
class StrategyConfig:
    """One device-programming invocation profile.

    Attributes:
        name: Strategy name used in logs and ordering
        programmer: avrdude programmer id (-c)
        baud: Upload baud rate (-b)
        mcu: Target part (-p)
        extra_args: Additional fixed arguments appended before -U
        success_pattern: Regex that must appear in the output for success
    """

    name: str
    programmer: str
    baud: int
    mcu: str = "atmega328p"
    extra_args: list[str] = field(default_factory=list)
    success_pattern: str = DEFAULT_SUCCESS_PATTERN

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "StrategyConfig":
        return cls(
            name=data["name"],
            programmer=data["programmer"],
            baud=int(data["baud"]),
            mcu=data.get("mcu", "atmega328p"),
            extra_args=list(data.get("extra_args", [])),
            success_pattern=data.get("success_pattern", DEFAULT_SUCCESS_PATTERN),
        )


# Optiboot (Uno) first, then the legacy 57600 baud bootloader
DEFAULT_STRATEGIES: dict[str, StrategyConfig] = {
    "arduino": StrategyConfig(name="arduino", programmer="arduino", baud=115200),
    "stk500v1": StrategyConfig(name="stk500v1", programmer="stk500v1", baud=57600),
}

DEFAULT_STRATEGY_ORDER = ["arduino", "stk500v1"]


@dataclass
class ProgrammerAttempt:
    """Result of one programmer strategy run."""

    strategy_name: str
    exit_code: int
    raw_output: str
    succeeded: bool


def resolve_strategy_order(order: list[str], strategies: dict[str, StrategyConfig]) -> list[StrategyConfig]:
    """Turn an ordered list of names into strategy configs.

    Args:
        order: Strategy names in the order they should be tried
        strategies: Known strategies by name

    Returns:
        Strategy configs in order, duplicates removed

    Raises:
        ValueError: If the order is empty or names an unknown strategy
    """
    resolved: list[StrategyConfig] = []
    seen: set[str] = set()
    for name in order:
        name = name.strip()
        if not name or name in seen:
            continue
        if name not in strategies:
            available = ", ".join(sorted(strategies))
            raise ValueError(f"Unknown programmer strategy '{name}'. Available strategies: {available}")
        resolved.append(strategies[name])
        seen.add(name)

    if not resolved:
        raise ValueError("At least one programmer strategy is required")
    return resolved


class ProgrammerAdapter:
    """Runs the external programmer tool for a single strategy."""

    def __init__(self, programmer_cmd: str = "avrdude", timeout: float = 120.0):
        """Initialize adapter.

        Args:
            programmer_cmd: Programmer executable name or path
            timeout: Maximum seconds a single attempt may run
        """
        self.programmer_cmd = programmer_cmd
        self.timeout = timeout

    def build_command(self, strategy: StrategyConfig, artifact: BuildArtifact, port: str) -> list[str]:
        """Build the avrdude command line for a strategy."""
        return [
            self.programmer_cmd,
            "-p", strategy.mcu,
            "-c", strategy.programmer,
            "-P", port,
            "-b", str(strategy.baud),
            "-q",  # no progress bars
            "-D",  # no chip erase, the bootloader handles pages
            *strategy.extra_args,
            "-U", f"flash:w:{artifact.hex_path}:i",
        ]

    def flash(self, strategy: StrategyConfig, artifact: BuildArtifact, port: str) -> ProgrammerAttempt:
        """Write an artifact to the device with one strategy.

        Args:
            strategy: Invocation profile to use
            artifact: Built firmware image
            port: Serial port of the device

        Returns:
            ProgrammerAttempt describing what happened
        """
        cmd = self.build_command(strategy, artifact, port)
        logging.info(f"[{strategy.name}] {' '.join(cmd)}")

        try:
            result = subprocess.run(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                errors="replace",
                timeout=self.timeout,
                check=False,
            )
        except subprocess.TimeoutExpired as e:
            output = e.stdout if isinstance(e.stdout, str) else (e.stdout or b"").decode("utf-8", errors="replace")
            output += f"\n{self.programmer_cmd} timed out after {self.timeout}s"
            logging.error(f"[{strategy.name}] timed out after {self.timeout}s")
            return ProgrammerAttempt(strategy.name, -1, output, False)
        except FileNotFoundError:
            message = f"Programmer not found: {self.programmer_cmd}"
            logging.error(f"[{strategy.name}] {message}")
            return ProgrammerAttempt(strategy.name, 127, message, False)

        output = result.stdout or ""
        for line in output.splitlines():
            logging.info(f"[{strategy.name}] {line}")

        succeeded = result.returncode == 0 and self.is_success_output(strategy, output)
        if result.returncode == 0 and not succeeded:
            logging.warning(f"[{strategy.name}] exit code 0 but no success indicator in output")

        return ProgrammerAttempt(
            strategy_name=strategy.name,
            exit_code=result.returncode,
            raw_output=output,
            succeeded=succeeded,
        )

    @staticmethod
    def is_success_output(strategy: StrategyConfig, output: str) -> bool:
        return re.search(strategy.success_pattern, output) is not None
