"""
Firmware artifact builder.

This module drives the external compiler/linker for one named firmware binary
and converts the result into an Intel HEX image:

1. cargo build --release --bin <name>  (inside the board crate)
2. avr-objcopy -O ihex <name>.elf <name>.hex

Both tools are opaque subprocesses; only their exit status and output are
observed. Artifacts are overwritten in place, never cleaned up.

Example usage:
    builder = ArtifactBuilder(board_dir=Path("boards/arduino-uno"),
                              target_dir=Path("target/avr-none/release"))
    artifact = builder.build("blink")
    print(f"{artifact.hex_path} ({artifact.size_bytes} bytes)")
"""

import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path

from .converter import ConversionError, HexConverter


class BuildError(Exception):
    """Raised when the compiler, linker or converter fails."""

    pass


class EmptyArtifactError(BuildError):
    """Raised when conversion reports success but the image is empty."""

    pass


@dataclass
class BuildArtifact:
    """A firmware image ready to be flashed."""

    binary_path: Path
    hex_path: Path
    size_bytes: int


class ArtifactBuilder:
    """Builds a named firmware binary and converts it to HEX."""

    def __init__(
        self,
        board_dir: Path,
        target_dir: Path,
        compiler_cmd: str = "cargo",
        converter: HexConverter | None = None,
        timeout: float = 600.0,
    ):
        """
        Initialize builder.

        Args:
            board_dir: Crate directory the compiler runs in
            target_dir: Directory the compiler writes <name>.elf to
            compiler_cmd: Compiler driver executable
            converter: HEX converter (avr-objcopy by default)
            timeout: Maximum seconds for the compile step
        """
        self.board_dir = board_dir
        self.target_dir = target_dir
        self.compiler_cmd = compiler_cmd
        self.converter = converter or HexConverter()
        self.timeout = timeout

    def compile_command(self, artifact_name: str) -> list[str]:
        return [self.compiler_cmd, "build", "--release", "--bin", artifact_name]

    def compile(self, artifact_name: str) -> Path:
        """
        Compile and link one binary.

        Args:
            artifact_name: Binary name (e.g. "blink")

        Returns:
            Path to the linked .elf

        Raises:
            BuildError: If the compiler fails or no .elf was produced
        """
        if not self.board_dir.is_dir():
            raise BuildError(f"Board directory not found: {self.board_dir}")

        cmd = self.compile_command(artifact_name)
        logging.info(f"Building {artifact_name}: {' '.join(cmd)} (in {self.board_dir})")

        try:
            result = subprocess.run(
                cmd,
                cwd=self.board_dir,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                errors="replace",
                timeout=self.timeout,
                check=False,
            )
        except FileNotFoundError as e:
            raise BuildError(f"Compiler not found: {self.compiler_cmd}") from e
        except subprocess.TimeoutExpired as e:
            raise BuildError(f"Build of {artifact_name} timed out after {self.timeout}s") from e

        for line in (result.stdout or "").splitlines():
            logging.info(f"[build] {line}")

        if result.returncode != 0:
            raise BuildError(f"Build of {artifact_name} failed with exit code {result.returncode}")

        elf_path = self.target_dir / f"{artifact_name}.elf"
        if not elf_path.is_file():
            raise BuildError(f"ELF file not found at: {elf_path}")

        logging.info(f"Build completed: {elf_path}")
        return elf_path

    def convert(self, elf_path: Path) -> BuildArtifact:
        """
        Convert a linked .elf into a flashable artifact.

        Raises:
            BuildError: If conversion fails
            EmptyArtifactError: If the .hex is empty
        """
        hex_path = elf_path.with_suffix(".hex")
        try:
            self.converter.convert(elf_path, hex_path)
        except ConversionError as e:
            raise BuildError(f"Failed to convert ELF to HEX: {e}") from e

        size = hex_path.stat().st_size
        if size == 0:
            # Some toolchains exit 0 after a partial failure
            raise EmptyArtifactError(f"HEX file is empty: {hex_path}")

        logging.info(f"HEX file created: {hex_path.name} ({size} bytes)")
        return BuildArtifact(binary_path=elf_path, hex_path=hex_path, size_bytes=size)

    def build(self, artifact_name: str) -> BuildArtifact:
        """Compile then convert. Conversion is skipped if compilation fails."""
        elf_path = self.compile(artifact_name)
        return self.convert(elf_path)
