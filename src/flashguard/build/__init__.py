"""
Firmware build step: compile/link one binary and convert it to Intel HEX.
"""

from .builder import ArtifactBuilder, BuildArtifact, BuildError, EmptyArtifactError
from .converter import ConversionError, HexConverter

__all__ = [
    "ArtifactBuilder",
    "BuildArtifact",
    "BuildError",
    "EmptyArtifactError",
    "ConversionError",
    "HexConverter",
]
