"""Shared type definitions for vmimagegen.

This module contains dataclasses and enums shared across subpackages to
avoid circular imports.
"""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path


class RecipeRole(str, Enum):
    """Role of a recipe in a build."""

    BASE = "base"
    VARIANT = "variant"


class PartitionRole(str, Enum):
    """Role of a partition in the fixed image layout."""

    BIOS_BOOT = "bios-boot"
    EFI = "efi"
    ROOT = "root"


@dataclass
class ArtifactInfo:
    """Information about a finished build artifact."""

    filename: str
    path: Path
    checksum_path: Path
    size_bytes: int
    sha256: str
    recipe: str | None = None


@dataclass
class BuildReport:
    """Result of a completed build run."""

    build_version: str
    base_image: Path
    artifacts: list[ArtifactInfo] = field(default_factory=list)
    manifest_path: Path | None = None


__all__ = [
    "ArtifactInfo",
    "BuildReport",
    "PartitionRole",
    "RecipeRole",
]
