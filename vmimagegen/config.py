"""Configuration settings for vmimagegen.

Uses pydantic-settings for config parsing from environment variables
and defaults. Configuration precedence: CLI flags > env vars > defaults.
"""

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_guest_inputs() -> list[str]:
    """Return the files copied from the shared host directory into the guest."""
    return ["pyproject.toml", "README.md", "vmimagegen", "images"]


def _default_guest_packages() -> list[str]:
    """Return the extra packages installed in the guest before building."""
    return ["python-pip", "qemu-img", "arch-install-scripts", "gptfdisk", "dosfstools"]


class Settings(BaseSettings):
    """Application settings.

    Settings are loaded from environment variables with the VMIMG_ prefix.
    CLI flags can override these at runtime.
    """

    model_config = SettingsConfigDict(
        env_prefix="VMIMG_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    # Paths
    project_dir: Path = Field(
        default_factory=Path.cwd,
        description="Directory holding recipes and shared with the build VM",
    )
    output_dir: Path = Field(
        default=Path("output"),
        description="Directory receiving final artifacts (relative to project_dir)",
    )
    tmp_root: Path = Field(
        default=Path("tmp"),
        description="Parent of per-build working directories (relative to project_dir)",
    )
    recipes_dir: Path = Field(
        default=Path("images"),
        description="Directory of recipe files (relative to project_dir)",
    )
    package_cache_dir: Path = Field(
        default=Path("/var/cache/apt/archives"),
        description="Host package download cache bind-mounted into images",
    )
    package_cache_target: str = Field(
        default="var/cache/apt/archives",
        description="Package cache location inside the image root",
    )

    # Image layout
    default_disk_size: str = Field(
        default="16G",
        description="Size of the base image",
    )
    base_image_name: str = Field(
        default="image.img",
        description="File name of the base image inside the working directory",
    )
    distro_name: str = Field(default="AOSC OS", description="Distribution name")
    root_partition_name: str = Field(
        default="AOSC OS root",
        description="GPT name of the root partition",
    )
    preset_file: str = Field(
        default="usr/lib/systemd/system-preset/80-aosc-image.preset",
        description="systemd preset file receiving 'enable' directives",
    )

    # Bootstrap
    mirror: str = Field(
        default="https://repo.aosc.io/debs",
        description="Package mirror used for bootstrapping",
    )
    arch: str | None = Field(
        default=None,
        description="Target architecture (asks dpkg when not set)",
    )
    bootstrap_branch: str = Field(default="stable", description="Bootstrap branch")
    bootstrap_config: Path = Field(
        default=Path("/usr/share/aoscbootstrap/config/aosc-mainline.toml"),
        description="aoscbootstrap configuration file",
    )
    bootstrap_include_files: Path = Field(
        default=Path("/usr/share/aoscbootstrap/recipes/base.lst"),
        description="aoscbootstrap package list",
    )

    # Package manager inside the image
    chroot_command: list[str] = Field(
        default_factory=lambda: ["arch-chroot"],
        description="Command prefix used to run a program inside the mounted root",
    )
    package_install_command: list[str] = Field(
        default_factory=lambda: ["/usr/bin/oma", "install", "--no-check-dbus", "-y"],
        description="Package install command run inside the mounted root",
    )

    # Timing
    console_char_timeout: float = Field(
        default=240,
        ge=1,
        description="Seconds to wait for each console byte",
    )
    partition_wait_attempts: int = Field(
        default=10,
        ge=1,
        le=100,
        description="Polls for loop partition nodes before giving up",
    )
    partition_wait_initial_delay: float = Field(
        default=0.5,
        gt=0,
        description="First delay between partition node polls (seconds)",
    )
    partition_wait_max_delay: float = Field(
        default=5.0,
        gt=0,
        description="Upper bound of the partition poll backoff (seconds)",
    )

    # Throwaway build VM
    vm_mirror: str = Field(
        default="https://mirror.pkgbuild.com",
        description="Mirror passed to the installer environment",
    )
    vm_memory_mb: int = Field(default=768, ge=256, description="Guest memory (MiB)")
    vm_scratch_disk_size: str = Field(
        default="4G",
        description="Size of the guest scratch disk",
    )
    vm_iso_glob: str = Field(
        default="archlinux-*-x86_64.iso",
        description="Glob used to find a local installer ISO in project_dir",
    )
    guest_inputs: list[str] = Field(
        default_factory=_default_guest_inputs,
        description="Paths copied from the shared directory into the guest",
    )
    guest_packages: list[str] = Field(
        default_factory=_default_guest_packages,
        description="Extra packages installed in the guest",
    )
    guest_build_command: str = Field(
        default=(
            "pip install --break-system-packages . && vmimagegen build {build_version}"
        ),
        description="Shell command running the build pipeline inside the guest",
    )

    # Identity of the user who invoked sudo; artifacts are handed back to it
    sudo_uid: int | None = Field(
        default=None,
        validation_alias="SUDO_UID",
        description="Owner restored on artifacts (from sudo)",
    )
    sudo_gid: int | None = Field(
        default=None,
        validation_alias="SUDO_GID",
        description="Group restored on artifacts (from sudo)",
    )

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )

    @property
    def invoking_owner(self) -> tuple[int, int] | None:
        """uid/gid of the unprivileged user behind sudo, when both are known."""
        if self.sudo_uid is None or self.sudo_gid is None:
            return None
        return self.sudo_uid, self.sudo_gid

    def resolve(self, path: Path) -> Path:
        """Resolve a configured path against project_dir."""
        if path.is_absolute():
            return path
        return self.project_dir / path

    @property
    def output_path(self) -> Path:
        return self.resolve(self.output_dir)

    @property
    def tmp_path(self) -> Path:
        return self.resolve(self.tmp_root)

    @property
    def recipes_path(self) -> Path:
        return self.resolve(self.recipes_dir)


def get_settings() -> Settings:
    """Get the application settings singleton.

    Returns:
        Settings instance loaded from environment.
    """
    return Settings()


def print_settings_json(settings: Settings | None = None) -> str:
    """Render effective settings as JSON.

    Args:
        settings: Optional settings instance; uses default if not provided.

    Returns:
        JSON string of effective settings.
    """
    if settings is None:
        settings = get_settings()
    return settings.model_dump_json(indent=2)


__all__ = ["Settings", "get_settings", "print_settings_json"]
