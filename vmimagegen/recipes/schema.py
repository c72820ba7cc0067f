"""Pydantic models for image recipes.

A recipe describes either the base image (role: base) or one variant
derived from it (role: variant). Recipes are immutable once loaded.
"""

import re
import string
from typing import Annotated

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from vmimagegen.disk.layout import LayoutError, parse_size
from vmimagegen.types import RecipeRole

RECIPE_NAME_PATTERN = re.compile(r"^[a-zA-Z0-9_.\-]+$")
IMAGE_NAME_FIELDS = {"build_version", "arch"}
CONVERT_FORMATS = {"qcow2", "vmdk", "vdi", "vhdx", "raw"}


class ConvertSchema(BaseModel):
    """Built-in packaging step using qemu-img convert.

    Attributes:
        format: Output format passed to qemu-img -O.
        compress: Compress the output (-c).
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    format: str = Field(default="qcow2", description="qemu-img output format")
    compress: bool = Field(default=True, description="Compress the output image")

    @field_validator("format")
    @classmethod
    def validate_format(cls, v: str) -> str:
        """Validate format is one qemu-img can write."""
        if v not in CONVERT_FORMATS:
            raise ValueError(f"format must be one of {sorted(CONVERT_FORMATS)}, got '{v}'")
        return v


class RecipeSchema(BaseModel):
    """Complete recipe schema.

    Attributes:
        name: Unique recipe identifier.
        role: base or variant.
        description: Optional longer description.
        image_name: Final file name template; may use {build_version} and {arch}.
        disk_size: Optional size override for the variant image (e.g. "16G").
        packages: Packages installed into the mounted root.
        services: systemd units enabled through the preset file.
        pre_hook: Shell script run with the image mounted at $MOUNT.
        post_hook: Shell script turning the scratch image ($1) into the
            final artifact ($2).
        convert: Built-in post step used when post_hook is not set.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    name: Annotated[
        str, Field(description="Unique recipe identifier", min_length=1, max_length=255)
    ]
    role: RecipeRole = Field(default=RecipeRole.VARIANT, description="Recipe role")
    description: str | None = Field(default=None, description="Longer description")
    image_name: str | None = Field(
        default=None, description="Final artifact file name template"
    )
    disk_size: str | None = Field(default=None, description="Disk size override")
    packages: tuple[str, ...] = Field(default=(), description="Packages to install")
    services: tuple[str, ...] = Field(default=(), description="Services to enable")
    pre_hook: str | None = Field(default=None, description="Mounted-root hook")
    post_hook: str | None = Field(default=None, description="Packaging hook")
    convert: ConvertSchema | None = Field(default=None, description="Built-in packaging")

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        """Validate name matches safe pattern."""
        if not RECIPE_NAME_PATTERN.match(v):
            raise ValueError(
                f"name must match pattern {RECIPE_NAME_PATTERN.pattern}, got '{v}'"
            )
        return v

    @field_validator("image_name")
    @classmethod
    def validate_image_name(cls, v: str | None) -> str | None:
        """Validate the template only uses known fields and yields a bare file name."""
        if v is None:
            return v
        fields = {
            name for _, name, _, _ in string.Formatter().parse(v) if name is not None
        }
        unknown = fields - IMAGE_NAME_FIELDS
        if unknown:
            raise ValueError(f"image_name uses unknown fields: {sorted(unknown)}")
        if "/" in v or not v.strip():
            raise ValueError("image_name must be a plain file name")
        return v

    @field_validator("disk_size")
    @classmethod
    def validate_disk_size(cls, v: str | None) -> str | None:
        """Validate disk_size parses as a size."""
        if v is None:
            return v
        try:
            parse_size(v)
        except LayoutError as e:
            raise ValueError(str(e)) from e
        return v

    @field_validator("packages", "services")
    @classmethod
    def validate_string_list(cls, v: tuple[str, ...]) -> tuple[str, ...]:
        """Validate package/service lists have valid entries."""
        for item in v:
            if not item or not item.strip():
                raise ValueError("list items must be non-empty strings")
            if any(c.isspace() for c in item):
                raise ValueError(
                    f"list items must not contain whitespace, got '{item}'"
                )
        return v

    @model_validator(mode="after")
    def validate_role(self) -> "RecipeSchema":
        """Variants need a final name; the base recipe is never packaged."""
        if self.role == RecipeRole.VARIANT and not self.image_name:
            raise ValueError("variant recipes require image_name")
        if self.role == RecipeRole.BASE and (
            self.post_hook or self.convert or self.packages or self.services
        ):
            raise ValueError(
                "base recipe only supports pre_hook; packages, services and "
                "packaging belong to variants"
            )
        if self.post_hook and self.convert:
            raise ValueError("post_hook and convert are mutually exclusive")
        return self

    def render_image_name(self, build_version: str, arch: str) -> str:
        """Fill the image_name template."""
        if self.image_name is None:
            raise ValueError(f"Recipe {self.name} has no image_name")
        return self.image_name.format(build_version=build_version, arch=arch)


__all__ = ["ConvertSchema", "RecipeSchema"]
