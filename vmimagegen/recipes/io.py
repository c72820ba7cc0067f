"""Recipe loading and the recipe registry.

This module provides helpers for loading recipes from YAML/JSON files and
collecting them into a RecipeRegistry: exactly one base recipe plus the
variants derived from it, ordered by name.
"""

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from vmimagegen.recipes.schema import RecipeSchema
from vmimagegen.types import RecipeRole

logger = logging.getLogger(__name__)

RECIPE_SUFFIXES = (".yaml", ".yml", ".json")


class RecipeError(Exception):
    """Raised when a recipe cannot be loaded or the set of recipes is invalid."""

    def __init__(self, message: str, code: str = "invalid_recipe") -> None:
        super().__init__(message)
        self.code = code


def load_yaml(path: Path) -> dict[str, Any]:
    """Load a YAML file and return its contents as a dict.

    Args:
        path: Path to the YAML file.

    Returns:
        Parsed YAML content as a dictionary.

    Raises:
        FileNotFoundError: If the file does not exist.
        yaml.YAMLError: If the file is not valid YAML.
    """
    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"Expected a YAML mapping, got {type(data).__name__}")
    return data


def load_json(path: Path) -> dict[str, Any]:
    """Load a JSON file and return its contents as a dict.

    Raises:
        FileNotFoundError: If the file does not exist.
        json.JSONDecodeError: If the file is not valid JSON.
    """
    with open(path, encoding="utf-8") as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise ValueError(f"Expected a JSON object, got {type(data).__name__}")
    return data


def load_recipe(path: Path) -> RecipeSchema:
    """Load and validate a recipe from a file (YAML or JSON).

    File format is determined by extension (.yaml, .yml for YAML,
    .json for JSON).

    Args:
        path: Path to the recipe file.

    Returns:
        Validated RecipeSchema instance.

    Raises:
        RecipeError: If the file is missing, malformed or fails validation.
    """
    suffix = path.suffix.lower()
    try:
        if suffix in (".yaml", ".yml"):
            data = load_yaml(path)
        elif suffix == ".json":
            data = load_json(path)
        else:
            raise RecipeError(
                f"Unsupported file extension '{suffix}'. Use .yaml, .yml, or .json",
                code="unsupported_format",
            )
    except FileNotFoundError as e:
        raise RecipeError(f"Recipe file not found: {path}", code="not_found") from e
    except (yaml.YAMLError, json.JSONDecodeError, ValueError) as e:
        raise RecipeError(f"Cannot parse {path}: {e}", code="parse_error") from e

    try:
        return RecipeSchema.model_validate(data)
    except ValidationError as e:
        raise RecipeError(f"Invalid recipe {path}: {e}", code="validation_error") from e


@dataclass
class RecipeRegistry:
    """Named recipes of one build.

    Attributes:
        base: The single base recipe.
        variants: Variant recipes in build order.
    """

    base: RecipeSchema
    variants: list[RecipeSchema] = field(default_factory=list)

    @classmethod
    def from_recipes(cls, recipes: list[RecipeSchema]) -> "RecipeRegistry":
        """Build a registry, distinguishing the base recipe by role.

        Raises:
            RecipeError: On duplicate names or not exactly one base recipe.
        """
        seen: set[str] = set()
        for recipe in recipes:
            if recipe.name in seen:
                raise RecipeError(
                    f"Duplicate recipe name: {recipe.name}", code="duplicate_recipe"
                )
            seen.add(recipe.name)

        bases = [r for r in recipes if r.role == RecipeRole.BASE]
        if len(bases) != 1:
            raise RecipeError(
                f"Expected exactly one base recipe, found {len(bases)}",
                code="base_recipe_count",
            )
        variants = sorted(
            (r for r in recipes if r.role == RecipeRole.VARIANT), key=lambda r: r.name
        )
        return cls(base=bases[0], variants=variants)

    def get(self, name: str) -> RecipeSchema:
        for recipe in [self.base, *self.variants]:
            if recipe.name == name:
                return recipe
        raise RecipeError(f"Recipe not found: {name}", code="not_found")

    def names(self) -> list[str]:
        return [self.base.name, *(r.name for r in self.variants)]


def discover_recipe_files(directory: Path) -> list[Path]:
    """Return recipe files directly inside directory, sorted by name."""
    if not directory.is_dir():
        raise RecipeError(f"Recipes directory not found: {directory}", code="not_found")
    return sorted(
        p for p in directory.iterdir() if p.is_file() and p.suffix.lower() in RECIPE_SUFFIXES
    )


def load_registry(directory: Path) -> RecipeRegistry:
    """Load every recipe file in directory into a registry."""
    recipes = [load_recipe(path) for path in discover_recipe_files(directory)]
    logger.debug("Loaded %d recipe(s) from %s", len(recipes), directory)
    return RecipeRegistry.from_recipes(recipes)


__all__ = [
    "RecipeError",
    "RecipeRegistry",
    "discover_recipe_files",
    "load_json",
    "load_recipe",
    "load_registry",
    "load_yaml",
]
