"""Image recipes: schema, loading and hook execution."""

from vmimagegen.recipes.io import RecipeError, RecipeRegistry, load_recipe, load_registry
from vmimagegen.recipes.schema import ConvertSchema, RecipeSchema

__all__ = [
    "ConvertSchema",
    "RecipeError",
    "RecipeRegistry",
    "RecipeSchema",
    "load_recipe",
    "load_registry",
]
