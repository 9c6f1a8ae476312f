"""Recipe storage with validation on every write."""

from __future__ import annotations

import logging
import time
from typing import Any

from genflow.errors import NotFoundError, ValidationError
from genflow.models import Recipe, generate_id
from genflow.store import RECIPES, DocumentStore
from genflow.validator import RecipeValidator, parse_recipe

logger = logging.getLogger(__name__)

# Fields a caller may change through update(); id and version are managed here.
_UPDATABLE = ("name", "description", "stageType", "nodes", "edges", "executionConfig", "metadata")


class RecipeManager:
    def __init__(self, store: DocumentStore, validator: RecipeValidator | None = None):
        self.store = store
        self.validator = validator or RecipeValidator()

    def get(self, recipe_id: str) -> Recipe:
        doc = self.store.get(RECIPES, recipe_id)
        if doc is None:
            raise NotFoundError(f"Recipe {recipe_id} not found")
        return parse_recipe(doc)

    def list_recipes(self, stage_type: str | None = None, include_inactive: bool = False) -> list[Recipe]:
        filters = {"stageType": stage_type} if stage_type else {}
        recipes = [parse_recipe(d) for d in self.store.list(RECIPES, **filters)]
        if not include_inactive:
            recipes = [r for r in recipes if r.metadata.get("isActive", True)]
        return sorted(recipes, key=lambda r: r.name)

    def create(self, data: dict[str, Any], created_by: str = "system") -> Recipe:
        """Validate and store a new recipe. An id in ``data`` is kept if it is unused."""
        if not data.get("name"):
            raise ValidationError("missing_name", "Recipe name is required")
        recipe = parse_recipe(data)
        if not data.get("id"):
            recipe.id = generate_id("recipe_")
        elif self.store.get(RECIPES, recipe.id) is not None:
            raise ValidationError("duplicate_recipe_id", f"Recipe {recipe.id} already exists")

        self.validator.validate(recipe)

        now = time.time()
        recipe.version = 1
        recipe.metadata = {
            "isActive": True,
            "tags": [],
            **recipe.metadata,
            "createdAt": now,
            "updatedAt": now,
            "createdBy": created_by,
        }
        self.store.put(RECIPES, recipe.id, recipe.to_dict())
        logger.info(f"Created recipe {recipe.id} ({recipe.name}, {len(recipe.nodes)} nodes)")
        return recipe

    def update(self, recipe_id: str, updates: dict[str, Any]) -> Recipe:
        """Apply updates and bump the version. Running executions keep their own copy."""
        current = self.get(recipe_id)
        doc = current.to_dict()
        for key in _UPDATABLE:
            if key in updates:
                doc[key] = updates[key]
        if "metadata" in updates:
            doc["metadata"] = {**current.metadata, **(updates["metadata"] or {})}

        recipe = parse_recipe(doc)
        self.validator.validate(recipe)
        recipe.version = current.version + 1
        recipe.metadata["updatedAt"] = time.time()
        self.store.put(RECIPES, recipe.id, recipe.to_dict())
        logger.info(f"Updated recipe {recipe.id} to v{recipe.version}")
        return recipe

    def delete(self, recipe_id: str):
        if not self.store.delete(RECIPES, recipe_id):
            raise NotFoundError(f"Recipe {recipe_id} not found")
        logger.info(f"Deleted recipe {recipe_id}")

    def validate(self, recipe_id: str) -> list[str]:
        return self.validator.validate(self.get(recipe_id))
