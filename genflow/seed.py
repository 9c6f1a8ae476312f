"""Seed loading: populate a store with recipes, prompt templates and adaptor configs from JSON.

Seed file shape::

    {
      "recipes": [ {...recipe...} ],
      "promptTemplates": [ {...template...} ],
      "adaptorConfigs": [ {...config...} ]
    }

Recipes are validated like any other write. Documents whose id already exists
are left alone unless ``overwrite`` is set.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

from genflow.models import AdaptorConfig, PromptTemplate
from genflow.recipes import RecipeManager
from genflow.store import ADAPTOR_CONFIGS, PROMPT_TEMPLATES, RECIPES, DocumentStore

logger = logging.getLogger(__name__)


def load_seed_file(path: Path) -> dict[str, Any]:
    with open(path) as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise ValueError(f"Seed file {path} must contain a JSON object")
    return data


def seed_store(store: DocumentStore, data: dict[str, Any], overwrite: bool = False) -> dict[str, int]:
    """Write seed documents into the store. Returns how many of each kind were written."""
    counts = {RECIPES: 0, PROMPT_TEMPLATES: 0, ADAPTOR_CONFIGS: 0}
    recipes = RecipeManager(store)

    for doc in data.get("recipes", []):
        recipe_id = doc.get("id")
        if recipe_id and store.get(RECIPES, recipe_id) is not None:
            if not overwrite:
                logger.debug(f"Recipe {recipe_id} already present, skipping")
                continue
            store.delete(RECIPES, recipe_id)
        recipes.create(doc, created_by="seed")
        counts[RECIPES] += 1

    for doc in data.get("promptTemplates", data.get("prompt_templates", [])):
        template = PromptTemplate.from_dict(doc)
        if _write(store, PROMPT_TEMPLATES, template.id, template.to_dict(), overwrite):
            counts[PROMPT_TEMPLATES] += 1

    for doc in data.get("adaptorConfigs", data.get("adaptor_configs", [])):
        adaptor_config = AdaptorConfig.from_dict(doc)
        if _write(store, ADAPTOR_CONFIGS, adaptor_config.id, adaptor_config.to_dict(), overwrite):
            counts[ADAPTOR_CONFIGS] += 1

    logger.info(
        f"Seeded {counts[RECIPES]} recipes, {counts[PROMPT_TEMPLATES]} prompt templates, "
        f"{counts[ADAPTOR_CONFIGS]} adaptor configs"
    )
    return counts


def _write(store: DocumentStore, collection: str, doc_id: str, doc: dict, overwrite: bool) -> bool:
    if not overwrite and store.get(collection, doc_id) is not None:
        return False
    store.put(collection, doc_id, doc)
    return True
