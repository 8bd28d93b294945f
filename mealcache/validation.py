"""
Recipe document normalization.

Used by the Spoonacular adapter on upstream payloads and by the stores on
documents read back, so legacy camelCase documents, string ids and HTML
instruction blobs all end up in one canonical shape.
"""

import re
from typing import Any, Mapping, Optional

from bs4 import BeautifulSoup
from pydantic import ValidationError

from mealcache.core.keys import canonical_recipe_id
from mealcache.errors import InvalidKeyError
from mealcache.models import CacheEntry

# Upstream / legacy key -> canonical key
_RENAMED_KEYS = {
    "readyInMinutes": "ready_in_minutes",
    "glutenFree": "gluten_free",
    "dairyFree": "dairy_free",
    "cachedAt": "cached_at",
    "detailCachedAt": "detail_cached_at",
    "updatedAt": "updated_at",
}

_KNOWN_KEYS = set(CacheEntry.model_fields)

_BLOCK_TAGS = ["li", "p", "div", "h1", "h2", "h3", "h4"]
_LEADING_NUMBER = re.compile(r"^\d+[\.\)]\s*")


def parse_html_instructions(raw: str) -> list[dict[str, Any]]:
    """Split an HTML (or plain text) instruction blob into numbered steps."""
    soup = BeautifulSoup(raw, "html.parser")
    for br in soup.find_all("br"):
        br.replace_with("\n")
    for block in soup.find_all(_BLOCK_TAGS):
        block.insert_before("\n")
        block.insert_after("\n")
    text = soup.get_text().replace("\xa0", " ")

    steps: list[dict[str, Any]] = []
    for line in re.split(r"\n+", text):
        line = line.strip()
        # Fragments this short are bullets or labels
        if len(line) <= 3:
            continue
        line = _LEADING_NUMBER.sub("", line).strip()
        if line:
            steps.append({"number": len(steps) + 1, "step": line})
    return steps


def _normalize_instructions(data: Mapping[str, Any]) -> Optional[list[dict[str, Any]]]:
    analyzed = data.get("analyzedInstructions")
    if isinstance(analyzed, list) and analyzed:
        first = analyzed[0]
        if isinstance(first, Mapping) and isinstance(first.get("steps"), list):
            return [
                {"number": s.get("number") or i + 1, "step": s.get("step") or ""}
                for i, s in enumerate(first["steps"])
                if isinstance(s, Mapping)
            ]

    instructions = data.get("instructions")
    if isinstance(instructions, list):
        steps = []
        for i, s in enumerate(instructions):
            if isinstance(s, Mapping):
                steps.append({"number": s.get("number") or i + 1, "step": s.get("step") or ""})
            elif isinstance(s, str) and s.strip():
                steps.append({"number": i + 1, "step": s.strip()})
        return steps
    if isinstance(instructions, str):
        return parse_html_instructions(instructions) if instructions.strip() else []
    return None


def _normalize_ingredients(data: Mapping[str, Any]) -> Optional[list[dict[str, Any]]]:
    raw = data.get("extendedIngredients")
    if raw is None:
        raw = data.get("ingredients")
    if not isinstance(raw, list):
        return None
    ingredients = []
    for item in raw:
        if not isinstance(item, Mapping):
            continue
        ingredients.append(
            {
                "id": item.get("id") or 0,
                "name": item.get("name") or "",
                "original": item.get("original") or "",
                "amount": item.get("amount"),
                "unit": item.get("unit") or "",
            }
        )
    return ingredients


def normalize_recipe_document(raw: Mapping[str, Any]) -> dict[str, Any]:
    """
    Convert an upstream payload or stored document to canonical field names.

    Raises InvalidKeyError when the id is missing or not coercible.
    Unknown keys are dropped.
    """
    data: dict[str, Any] = {}
    for key, value in raw.items():
        key = _RENAMED_KEYS.get(key, key)
        if key in _KNOWN_KEYS and key not in ("ingredients", "instructions"):
            data[key] = value

    data["id"] = canonical_recipe_id(raw.get("id"))

    ingredients = _normalize_ingredients(raw)
    if ingredients is not None:
        data["ingredients"] = ingredients
    instructions = _normalize_instructions(raw)
    if instructions is not None:
        data["instructions"] = instructions

    return data


def validate_recipe_document(raw: Any) -> tuple[CacheEntry | None, list[dict]]:
    """
    Validate a single stored or upstream document.

    Returns:
        Tuple of (CacheEntry or None, list of error dicts).
    """
    if not isinstance(raw, Mapping):
        return None, [
            {
                "loc": ("document",),
                "msg": f"Document must be an object, got {type(raw).__name__}",
                "type": "type_error",
            }
        ]

    try:
        entry = CacheEntry(**normalize_recipe_document(raw))
        return entry, []
    except InvalidKeyError as e:
        return None, [{"loc": ("document", "id"), "msg": str(e), "type": "invalid_key"}]
    except ValidationError as e:
        errors = []
        for err in e.errors():
            errors.append(
                {
                    "loc": ("document",) + tuple(err["loc"]),
                    "msg": err["msg"],
                    "type": err.get("type", "value_error"),
                }
            )
        return None, errors
