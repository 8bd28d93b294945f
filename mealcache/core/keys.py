"""
Canonical recipe keys.
Upstream payloads and older stored documents mix int and string ids; everything
past the store boundary uses the positive int form produced here.
"""

from typing import Any, Iterable, List, Tuple

from mealcache.errors import InvalidKeyError


def canonical_recipe_id(value: Any) -> int:
    """Coerce an int, integral float or digit string to a positive int id."""
    # bool is an int subclass; True must not become recipe 1
    if isinstance(value, bool):
        raise InvalidKeyError(value, "Boolean is not a recipe id")
    if isinstance(value, int):
        recipe_id = value
    elif isinstance(value, float):
        if not value.is_integer():
            raise InvalidKeyError(value, "Non-integral recipe id")
        recipe_id = int(value)
    elif isinstance(value, str):
        text = value.strip()
        # isdigit alone admits superscripts and other non-ASCII digits int() rejects
        if not (text.isascii() and text.isdigit()):
            raise InvalidKeyError(value)
        recipe_id = int(text)
    else:
        raise InvalidKeyError(value, f"Unsupported id type {type(value).__name__}")

    if recipe_id <= 0:
        raise InvalidKeyError(value, "Recipe id must be positive")
    return recipe_id


def canonical_recipe_ids(values: Iterable[Any]) -> Tuple[List[int], List[InvalidKeyError]]:
    """
    Canonicalize and de-duplicate ids, keeping first-seen order.
    Values that are not recipe ids are returned as errors instead of raised.
    """
    seen: set[int] = set()
    ids: List[int] = []
    rejected: List[InvalidKeyError] = []
    for value in values:
        try:
            recipe_id = canonical_recipe_id(value)
        except InvalidKeyError as e:
            rejected.append(e)
            continue
        if recipe_id not in seen:
            seen.add(recipe_id)
            ids.append(recipe_id)
    return ids, rejected


def document_key(recipe_id: int) -> str:
    """Document name used by key-value document stores."""
    return str(recipe_id)
