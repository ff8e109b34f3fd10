from __future__ import annotations

from typing import Iterable


def normalize_ingredient(ingredient: str) -> str:
    """Lowercase name with any trailing ``(quantity)`` removed."""
    idx = ingredient.find("(")
    if idx > 0:
        ingredient = ingredient[:idx]
    return ingredient.strip().lower()


def split_quantity(ingredient: str) -> tuple[str, str]:
    """Split ``"eggs (6)"`` into ``("eggs", "6")``."""
    idx = ingredient.find("(")
    if idx <= 0:
        return ingredient.strip(), ""
    name = ingredient[:idx].strip()
    quantity = ingredient[idx + 1 :].rstrip().rstrip(")").strip()
    return name, quantity


def compare_ingredients(needed: Iterable[str], available: Iterable[str]) -> list[str]:
    """Return the entries of ``needed`` that nothing in ``available`` covers.

    Matching is case-insensitive and ignores quantities; either name containing
    the other counts as a match ("tomato" covers "cherry tomatoes").
    """
    fridge = {normalize_ingredient(item) for item in available}
    fridge.discard("")
    missing: list[str] = []
    for ingredient in needed:
        normalized = normalize_ingredient(ingredient)
        if not normalized:
            continue
        if not any(have in normalized or normalized in have for have in fridge):
            missing.append(ingredient)
    return missing


__all__ = ["compare_ingredients", "normalize_ingredient", "split_quantity"]
