from whatsfordinner.fridge.ingredients import compare_ingredients, normalize_ingredient
from whatsfordinner.fridge.store import FridgeStore
from whatsfordinner.fridge.suggestions import SuggestionStore

__all__ = [
    "FridgeStore",
    "SuggestionStore",
    "compare_ingredients",
    "normalize_ingredient",
]
