from __future__ import annotations

import json
from typing import Any, Mapping, Optional, Sequence

SUGGEST_SYSTEM = (
    "You are a cooking expert who helps families decide what to cook for dinner "
    "based on available ingredients."
)
DISH_INFO_SYSTEM = (
    "You are a cooking expert who provides accurate information about dishes and recipes."
)
VISION_SYSTEM = """You are a computer vision expert. Look at the image of a fridge or pantry and list all visible food ingredients.
Be thorough and try to identify as many food items as possible.
Return only a JSON array of ingredient names, no other text.
For example: ["eggs", "milk", "tomatoes", "chicken breast"]
"""
VISION_USER = (
    "What food ingredients do you see in this image? List all of them in a JSON array."
)

_DISH_JSON_SHAPE = """{
  "name": "Full dish name",
  "cuisine": "Cuisine type",
  "ingredients_needed": ["ingredient1", "ingredient2", ...],
  "instructions": ["step1", "step2", ...],
  "description": "Brief description of the dish"
}"""


def suggest_dinner_prompt(
    ingredients: Sequence[str], cuisines: Sequence[str], count: int
) -> str:
    return f"""You are a cooking expert. Based on the available ingredients and preferred cuisines, suggest {count} dinner options.

Available ingredients: {", ".join(ingredients) or "unknown"}

Preferred cuisines: {", ".join(cuisines) or "any"}

Return the suggestions in the following JSON format:
[
  {{
    "name": "Dish name",
    "cuisine": "Cuisine type",
    "description": "Brief description of the dish",
    "ingredients_needed": ["ingredient1", "ingredient2", ...]
  }},
  ...
]

Only return the JSON array, no other text.
"""


def dish_info_prompt(name: str, cuisine: Optional[str] = None) -> str:
    if cuisine:
        intro = (
            f'Please provide detailed information about the dish "{name}" '
            f"from {cuisine} cuisine."
        )
    else:
        intro = (
            f'Please provide detailed information about the dish "{name}".\n'
            "Determine the most likely cuisine for this dish."
        )
    return f"""You are a cooking expert. {intro}
Return the information in the following JSON format:
{_DISH_JSON_SHAPE}
Only return the JSON, no other text.
"""


def parse_ingredients_prompt(text: str) -> str:
    return f"""You are a cooking assistant. Extract all food ingredients from the following text.
Return only a JSON array of ingredient names, no other text.
For example: ["eggs", "milk", "tomatoes", "chicken breast"]

Text: {text}
"""


def chat_message_prompt(intent: str, context: Mapping[str, Any]) -> str:
    return f"""You are a friendly cooking assistant bot for a Slack channel. Generate a short, engaging message for the following intent: "{intent}".
Use the context provided below to personalize the message. Keep it concise and mobile-friendly.
Add appropriate emojis for fun and readability.

Context:
{json.dumps(dict(context), ensure_ascii=False)}

Return only the message text, no explanations or other text.
"""
