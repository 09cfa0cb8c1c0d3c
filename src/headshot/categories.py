"""Contact categories and their translation to the remote API vocabulary."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class Category:
    label: str
    value: str
    icon: str


# Miscellaneous stays last.
CATEGORIES: tuple[Category, ...] = (
    Category(label="Friends & Family", value="friends-family", icon="heart"),
    Category(label="Community", value="community", icon="globe"),
    Category(label="Work", value="work", icon="briefcase"),
    Category(label="Goals & Hobbies", value="goals-hobbies", icon="trophy"),
    Category(label="Miscellaneous", value="miscellaneous", icon="star"),
)

DEFAULT_CATEGORY = "miscellaneous"

_APP_TO_API: dict[str, str] = {
    "friends-family": "Family",
    "community": "Community",
    "work": "Work",
    "goals-hobbies": "Pursuits",
    "miscellaneous": "Miscellaneous",
}

_API_TO_APP: dict[str, str] = {api: app for app, api in _APP_TO_API.items()}


def map_category_to_api(app_category: str) -> str:
    """Translate a kebab-case app category; unknown values become Miscellaneous."""
    return _APP_TO_API.get(app_category, "Miscellaneous")


def map_category_from_api(api_category: str) -> str:
    return _API_TO_APP.get(api_category, DEFAULT_CATEGORY)


def is_known_category(value: str) -> bool:
    return value in _APP_TO_API
