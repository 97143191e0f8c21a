from __future__ import annotations
from .interfaces import ModelProtocol
from typing import Any, Iterable, Type
import re


def _pascalcase_to_snake_case(name: str) -> str:
    """Simple function to turn PascalCase to snake_case.
        Borrowed from https://stackoverflow.com/a/1176023
    """
    return re.sub(r'(?<!^)(?=[A-Z])', '_', name).lower()

def _get_id_column(cls: Type[ModelProtocol]) -> str:
    """Default foreign key name for a model class, e.g. `user_id`."""
    return _pascalcase_to_snake_case(cls.__name__) + f'_{cls.id_column}'

def _listify(value: Any) -> list|dict:
    """Normalize a `$in` operand to a list. Sub-query descriptors
        (dicts) are left as they are.
    """
    if isinstance(value, dict):
        return value
    if isinstance(value, (list, tuple, set, frozenset)):
        return list(value)
    return [value]

def _unique(items: Iterable) -> list:
    """De-duplicate while keeping insertion order."""
    result = []
    for item in items:
        if item not in result:
            result.append(item)
    return result
