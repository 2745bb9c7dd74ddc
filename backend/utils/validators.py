"""
Input validation utilities
"""
from typing import Iterable

VALID_ENTITY_TYPES = {"branch", "bck", "supplier"}


def validate_entity_type(entity_type: str) -> str:
    """Validate an audited entity type (branch, bck, supplier)"""
    value = entity_type.lower()
    if value not in VALID_ENTITY_TYPES:
        raise ValueError(f"Invalid entity type. Must be one of: {sorted(VALID_ENTITY_TYPES)}")
    return value


def validate_section_weights(weights: Iterable[float]) -> list[float]:
    """Section weights of a weighted template must add up to 100"""
    weights = list(weights)
    total = sum(weights)
    if weights and abs(total - 100) > 0.01:
        raise ValueError(f"Section weights must sum to 100 (got {total:g})")
    return weights
