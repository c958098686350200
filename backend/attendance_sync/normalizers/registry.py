"""Normalizer registry: maps source shapes to normalizer functions."""

import logging
from typing import Callable

from attendance_sync.enums import SourceShape

logger = logging.getLogger(__name__)

# Source shape -> normalizer function mapping
_REGISTRY: dict[SourceShape, Callable] = {}


def register_normalizer(shape: SourceShape):
    """Decorator to register a normalizer function for a source shape."""
    def decorator(func: Callable):
        _REGISTRY[shape] = func
        logger.debug(f"Registered normalizer for shape: {shape.value}")
        return func
    return decorator


def get_normalizer(shape: SourceShape) -> Callable | None:
    """Look up the normalizer for a given source shape."""
    return _REGISTRY.get(shape)


def list_shapes() -> list[SourceShape]:
    """List all shapes with a registered normalizer."""
    return list(_REGISTRY.keys())
