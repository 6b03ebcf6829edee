from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """A store write collided with an existing flow or run id.

    ``detail`` always carries ``<entity>_id`` so API errors can name the
    conflicting record.
    """

    def __init__(self, message: str, *, entity: str, key: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.entity = entity
        self.key = key
        self.detail = {f"{entity}_id": key, **(detail or {})}
