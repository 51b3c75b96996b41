"""
tasktrail errors -- exception taxonomy shared by every layer.

All user-facing failures derive from TrailError and carry enough context
(entity type, entity id, field) for a caller to point at the offender.
SearchDegradedError and EmbeddingUnavailableError are internal signals:
the search and sync layers catch them and degrade instead of surfacing them.
"""

from typing import Any, Dict, List, Optional


class TrailError(Exception):
    """Base class for all tasktrail errors."""

    def __init__(
        self,
        message: str,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
        field: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.field = field

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"error": type(self).__name__, "message": self.message}
        if self.entity_type:
            data["entity_type"] = self.entity_type
        if self.entity_id:
            data["entity_id"] = self.entity_id
        if self.field:
            data["field"] = self.field
        return data


class NotFoundError(TrailError):
    """Referenced or target entity does not exist."""


class ValidationError(TrailError):
    """Malformed input: missing field, bad enum value, out-of-range priority, dangling reference."""


class CycleError(TrailError):
    """A dependency edge or parent link would close a cycle."""

    def __init__(self, message: str, path: Optional[List[str]] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.path = list(path or [])

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        if self.path:
            data["path"] = self.path
        return data


class AllocationError(TrailError):
    """Identifier counter is missing or corrupt (store not initialized)."""


class SearchDegradedError(TrailError):
    """Semantic channel unusable for this query. Internal; triggers lexical-only results."""


class EmbeddingUnavailableError(TrailError):
    """No embedding backend could produce a vector."""
