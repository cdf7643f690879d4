"""Database models."""
from cloudaudit.models.inspection_item_result import InspectionItemResult

__all__ = [
    "InspectionItemResult",
]
