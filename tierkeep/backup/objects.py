"""Value types shared by the storage clients and the selection functions."""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict


@dataclass(frozen=True)
class StorageObject:
    """An immutable object in the hot tier."""

    key: str
    size: int
    last_modified: datetime

    @classmethod
    def from_listing(cls, entry: Dict[str, Any]) -> 'StorageObject':
        """Build from a `list_objects_v2` Contents entry."""
        last_modified = entry['LastModified']
        if last_modified.tzinfo is None:
            last_modified = last_modified.replace(tzinfo=timezone.utc)
        return cls(key=entry['Key'], size=entry['Size'], last_modified=last_modified)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'key': self.key,
            'size': self.size,
            'last_modified': self.last_modified.isoformat()
        }
