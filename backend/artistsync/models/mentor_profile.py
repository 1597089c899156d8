from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any


@dataclass
class MentorProfile:
    id: int
    name: str
    origin_source: str
    origin_source_id: str
    created_at: datetime
    last_updated: datetime
    fields: dict[str, Any] = field(default_factory=dict)
