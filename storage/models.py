"""Dataclasses representing stored user records."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from services.lnmarkets_client import Credentials


@dataclass(slots=True)
class UserRecord:
    owner: int
    username: Optional[str]
    credentials: Optional[Credentials]
    created_at: datetime
    updated_at: datetime

    @property
    def has_credentials(self) -> bool:
        return self.credentials is not None
