from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

QUOTA_TYPES = ("plugins", "pipelines", "apiCalls")
UNLIMITED = -1

DEFAULT_QUOTAS: Dict[str, int] = {"plugins": 10, "pipelines": 10, "apiCalls": 1000}


@dataclass
class Principal:
    """A user account plus the two session-control fields.

    ``token_version`` and ``refresh_token_hash`` are only ever changed through
    the store's atomic session operations.
    """

    id: str
    username: str
    email: str
    password_hash: Optional[str] = None
    role: str = "user"
    organization_id: Optional[str] = None
    is_email_verified: bool = False
    token_version: int = 0
    refresh_token_hash: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.utcnow)

    @classmethod
    def new(
        cls,
        username: str,
        email: str,
        *,
        password_hash: Optional[str] = None,
        role: str = "user",
        organization_id: Optional[str] = None,
    ) -> "Principal":
        return cls(
            id=str(uuid.uuid4()),
            username=username.lower(),
            email=email.lower(),
            password_hash=password_hash,
            role=role,
            organization_id=organization_id,
        )

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


@dataclass
class Organization:
    id: str
    name: str
    owner_id: Optional[str] = None
    member_ids: List[str] = field(default_factory=list)
    quotas: Dict[str, int] = field(default_factory=lambda: dict(DEFAULT_QUOTAS))
    created_at: datetime = field(default_factory=datetime.utcnow)
