from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Optional


@dataclass
class User:
    """Stored account record. The password hash lives in a separate credential record."""

    id: str
    name: str
    email: str
    phone: str
    role: str = "buyer"
    location: str = ""
    farm_name: str = ""
    farm_location: str = ""
    is_verified: bool = False
    is_active: bool = True
    created_at: datetime = field(default_factory=datetime.utcnow)
    meta: Dict | None = None


@dataclass
class UserMFAConfig:
    user_id: str
    secret: str
    enabled: bool = False
    created_at: datetime = field(default_factory=datetime.utcnow)
    meta: Dict | None = None


@dataclass
class PasswordResetToken:
    """Single-use reset grant; only the SHA-256 of the emailed token is kept."""

    token_hash: str
    user_id: str
    expires_at: datetime
    created_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class BackupCode:
    user_id: str
    code_hash: str
    created_at: datetime = field(default_factory=datetime.utcnow)
    used_at: Optional[datetime] = None

    @property
    def used(self) -> bool:
        return self.used_at is not None
