from __future__ import annotations

from dataclasses import asdict, dataclass, fields
from datetime import datetime
from typing import Any, Dict, Mapping, Optional


def _norm_text(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    return value.strip() or None


@dataclass(frozen=True)
class ProfileFields:
    """Profile submitted together with a redeem code."""

    wedding_date: Optional[str] = None
    last_groom_name_kr: Optional[str] = None
    groom_name_kr: Optional[str] = None
    last_groom_name_en: Optional[str] = None
    groom_name_en: Optional[str] = None
    last_bride_name_kr: Optional[str] = None
    bride_name_kr: Optional[str] = None
    last_bride_name_en: Optional[str] = None
    bride_name_en: Optional[str] = None

    @classmethod
    def from_mapping(cls, data: Optional[Mapping[str, Any]]) -> "ProfileFields":
        data = data or {}
        return cls(**{f.name: _norm_text(data.get(f.name)) for f in fields(cls)})

    def to_dict(self) -> Dict[str, Optional[str]]:
        return asdict(self)

    @property
    def groom_name(self) -> str:
        return f"{self.last_groom_name_kr or ''}{self.groom_name_kr or ''}".strip()

    @property
    def bride_name(self) -> str:
        return f"{self.last_bride_name_kr or ''}{self.bride_name_kr or ''}".strip()


@dataclass(frozen=True)
class RedeemCode:
    code: str
    page_id: Optional[str]  # None = not activated yet
    expires_at: Optional[datetime]
    used_at: Optional[datetime]
    used_by_identity_id: Optional[str]
    created_at: Optional[datetime] = None
    claim_profile: Optional[Dict[str, Any]] = None

    def is_redeemable(self, now: datetime) -> bool:
        if not self.page_id or self.used_at is not None:
            return False
        return self.expires_at is None or self.expires_at > now

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "page_id": self.page_id,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "used_at": self.used_at.isoformat() if self.used_at else None,
            "used_by_identity_id": self.used_by_identity_id,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


@dataclass(frozen=True)
class IdentityAccount:
    """One row per external identity; `page_id` is set once a code is redeemed."""

    identity_id: str
    page_id: Optional[str]
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass(frozen=True)
class ServiceAccount:
    """Downstream-facing account the proxy token is minted from."""

    id: str
    identity_id: str
    username: str
    role: Optional[str]
    page_id: Optional[str]
    wedding_date: Optional[str]

    def public_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "username": self.username,
            "page_id": self.page_id,
            "wedding_date": self.wedding_date,
        }
