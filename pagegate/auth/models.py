from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional

NAVER_SUBJECT_PREFIX = "naver:"


@dataclass(frozen=True)
class SessionCredential:
    """Signed, client-held proof of identity. Never stored server-side."""

    subject_id: str  # "naver:<provider id>"
    issued_at: int
    expires_at: int
    display_name: Optional[str] = None
    email: Optional[str] = None

    @property
    def identity_id(self) -> str:
        """Provider id without the `naver:` prefix (the data-store key)."""
        if self.subject_id.startswith(NAVER_SUBJECT_PREFIX):
            return self.subject_id[len(NAVER_SUBJECT_PREFIX) :]
        return self.subject_id

    def to_claims(self) -> Dict[str, Any]:
        claims: Dict[str, Any] = {"sub": self.subject_id, "iat": self.issued_at, "exp": self.expires_at}
        if self.display_name:
            claims["name"] = self.display_name
        if self.email:
            claims["email"] = self.email
        return claims

    @classmethod
    def from_claims(cls, claims: Dict[str, Any]) -> Optional["SessionCredential"]:
        sub = claims.get("sub")
        if not isinstance(sub, str) or not sub.strip():
            return None
        name = claims.get("name")
        email = claims.get("email")
        return cls(
            subject_id=sub,
            issued_at=int(claims["iat"]),
            expires_at=int(claims["exp"]),
            display_name=str(name) if name else None,
            email=str(email) if email else None,
        )
