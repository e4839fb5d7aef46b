from __future__ import annotations

from dataclasses import asdict, dataclass, replace

MASK = "***"


@dataclass(frozen=True)
class Certificate:
    """Stored A1 credential (PKCS#12 as base64 plus its password)."""

    name: str
    certificate_base64: str
    password: str
    expires_at: str | None = None  # ISO datetime, UTC
    active: bool = True
    id: int | None = None
    user_id: int | None = None

    @classmethod
    def from_dict(cls, d: dict) -> Certificate:
        return cls(
            name=d["name"],
            certificate_base64=d["certificate_base64"],
            password=d["password"],
            expires_at=d.get("expires_at"),
            active=bool(d.get("active", True)),
            id=d.get("id"),
            user_id=d.get("user_id"),
        )

    def to_dict(self) -> dict:
        return asdict(self)

    def masked(self) -> Certificate:
        """Copy safe to hand to callers: secret fields replaced by ***."""
        return replace(self, certificate_base64=MASK, password=MASK)


@dataclass(frozen=True)
class User:
    username: str
    name: str
    email: str | None = None
    id: int | None = None

    @classmethod
    def from_dict(cls, d: dict) -> User:
        return cls(username=d["username"], name=d["name"], email=d.get("email"), id=d.get("id"))

    def to_dict(self) -> dict:
        return asdict(self)
