import os
from dataclasses import dataclass
from typing import Dict, Optional

from fastapi import Request

from siteforge.models import TIERS


@dataclass(frozen=True)
class Identity:
    user_id: str
    tier: Optional[str] = None


def _load_tokens() -> Dict[str, Identity]:
    """Parse ``AUTH_TOKENS``: comma separated ``token:user_id[:tier]`` entries."""
    tokens: Dict[str, Identity] = {}
    for entry in os.getenv("AUTH_TOKENS", "").split(","):
        parts = [p.strip() for p in entry.split(":")]
        if len(parts) < 2 or not parts[0] or not parts[1]:
            continue
        tier = parts[2] if len(parts) > 2 and parts[2] in TIERS else None
        tokens[parts[0]] = Identity(user_id=parts[1], tier=tier)
    return tokens


AUTH_TOKENS: Dict[str, Identity] = _load_tokens()


def bearer_token(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    scheme, _, value = header.strip().partition(" ")
    if scheme.lower() != "bearer" or not value.strip():
        return None
    return value.strip()


def resolve_identity(header: Optional[str]) -> Optional[Identity]:
    """Return the identity behind an ``Authorization`` header, or None when missing or unknown."""
    token = bearer_token(header)
    if token is None:
        return None
    return AUTH_TOKENS.get(token)


def optional_identity(request: Request) -> Optional[Identity]:
    return resolve_identity(request.headers.get("authorization"))
