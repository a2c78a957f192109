"""Per-user request/image quotas and per-website edit quotas.

The gate reads the counter, compares it against the tier limit and then
increments it before the expensive call runs. Read and increment are two
steps, so two truly concurrent requests from one user can overshoot a
limit by one.
"""
from __future__ import annotations

import logging
import os
import threading
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

import redis

from siteforge.errors import AuthenticationError, EditLimitError, InputError, QuotaExceededError
from siteforge.models import TIERS, Subscription

log = logging.getLogger(__name__)

KINDS = ("requests", "images")

# kinds that anonymous callers may use without a counter
ANONYMOUS_KINDS = ("requests",)

QUOTA_MESSAGES = {
    "requests": "Rate limit exceeded. Upgrade your plan for more generations.",
    "images": "Image generation limit reached. Upgrade your plan for more images.",
}


def _parse_limits(raw: str, default: Tuple[int, int]) -> Tuple[int, int]:
    try:
        requests_part, images_part = raw.split(":", 1)
        return int(requests_part), int(images_part)
    except (AttributeError, ValueError):
        return default


TIER_LIMITS: Dict[str, Tuple[int, int]] = {
    "free": _parse_limits(os.getenv("TIER_LIMITS_FREE", "10:0"), (10, 0)),
    "pro": _parse_limits(os.getenv("TIER_LIMITS_PRO", "100:50"), (100, 50)),
    "business": _parse_limits(os.getenv("TIER_LIMITS_BUSINESS", "500:200"), (500, 200)),
}

try:
    FREE_EDIT_LIMIT = int(os.getenv("FREE_EDIT_LIMIT", "3"))
except Exception:
    FREE_EDIT_LIMIT = 3

REDIS_URL = os.getenv("REDIS_URL", "").strip()
USAGE_REDIS_PREFIX = os.getenv("USAGE_REDIS_PREFIX", "usage").strip() or "usage"


def new_subscription(tier: str) -> Subscription:
    if tier not in TIERS:
        raise InputError(f"Invalid tier: {tier}")
    requests_limit, images_limit = TIER_LIMITS[tier]
    return Subscription(tier=tier, requests_limit=requests_limit, images_limit=images_limit)


class InMemoryUsageStore:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subs: Dict[str, Subscription] = {}

    def get_subscription(self, user_id: str) -> Optional[Subscription]:
        with self._lock:
            sub = self._subs.get(user_id)
            return sub.model_copy() if sub is not None else None

    def ensure_subscription(self, user_id: str, tier: str) -> Subscription:
        with self._lock:
            sub = self._subs.get(user_id)
            if sub is None or sub.tier != tier:
                fresh = new_subscription(tier)
                if sub is not None:
                    # a tier change keeps the usage already consumed
                    fresh.requests_used = sub.requests_used
                    fresh.images_used = sub.images_used
                self._subs[user_id] = fresh
                sub = fresh
            return sub.model_copy()

    def put_subscription(self, user_id: str, sub: Subscription) -> None:
        with self._lock:
            self._subs[user_id] = sub.model_copy()

    def increment(self, user_id: str, kind: str) -> int:
        with self._lock:
            sub = self._subs[user_id]
            field = f"{kind}_used"
            setattr(sub, field, getattr(sub, field) + 1)
            return getattr(sub, field)


class RedisUsageStore:
    """Subscriptions as one Redis hash per user: ``<prefix>:<user_id>``."""

    def __init__(self, redis_url: str, prefix: Optional[str] = None) -> None:
        self.prefix = prefix or USAGE_REDIS_PREFIX
        # connection is lazy until the first command
        self._client = redis.from_url(redis_url, decode_responses=True)

    def _key(self, user_id: str) -> str:
        return f"{self.prefix}:{user_id}"

    def get_subscription(self, user_id: str) -> Optional[Subscription]:
        data = self._client.hgetall(self._key(user_id))
        if not data:
            return None
        return Subscription(
            tier=data.get("tier", "free"),
            requests_used=int(data.get("requests_used", 0)),
            requests_limit=int(data.get("requests_limit", 0)),
            images_used=int(data.get("images_used", 0)),
            images_limit=int(data.get("images_limit", 0)),
        )

    def ensure_subscription(self, user_id: str, tier: str) -> Subscription:
        current = self.get_subscription(user_id)
        if current is not None and current.tier == tier:
            return current
        fresh = new_subscription(tier)
        pipe = self._client.pipeline()
        pipe.hset(
            self._key(user_id),
            mapping={
                "tier": fresh.tier,
                "requests_limit": fresh.requests_limit,
                "images_limit": fresh.images_limit,
            },
        )
        pipe.hsetnx(self._key(user_id), "requests_used", 0)
        pipe.hsetnx(self._key(user_id), "images_used", 0)
        pipe.execute()
        return self.get_subscription(user_id) or fresh

    def put_subscription(self, user_id: str, sub: Subscription) -> None:
        self._client.hset(self._key(user_id), mapping=sub.model_dump())

    def increment(self, user_id: str, kind: str) -> int:
        return int(self._client.hincrby(self._key(user_id), f"{kind}_used", 1))


@dataclass(frozen=True)
class UsageDecision:
    allowed: bool
    used: int = 0
    limit: int = 0
    tier: Optional[str] = None

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.used)


class UsageGate:
    def __init__(self, store=None) -> None:
        self.store = store if store is not None else InMemoryUsageStore()

    def check(self, user_id: Optional[str], kind: str) -> UsageDecision:
        """Decide whether ``user_id`` may spend one unit of ``kind``; consumes it when allowed."""
        if kind not in KINDS:
            raise ValueError(f"unknown usage kind: {kind}")
        if not user_id:
            if kind in ANONYMOUS_KINDS:
                return UsageDecision(allowed=True)
            raise AuthenticationError("Authentication required")

        sub = self.store.get_subscription(user_id)
        if sub is None:
            # no subscription row means nothing to meter
            return UsageDecision(allowed=True)

        used, limit = sub.used(kind), sub.limit(kind)
        if used >= limit:
            log.info("usage: denied user=%s kind=%s used=%d limit=%d", user_id, kind, used, limit)
            return UsageDecision(allowed=False, used=used, limit=limit, tier=sub.tier)
        used = self.store.increment(user_id, kind)
        return UsageDecision(allowed=True, used=used, limit=limit, tier=sub.tier)

    def enforce(self, user_id: Optional[str], kind: str) -> UsageDecision:
        decision = self.check(user_id, kind)
        if not decision.allowed:
            raise QuotaExceededError(
                QUOTA_MESSAGES[kind],
                kind=kind,
                used=decision.used,
                limit=decision.limit,
                tier=decision.tier or "free",
            )
        return decision

    def subscription(self, user_id: Optional[str]) -> Optional[Subscription]:
        if not user_id:
            return None
        return self.store.get_subscription(user_id)


def edit_limit_for(tier: str) -> Optional[int]:
    """Edits allowed per saved website; None means unlimited."""
    return FREE_EDIT_LIMIT if tier == "free" else None


def remaining_edits(tier: str, edit_count: int) -> Optional[int]:
    limit = edit_limit_for(tier)
    if limit is None:
        return None
    return max(0, limit - edit_count)


def ensure_can_edit(tier: str, edit_count: int) -> None:
    limit = edit_limit_for(tier)
    if limit is not None and edit_count >= limit:
        raise EditLimitError(
            f"Edit limit reached ({limit} edits on the free plan). Upgrade for unlimited edits.",
            used=edit_count,
            limit=limit,
        )


_gate: Optional[UsageGate] = None
_gate_lock = threading.Lock()


def get_usage_gate() -> UsageGate:
    global _gate
    with _gate_lock:
        if _gate is None:
            if REDIS_URL and not os.getenv("PYTEST_CURRENT_TEST"):
                log.info("usage: using Redis store at %s", REDIS_URL)
                _gate = UsageGate(RedisUsageStore(REDIS_URL))
            else:
                _gate = UsageGate()
        return _gate


def _reset() -> None:
    """Used by tests to clear state."""
    global _gate
    with _gate_lock:
        _gate = None
