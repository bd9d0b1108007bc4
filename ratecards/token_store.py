"""
Marketplace OAuth token storage

Tokens live in a key-value store with an explicit TTL, so any process can
read them and expired entries disappear on their own.
"""

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, asdict
from datetime import datetime, timedelta, timezone
from typing import Optional

import redis

logger = logging.getLogger(__name__)

DEFAULT_TOKEN_TTL_SECONDS = 3600


class KeyValueStore(ABC):
    """Minimal key-value interface with per-key expiry."""

    @abstractmethod
    def get(self, key: str) -> Optional[str]:
        ...

    @abstractmethod
    def set(self, key: str, value: str, ttl_seconds: int):
        ...

    @abstractmethod
    def delete(self, key: str):
        ...


class RedisKeyValueStore(KeyValueStore):
    """KeyValueStore backed by Redis SETEX."""

    def __init__(self, redis_client: Optional[redis.Redis] = None, redis_url: str = "redis://localhost:6379/3"):
        self.redis = redis_client or redis.Redis.from_url(redis_url)

    def get(self, key: str) -> Optional[str]:
        value = self.redis.get(key)
        if isinstance(value, bytes):
            return value.decode('utf-8')
        return value

    def set(self, key: str, value: str, ttl_seconds: int):
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        self.redis.setex(key, ttl_seconds, value)

    def delete(self, key: str):
        self.redis.delete(key)


@dataclass
class MarketplaceToken:
    """OAuth token issued by a marketplace to a seller."""
    marketplace: str
    user_id: str
    access_token: str
    expires_at: datetime
    refresh_token: Optional[str] = None

    def is_valid(self, now: Optional[datetime] = None) -> bool:
        return (now or datetime.now(timezone.utc)) < self.expires_at

    def to_json(self) -> str:
        data = asdict(self)
        data['expires_at'] = self.expires_at.isoformat()
        return json.dumps(data)

    @classmethod
    def from_json(cls, raw: str) -> 'MarketplaceToken':
        data = json.loads(raw)
        data['expires_at'] = datetime.fromisoformat(data['expires_at'])
        return cls(**data)


class MarketplaceTokenStore:
    """Per-user marketplace tokens kept in a KeyValueStore."""

    KEY_PREFIX = "ratecards:marketplace_token"

    def __init__(self, store: KeyValueStore, default_ttl_seconds: int = DEFAULT_TOKEN_TTL_SECONDS):
        self.store = store
        self.default_ttl_seconds = default_ttl_seconds

    def _key(self, marketplace: str, user_id: str) -> str:
        return f"{self.KEY_PREFIX}:{marketplace.lower()}:{user_id}"

    def save_token(self, marketplace: str, user_id: str, access_token: str,
                   refresh_token: Optional[str] = None, expires_in: Optional[int] = None) -> MarketplaceToken:
        """
        Store a token.

        Args:
            marketplace: Marketplace identifier, e.g. 'myntra'
            user_id: Seller account id
            access_token: OAuth access token
            refresh_token: OAuth refresh token, if issued
            expires_in: Lifetime in seconds; the default TTL when omitted
        """
        ttl = expires_in if expires_in and expires_in > 0 else self.default_ttl_seconds
        token = MarketplaceToken(
            marketplace=marketplace.lower(),
            user_id=user_id,
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=datetime.now(timezone.utc) + timedelta(seconds=ttl),
        )
        self.store.set(self._key(marketplace, user_id), token.to_json(), ttl)
        logger.info(f"Stored {token.marketplace} token for user {user_id} (ttl {ttl}s)")
        return token

    def get_token(self, marketplace: str, user_id: str) -> Optional[MarketplaceToken]:
        raw = self.store.get(self._key(marketplace, user_id))
        if raw is None:
            return None
        token = MarketplaceToken.from_json(raw)
        if not token.is_valid():
            self.delete_token(marketplace, user_id)
            return None
        return token

    def delete_token(self, marketplace: str, user_id: str):
        self.store.delete(self._key(marketplace, user_id))

    def has_valid_token(self, marketplace: str, user_id: str) -> bool:
        return self.get_token(marketplace, user_id) is not None
