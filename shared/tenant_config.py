"""
Tenant configuration access with a Redis read-through cache.

The tenant config blob (SMTP credentials, ManyChat key, gateway tokens,
custom email templates) is read-mostly. Reads go to Redis first under
tenant_config:{tenant_id} with TENANT_CONFIG_CACHE_TTL_SECONDS; Redis
failures fall through to PostgreSQL. Callers updating a tenant's config
must call invalidate_tenant_config().
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any
from uuid import UUID

from redis.exceptions import RedisError
from sqlalchemy import select

from database.connection import get_async_session
from database.models import Tenant
from shared.config import get_settings
from shared.redis_client import get_redis_client

logger = logging.getLogger(__name__)

CACHE_KEY_PREFIX = "tenant_config"


@dataclass
class TenantContext:
    """Name and config blob of a tenant."""

    tenant_id: UUID
    name: str | None = None
    config: dict[str, Any] = field(default_factory=dict)
    exists: bool = True

    @property
    def business_name(self) -> str:
        return self.name or get_settings().DEFAULT_BUSINESS_NAME

    @property
    def manychat_api_key(self) -> str | None:
        return self.config.get("manyChatApiKey") or None

    @property
    def payment_config(self) -> dict[str, Any]:
        return self.config.get("payment") or {}

    @property
    def smtp_config(self) -> dict[str, Any]:
        return self.config.get("smtp") or {}


def _cache_key(tenant_id: UUID) -> str:
    return f"{CACHE_KEY_PREFIX}:{tenant_id}"


async def _load_from_db(tenant_id: UUID) -> TenantContext:
    async with get_async_session() as session:
        result = await session.execute(
            select(Tenant.name, Tenant.config).where(Tenant.id == tenant_id)
        )
        row = result.first()

    if row is None:
        return TenantContext(tenant_id=tenant_id, exists=False)

    name, config = row
    return TenantContext(tenant_id=tenant_id, name=name, config=config or {})


async def get_tenant_context(tenant_id: UUID) -> TenantContext:
    """
    Load a tenant's name and config, preferring the Redis cache.

    Unknown tenants yield an empty context (exists=False) and are not cached.
    """
    ttl = get_settings().TENANT_CONFIG_CACHE_TTL_SECONDS

    if ttl > 0:
        try:
            cached = await get_redis_client().get(_cache_key(tenant_id))
            if cached:
                data = json.loads(cached)
                return TenantContext(
                    tenant_id=tenant_id,
                    name=data.get("name"),
                    config=data.get("config") or {},
                )
        except (RedisError, ValueError) as e:
            logger.warning(
                f"Tenant config cache read failed, falling back to database: {e}",
                extra={"tenant_id": tenant_id},
            )

    context = await _load_from_db(tenant_id)

    if ttl > 0 and context.exists:
        try:
            await get_redis_client().set(
                _cache_key(tenant_id),
                json.dumps({"name": context.name, "config": context.config}),
                ex=ttl,
            )
        except RedisError as e:
            logger.warning(
                f"Tenant config cache write failed: {e}",
                extra={"tenant_id": tenant_id},
            )

    return context


async def invalidate_tenant_config(tenant_id: UUID) -> None:
    """Drop the cached config of a tenant after it changes."""
    try:
        await get_redis_client().delete(_cache_key(tenant_id))
        logger.info("Tenant config cache invalidated", extra={"tenant_id": tenant_id})
    except RedisError as e:
        logger.warning(
            f"Tenant config cache invalidation failed: {e}",
            extra={"tenant_id": tenant_id},
        )
