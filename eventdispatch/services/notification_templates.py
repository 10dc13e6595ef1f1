"""
Notification templates - {{variable}} substitution over stored subject/body pairs.

Templates are read through a short-lived Redis cache so a burst of templated
notifications does not hit the database once per send. update() invalidates
the cached copy.
"""
import json
import logging
import re
from typing import Any, Optional

from eventdispatch.errors import NotFoundError, ValidationError
from eventdispatch.models.notification_template import NotificationTemplate
from eventdispatch.services.event_store import EventStore, IdLike, as_uuid

logger = logging.getLogger(__name__)

CACHE_KEY_PREFIX = "eventdispatch:template"
CACHE_TTL = 300  # seconds

TEMPLATE_VARIABLE = re.compile(r"\{\{\s*([^{}]+?)\s*\}\}")


def template_variables(*texts: str) -> list[str]:
    """Placeholder names in order of first appearance."""
    names: list[str] = []
    for text in texts:
        for name in TEMPLATE_VARIABLE.findall(text or ""):
            if name not in names:
                names.append(name)
    return names


def render_text(text: str, data: dict[str, Any]) -> str:
    return TEMPLATE_VARIABLE.sub(lambda m: str(data[m.group(1)]), text)


def _cache_key(template_id: IdLike) -> str:
    return f"{CACHE_KEY_PREFIX}:{as_uuid(template_id)}"


class TemplateRenderer:
    """Loads templates (cached) and fills their placeholders."""

    def __init__(self, store: EventStore, cache_ttl: int = CACHE_TTL):
        self._store = store
        self._cache_ttl = cache_ttl

    async def create(self, name: str, subject: str, body: str) -> NotificationTemplate:
        _check_template_fields(name=name, subject=subject, body=body)
        template = await self._store.create_template(name=name, subject=subject, body=body)
        logger.info("Notification template created: %s", name, extra={"template_id": str(template.id)})
        return template

    async def update(self, template_id: IdLike, **fields: Any) -> NotificationTemplate:
        unknown = set(fields) - {"name", "subject", "body"}
        if unknown:
            raise ValidationError(f"Cannot update template fields: {', '.join(sorted(unknown))}")
        _check_template_fields(**fields)
        template = await self._store.update_template(template_id, **fields)
        await self.invalidate(template_id)
        return template

    async def get(self, template_id: IdLike) -> dict:
        """
        Returns: {"name": str, "subject": str, "body": str}
        NotFoundError if no such template exists.
        """
        template_id = as_uuid(template_id)
        cached = await self._read_cache(template_id)
        if cached is not None:
            return cached

        template = await self._store.get_template(template_id)
        if template is None:
            raise NotFoundError(f"Template not found: {template_id}")
        data = {"name": template.name, "subject": template.subject, "body": template.body}
        await self._write_cache(template_id, data)
        return data

    async def render(self, template_id: IdLike, template_data: Optional[dict] = None) -> tuple[str, str]:
        """
        Fill subject and body. Every placeholder must have a value;
        ValidationError lists the missing ones.
        """
        template_data = template_data or {}
        template = await self.get(template_id)
        missing = [
            name for name in template_variables(template["subject"], template["body"])
            if name not in template_data
        ]
        if missing:
            raise ValidationError(f"Missing template variables: {', '.join(missing)}")
        return (
            render_text(template["subject"], template_data),
            render_text(template["body"], template_data),
        )

    async def invalidate(self, template_id: IdLike) -> None:
        try:
            from eventdispatch.utils.cache import get_redis
            redis = await get_redis()
            await redis.delete(_cache_key(template_id))
        except Exception as e:
            logger.warning("Failed to invalidate template cache: %s", str(e))

    async def _read_cache(self, template_id: IdLike) -> Optional[dict]:
        try:
            from eventdispatch.utils.cache import get_redis
            redis = await get_redis()
            cached = await redis.get(_cache_key(template_id))
        except Exception as e:
            logger.warning("Template cache read failed: %s", str(e))
            return None
        if not isinstance(cached, (str, bytes)):
            return None
        try:
            data = json.loads(cached)
        except ValueError:
            return None
        if not isinstance(data, dict) or not {"subject", "body"} <= set(data):
            return None
        return data

    async def _write_cache(self, template_id: IdLike, data: dict) -> None:
        try:
            from eventdispatch.utils.cache import get_redis
            redis = await get_redis()
            await redis.set(_cache_key(template_id), json.dumps(data), ex=self._cache_ttl)
        except Exception as e:
            logger.warning("Failed to cache template: %s", str(e))


def _check_template_fields(**fields: Any) -> None:
    limits = {"name": 100, "subject": 255}
    for field, value in fields.items():
        if not isinstance(value, str) or not value.strip():
            raise ValidationError(f"Template {field} must be a non-empty string")
        if field in limits and len(value) > limits[field]:
            raise ValidationError(f"Template {field} exceeds {limits[field]} characters")
