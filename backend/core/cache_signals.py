"""
Cache invalidation signals
Automatically drop cached configuration when relationship types or SKU templates change
"""
from django.db.models.signals import post_save, post_delete
from django.dispatch import receiver
import logging
import threading
from contextlib import contextmanager

logger = logging.getLogger(__name__)

# Thread-local storage to track signal suspension
_thread_locals = threading.local()


@contextmanager
def suspend_cache_signals():
    """
    Context manager to temporarily suspend cache invalidation signals.
    Useful for bulk seeding to prevent reloading the registry on every row.
    Remember to manually invalidate cache after the block!
    """
    try:
        _thread_locals.suspended = True
        yield
    finally:
        _thread_locals.suspended = False


def is_suspended():
    return getattr(_thread_locals, 'suspended', False)


def invalidate_cache_pattern(pattern):
    """
    Invalidate all cache keys matching a pattern
    Uses Redis SCAN to find and delete matching keys; a no-op on other backends
    """
    try:
        from django_redis import get_redis_connection
        redis_conn = get_redis_connection("default")

        keys = []
        cursor = 0
        while True:
            cursor, partial_keys = redis_conn.scan(cursor, match=f"*{pattern}*", count=100)
            keys.extend(partial_keys)
            if cursor == 0:
                break

        if keys:
            redis_conn.delete(*keys)
            logger.info(f"Cache invalidation requested for pattern: {pattern} - Deleted {len(keys)} keys")
        else:
            logger.debug(f"Cache invalidation requested for pattern: {pattern} - No keys found")
    except NotImplementedError:
        logger.debug(f"Cache backend does not support pattern invalidation ({pattern})")
    except Exception as e:
        logger.warning(f"Could not invalidate cache pattern {pattern}: {str(e)}")


# --- Manual Invalidation Helpers ---

def invalidate_relationship_types_cache():
    """Drop the relationship type registry (process copy and shared cache)"""
    from backend.relationships.registry import invalidate_registry
    invalidate_registry()
    logger.info("Invalidated relationship type registry")


def invalidate_sku_templates_cache(entity_type=None):
    """Drop cached default-template lookups"""
    from backend.sku.engine import TEMPLATE_CACHE_PREFIX, invalidate_template_cache
    invalidate_template_cache(entity_type)
    invalidate_cache_pattern(TEMPLATE_CACHE_PREFIX)
    logger.info(f"Invalidated SKU template cache ({entity_type or 'all'})")


# --- Signal receivers ---

@receiver([post_save, post_delete], sender='relationships.RelationshipType')
def relationship_type_changed(sender, instance, **kwargs):
    if is_suspended():
        return
    invalidate_relationship_types_cache()


@receiver([post_save, post_delete], sender='sku.SKUTemplate')
def sku_template_changed(sender, instance, **kwargs):
    if is_suspended():
        return
    invalidate_sku_templates_cache(instance.entity_type)
