"""
Access to the ENTITY_GRAPH settings dict with built-in defaults
"""
from django.conf import settings

DEFAULTS = {
    'UPSERT_MAX_RETRIES': 3,
    'UPSERT_RETRY_BACKOFF': 0.02,
    'SEQUENCE_MAX_RETRIES': 5,
    'SEQUENCE_RETRY_BACKOFF': 0.05,
    'BACKFILL_RECORD_TIMEOUT': 30.0,
    'SKU_ENSURE_UNIQUE': True,
    'REGISTRY_CACHE_TTL': 900,
    'TEMPLATE_CACHE_TTL': 600,
    'DEFAULT_PAGE_SIZE': 50,
}


def engine_setting(name):
    """Get an engine setting, falling back to the built-in default"""
    if name not in DEFAULTS:
        raise KeyError(f"Unknown ENTITY_GRAPH setting: {name}")
    overrides = getattr(settings, 'ENTITY_GRAPH', {}) or {}
    return overrides.get(name, DEFAULTS[name])
