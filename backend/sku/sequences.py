"""
Scoped, collision-free sequence numbers for SKU generation.

A scope is a ``(scope_kind, scope_key)`` pair such as ``('category',
'Product|CAF')``. Each scope has its own counter starting at 1; increments on
one scope never wait on another.
"""
import logging
import threading
import time

from django.db import IntegrityError, OperationalError, transaction
from django.db.models import F

from backend.core.conf import engine_setting
from backend.core.exceptions import SequenceContention
from .models import SequenceCounter

logger = logging.getLogger(__name__)

MAX_RETRY_DELAY = 1.0  # seconds


class SequenceAllocator:
    """Interface shared by the allocators"""

    def next(self, scope_kind, scope_key):
        raise NotImplementedError

    def peek(self, scope_kind, scope_key):
        """Last value issued for a scope (0 if none yet), without drawing"""
        raise NotImplementedError


class DatabaseSequenceAllocator(SequenceAllocator):
    """
    Counters stored in ``sku_sequences``.

    Each draw is one ``UPDATE ... SET last_value = last_value + 1`` inside a
    transaction, so the row lock serializes concurrent callers of the same
    scope. A missing row is created with value 1; losing that insert race
    retries the update.

    Args:
        max_retries: attempts before SequenceContention (SEQUENCE_MAX_RETRIES)
        backoff: first retry delay in seconds, doubled per attempt
            (SEQUENCE_RETRY_BACKOFF)
        sleep: replaceable in tests
    """

    def __init__(self, max_retries=None, backoff=None, sleep=time.sleep):
        self.max_retries = max_retries if max_retries is not None else engine_setting('SEQUENCE_MAX_RETRIES')
        self.backoff = backoff if backoff is not None else engine_setting('SEQUENCE_RETRY_BACKOFF')
        self.sleep = sleep

    def next(self, scope_kind, scope_key):
        for attempt in range(1, self.max_retries + 1):
            try:
                with transaction.atomic():
                    return self._increment(scope_kind, scope_key)
            except (IntegrityError, OperationalError) as e:
                logger.info(
                    f"Sequence {scope_kind}/{scope_key} contended ({attempt}/{self.max_retries}): {str(e)}"
                )
                if attempt < self.max_retries and self.backoff:
                    self.sleep(min(self.backoff * 2 ** (attempt - 1), MAX_RETRY_DELAY))
        logger.warning(f"Giving up on sequence {scope_kind}/{scope_key} after {self.max_retries} attempts")
        raise SequenceContention(scope_kind, scope_key, self.max_retries)

    def _increment(self, scope_kind, scope_key):
        counters = SequenceCounter.objects.filter(scope_kind=scope_kind, scope_key=scope_key)
        if counters.update(last_value=F('last_value') + 1):
            return counters.values_list('last_value', flat=True).get()
        SequenceCounter.objects.create(scope_kind=scope_kind, scope_key=scope_key, last_value=1)
        return 1

    def peek(self, scope_kind, scope_key):
        value = (
            SequenceCounter.objects.filter(scope_kind=scope_kind, scope_key=scope_key)
            .values_list('last_value', flat=True)
            .first()
        )
        return value or 0


class InMemorySequenceAllocator(SequenceAllocator):
    """Lock-per-scope counters for single-process use and tests"""

    def __init__(self, initial=None):
        self._values = dict(initial or {})
        self._locks = {}
        self._guard = threading.Lock()

    def _lock_for(self, key):
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            return lock

    def next(self, scope_kind, scope_key):
        key = (scope_kind, scope_key)
        with self._lock_for(key):
            value = self._values.get(key, 0) + 1
            self._values[key] = value
            return value

    def peek(self, scope_kind, scope_key):
        return self._values.get((scope_kind, scope_key), 0)
