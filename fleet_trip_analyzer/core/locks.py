"""
Per-vehicle mutual exclusion for segmentation runs.
"""
import logging
import threading
from contextlib import contextmanager
from typing import Dict, Iterator

logger = logging.getLogger(__name__)


class VehicleLockRegistry:
    """Hands out one lock per vehicle so two recomputes of the same vehicle never interleave."""

    def __init__(self):
        self._locks: Dict[int, threading.Lock] = {}
        self._registry_lock = threading.Lock()

    def _lock_for(self, vehicle_id: int) -> threading.Lock:
        with self._registry_lock:
            lock = self._locks.get(vehicle_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[vehicle_id] = lock
            return lock

    @contextmanager
    def hold(self, vehicle_id: int) -> Iterator[None]:
        """Hold the vehicle's lock for the duration of the block."""
        lock = self._lock_for(vehicle_id)
        if not lock.acquire(blocking=False):
            logger.debug(f"Waiting for lock on vehicle {vehicle_id}")
            lock.acquire()
        try:
            yield
        finally:
            lock.release()

    def is_locked(self, vehicle_id: int) -> bool:
        with self._registry_lock:
            lock = self._locks.get(vehicle_id)
        return lock is not None and lock.locked()
