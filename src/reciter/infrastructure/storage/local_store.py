"""
Local Store: durable persistence of the full state blob on this device.

No business logic lives here. Reads fall back to a default blob instead of
raising, and writes log failures instead of raising, so storage trouble never
interrupts a review.
"""

import json
import logging
from collections.abc import Callable

from reciter.domain.constants import STORAGE_KEY
from reciter.domain.interfaces import KeyValueStore
from reciter.domain.models import StateBlob
from reciter.domain.serialization import blob_from_dict, blob_to_dict

logger = logging.getLogger(__name__)


def empty_state() -> StateBlob:
    """The default blob used when stored data is unreadable: no documents."""
    return StateBlob()


class LocalStore:
    """
    Args:
        backend_factory: Returns a fresh KeyValueStore; each load/save opens it
            in a ``with`` block and releases it before returning.
        key: Storage key of the blob.
        seed: Builds the first-run blob when nothing has been stored yet.
    """

    def __init__(
        self,
        backend_factory: Callable[[], KeyValueStore],
        key: str = STORAGE_KEY,
        seed: Callable[[], StateBlob] | None = None,
    ):
        self._backend_factory = backend_factory
        self.key = key
        self._seed = seed or empty_state

    def load(self) -> StateBlob:
        try:
            with self._backend_factory() as kv:
                raw = kv.get(self.key)
        except Exception as e:
            logger.error(f"Failed to read local state: {e}")
            return empty_state()

        if raw is None:
            logger.info("[store] no saved state, seeding")
            return self._seed()

        try:
            return blob_from_dict(json.loads(raw.decode("utf-8")))
        except Exception as e:
            logger.error(f"Failed to load state, falling back to defaults: {e}")
            return empty_state()

    def save(self, blob: StateBlob) -> bool:
        try:
            payload = json.dumps(blob_to_dict(blob), ensure_ascii=False).encode("utf-8")
            with self._backend_factory() as kv:
                kv.set(self.key, payload)
            return True
        except Exception as e:
            logger.error(f"Failed to save state: {e}")
            return False
