"""
Backend Factory
Centralizes the logic for building the local store and selecting the remote mirror.
"""

import sys

from reciter.application.config import AppConfig
from reciter.application.importer import seed_state
from reciter.domain.interfaces import RemoteMirror
from reciter.infrastructure.adapters.http_mirror import HttpRemoteMirror
from reciter.infrastructure.adapters.memory_mirror import InMemoryRemoteMirror
from reciter.infrastructure.storage.local_store import LocalStore
from reciter.infrastructure.storage.sqlite_kv import SqliteKeyValueStore


def get_local_store(config: AppConfig) -> LocalStore:
    """
    Returns a LocalStore over the SQLite database in ``config.data_dir``.
    """
    path = config.database_path
    return LocalStore(
        lambda: SqliteKeyValueStore(path),
        key=config.storage_key,
        seed=seed_state if config.seed else None,
    )


async def get_remote_mirror(config: AppConfig) -> RemoteMirror | None:
    """
    Returns the appropriate RemoteMirror implementation, or None when running offline.
    """
    if not config.sync_enabled:
        return None

    # 1. Manual selection
    if config.backend == "memory":
        return InMemoryRemoteMirror()

    mirror = HttpRemoteMirror(
        url=config.mirror_url,
        timeout=config.request_timeout,
        poll_interval=config.poll_interval,
    )
    if config.backend == "http":
        return mirror

    # 2. Auto selection: use the mirror only if it answers
    if await mirror.is_responsive():
        print(f"Mirror: {config.mirror_url}", file=sys.stderr)
        return mirror

    await mirror.close()
    print("Mirror: unreachable, running offline", file=sys.stderr)
    return None
