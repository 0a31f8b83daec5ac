from datetime import datetime, timedelta, timezone

import pytest

from reciter.application.importer import ParsedDocument, ParsedUnit
from reciter.application.state import AppState
from reciter.domain.interfaces import KeyValueStore
from reciter.domain.models import Item, StateBlob
from reciter.infrastructure.storage.local_store import LocalStore
from reciter.infrastructure.storage.sqlite_kv import SqliteKeyValueStore


class DictKeyValueStore(KeyValueStore):
    """In-memory KeyValueStore shared across ``with`` blocks."""

    def __init__(self, data: dict[str, bytes] | None = None):
        self.data = data if data is not None else {}
        self.writes = 0

    def get(self, key: str) -> bytes | None:
        return self.data.get(key)

    def set(self, key: str, value: bytes) -> None:
        self.data[key] = value
        self.writes += 1


class Clock:
    """Manually advanced clock for reconciler and mirror tests."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def now():
    return datetime(2024, 3, 10, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def clock(now):
    return Clock(now)


@pytest.fixture
def kv():
    return DictKeyValueStore()


@pytest.fixture
def store(kv):
    return LocalStore(lambda: kv)


@pytest.fixture
def sqlite_store(tmp_path):
    path = tmp_path / "data" / "reciter.sqlite3"
    return LocalStore(lambda: SqliteKeyValueStore(path))


@pytest.fixture
def app_state(store):
    return AppState(store, StateBlob())


@pytest.fixture
def make_state():
    """Build an AppState with its own in-memory storage (one per simulated device)."""

    def factory(blob: StateBlob | None = None) -> AppState:
        kv = DictKeyValueStore()
        return AppState(LocalStore(lambda: kv), blob)

    return factory


@pytest.fixture
def romans_parsed():
    return ParsedDocument(
        title="Romans 8",
        units=[
            ParsedUnit(
                items=[
                    Item(text="Life in the Spirit", kind="label"),
                    Item(text="There is therefore now no condemnation", number=1),
                    Item(text="For the law of the Spirit of life", number=2),
                ]
            ),
            ParsedUnit(
                items=[
                    Item(text="For what the law could not do", number=3),
                    Item(text="That the righteousness of the law", number=4),
                ]
            ),
        ],
        source_text="Romans 8 ...",
    )


@pytest.fixture
def isolated_config(tmp_path, monkeypatch):
    """No config file and no RECITER_* variables; data lives under tmp_path."""
    monkeypatch.setattr("reciter.application.config.CONFIG_FILES", [])
    for var in ("BACKEND", "USER_ID", "MIRROR_URL", "SEED", "STORAGE_KEY"):
        monkeypatch.delenv(f"RECITER_{var}", raising=False)
    data_dir = tmp_path / "reciter-data"
    monkeypatch.setenv("RECITER_DATA_DIR", str(data_dir))
    return data_dir
