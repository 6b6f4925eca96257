# Copyright (c) 2025 Cade Russell (Ghost Peony)
#
# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.

"""
Durable tab storage.

Persists the two pieces of editor state that survive a restart: the ordered
list of open tabs and the active tab id. Each is stored as JSON text under its
own key, so either can be missing or corrupted independently.

Storage failures never reach the caller. A failed read degrades to "no tabs",
a failed write is logged and dropped.

Usage:
    from services.tab_storage import TabPersistence, create_key_value_store

    persistence = TabPersistence(create_key_value_store("file", "/tmp/eflo"))
    tabs, active_id = persistence.load()
    persistence.save(tabs, active_id)
"""

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol, Tuple

from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from core.exceptions import PersistenceError
from schemas.canvas import Tab

logger = logging.getLogger(__name__)

TAB_STORAGE_KEY = "eflo_open_tabs"
ACTIVE_TAB_STORAGE_KEY = "eflo_active_tab"


class KeyValueStore(Protocol):
    """String key/value storage. Implementations raise PersistenceError on failure."""

    def get_item(self, key: str) -> Optional[str]:  # pragma: no cover - protocol
        ...

    def set_item(self, key: str, value: str) -> None:  # pragma: no cover - protocol
        ...


# =============================================================================
# Backends
# =============================================================================

class InMemoryKeyValueStore:
    """Process-local store. Nothing survives a restart."""

    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self._items: Dict[str, str] = dict(initial or {})

    def get_item(self, key: str) -> Optional[str]:
        return self._items.get(key)

    def set_item(self, key: str, value: str) -> None:
        self._items[key] = value


class FileKeyValueStore:
    """One file per key inside a base directory."""

    def __init__(self, base_dir: str):
        self._base_dir = Path(base_dir).expanduser()

    @property
    def base_dir(self) -> Path:
        return self._base_dir

    def _path_for(self, key: str) -> Path:
        return self._base_dir / f"{key}.json"

    def get_item(self, key: str) -> Optional[str]:
        path = self._path_for(key)
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except (OSError, UnicodeDecodeError) as e:
            raise PersistenceError(key, str(e)) from e

    def set_item(self, key: str, value: str) -> None:
        path = self._path_for(key)
        try:
            self._base_dir.mkdir(parents=True, exist_ok=True)
            # Write to a sibling temp file, then swap it in so readers never see half a value
            fd, tmp_path = tempfile.mkstemp(dir=self._base_dir, prefix=f".{key}.", suffix=".tmp")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as handle:
                    handle.write(value)
                os.replace(tmp_path, path)
            except BaseException:
                if os.path.exists(tmp_path):
                    os.unlink(tmp_path)
                raise
        except OSError as e:
            raise PersistenceError(key, str(e)) from e


class SqlKeyValueStore:
    """Key/value rows in the SQLite editor state database."""

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def get_item(self, key: str) -> Optional[str]:
        from models.client_state import ClientStateEntry

        try:
            with self._session_factory() as db:
                entry = db.get(ClientStateEntry, key)
                return entry.value if entry is not None else None
        except SQLAlchemyError as e:
            raise PersistenceError(key, str(e)) from e

    def set_item(self, key: str, value: str) -> None:
        from models.client_state import ClientStateEntry

        try:
            with self._session_factory() as db:
                entry = db.get(ClientStateEntry, key)
                if entry is None:
                    db.add(ClientStateEntry(key=key, value=value))
                else:
                    entry.value = value
                db.commit()
        except SQLAlchemyError as e:
            raise PersistenceError(key, str(e)) from e


def create_key_value_store(backend: str, storage_path: Optional[str] = None) -> KeyValueStore:
    """
    Build the configured storage backend.

    Args:
        backend: "memory", "file" or "sqlite"
        storage_path: Directory for the file and sqlite backends

    Raises:
        ValueError: If the backend name is unknown
        PersistenceError: If the sqlite database cannot be created
    """
    backend = (backend or "memory").lower()
    if backend == "memory":
        return InMemoryKeyValueStore()
    if backend == "file":
        if not storage_path:
            raise ValueError("storage_path required for the file storage backend")
        return FileKeyValueStore(storage_path)
    if backend == "sqlite":
        from db.database import create_state_engine, init_db

        try:
            return SqlKeyValueStore(init_db(create_state_engine(storage_path)))
        except (OSError, SQLAlchemyError) as e:
            raise PersistenceError(TAB_STORAGE_KEY, str(e)) from e
    raise ValueError(f"Unknown storage backend: {backend}")


def create_tab_persistence(backend: str, storage_path: Optional[str] = None) -> "TabPersistence":
    """
    TabPersistence over the configured backend.

    Falls back to an in-memory store when the backend cannot be set up, so the
    editor still starts; tabs then do not survive a restart.
    """
    try:
        store = create_key_value_store(backend, storage_path)
    except PersistenceError as e:
        logger.warning(f"Tab storage unavailable, tabs will not persist across restarts: {e.message}")
        store = InMemoryKeyValueStore()
    return TabPersistence(store)


# =============================================================================
# Tab Persistence
# =============================================================================

def _parse_tabs(raw: Optional[str]) -> List[Tab]:
    if not raw:
        return []
    try:
        data = json.loads(raw)
    except ValueError:
        logger.warning(f"Ignoring unparsable '{TAB_STORAGE_KEY}' value")
        return []
    if not isinstance(data, list):
        logger.warning(f"Ignoring '{TAB_STORAGE_KEY}': expected a JSON array")
        return []

    tabs: List[Tab] = []
    seen = set()
    for item in data:
        try:
            tab = Tab.model_validate(item)
        except ValidationError:
            logger.debug(f"Dropping invalid stored tab entry: {item!r}")
            continue
        if tab.id in seen:
            continue
        seen.add(tab.id)
        tabs.append(tab)
    return tabs


def _parse_active_tab_id(raw: Optional[str]) -> Optional[int]:
    if not raw:
        return None
    try:
        value: Any = json.loads(raw)
    except ValueError:
        logger.warning(f"Ignoring unparsable '{ACTIVE_TAB_STORAGE_KEY}' value")
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        return None
    return value


class TabPersistence:
    """Reads and writes the open tab list and the active tab id."""

    def __init__(self, store: KeyValueStore):
        self.store = store

    def load_tabs(self) -> List[Tab]:
        try:
            return _parse_tabs(self.store.get_item(TAB_STORAGE_KEY))
        except PersistenceError as e:
            logger.warning(f"Could not read open tabs, starting empty: {e}")
            return []

    def load_active_tab_id(self) -> Optional[int]:
        try:
            return _parse_active_tab_id(self.store.get_item(ACTIVE_TAB_STORAGE_KEY))
        except PersistenceError as e:
            logger.warning(f"Could not read active tab, starting without one: {e}")
            return None

    def load(self) -> Tuple[List[Tab], Optional[int]]:
        return self.load_tabs(), self.load_active_tab_id()

    def save(self, open_tabs: List[Tab], active_tab_id: Optional[int]) -> bool:
        """
        Write both keys.

        Returns:
            True if both writes succeeded. Failures are logged, never raised.
        """
        ok = True
        tabs_payload = json.dumps([{"id": t.id, "name": t.name} for t in open_tabs])
        for key, value in (
            (TAB_STORAGE_KEY, tabs_payload),
            (ACTIVE_TAB_STORAGE_KEY, json.dumps(active_tab_id)),
        ):
            try:
                self.store.set_item(key, value)
            except PersistenceError as e:
                ok = False
                logger.warning(f"Tabs will not persist across restarts: {e}")
        return ok
