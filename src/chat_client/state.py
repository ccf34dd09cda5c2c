"""Local client state: a tiny key-value store and the installation's resource id."""
from __future__ import annotations

import json
import logging
import os
import secrets
import string
import tempfile
import threading
import time
from pathlib import Path
from typing import Any, Dict, Optional, Protocol

logger = logging.getLogger(__name__)

RESOURCE_ID_KEY = "resource_id"
_BASE36 = string.digits + string.ascii_lowercase


# -----------------------------
# Helpers
# -----------------------------
def _atomic_write_text(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with tempfile.NamedTemporaryFile("w", encoding="utf-8", delete=False, dir=str(path.parent)) as tmp:
        tmp.write(text)
        tmp.flush()
        os.fsync(tmp.fileno())
        tmp_name = tmp.name
    os.replace(tmp_name, path)


def _base36(n: int) -> str:
    if n == 0:
        return "0"
    digits = []
    while n:
        n, r = divmod(n, 36)
        digits.append(_BASE36[r])
    return "".join(reversed(digits))


def generate_resource_id() -> str:
    """``user_<epoch-ms base36>_<7 random base36 chars>``."""
    stamp = _base36(int(time.time() * 1000))
    suffix = "".join(secrets.choice(_BASE36) for _ in range(7))
    return f"user_{stamp}_{suffix}"


# -----------------------------
# Stores
# -----------------------------
class KeyValueStore(Protocol):
    def get(self, key: str) -> Optional[str]: ...

    def set(self, key: str, value: str) -> None: ...


class MemoryKeyValueStore:
    """Process-local store, for tests and memory-less sessions."""

    def __init__(self, initial: Optional[Dict[str, str]] = None) -> None:
        self._data: Dict[str, str] = dict(initial or {})

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value


class JsonFileStore:
    """JSON-file backed store (thread-safe, atomic writes).

    A corrupt file is moved aside to ``<name>.corrupt.json`` and the store
    starts empty, so a damaged state file never blocks start-up.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._lock = threading.RLock()

    def _load(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            with self.path.open("r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            logger.warning("State file %s unreadable (%s); starting fresh", self.path, e)
            try:
                self.path.rename(self.path.with_suffix(".corrupt.json"))
            except OSError:
                logger.warning("Could not move corrupt state file %s aside", self.path)
            return {}
        return data if isinstance(data, dict) else {}

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            value = self._load().get(key)
        return str(value) if value is not None else None

    def set(self, key: str, value: str) -> None:
        with self._lock:
            data = self._load()
            data[key] = value
            _atomic_write_text(self.path, json.dumps(data, ensure_ascii=False, indent=2))


def load_resource_id(store: KeyValueStore) -> str:
    """Return the persisted resource id, generating and saving one on first run."""
    existing = store.get(RESOURCE_ID_KEY)
    if existing:
        return existing
    resource_id = generate_resource_id()
    store.set(RESOURCE_ID_KEY, resource_id)
    logger.info("Generated new resource id %s", resource_id)
    return resource_id
