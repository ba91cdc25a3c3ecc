"""
Persisted key-value storage for watermarks, cache entries, preload status
and gas usage counters.
"""

import asyncio
import base64
import json
import logging
import os
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

logger = logging.getLogger(__name__)


@runtime_checkable
class KeyValueStore(Protocol):
    """Async byte store; implementations must make each ``set`` durable on return."""

    async def get(self, key: str) -> bytes | None: ...

    async def set(self, key: str, value: bytes) -> None: ...

    async def remove(self, key: str) -> None: ...

    async def keys(self, prefix: str = "") -> list[str]: ...

    async def clear(self, prefix: str = "") -> None: ...


class MemoryKeyValueStore:
    """Process-local store, used for tests and when no store path is configured."""

    def __init__(self) -> None:
        self._data: dict[str, bytes] = {}

    async def get(self, key: str) -> bytes | None:
        return self._data.get(key)

    async def set(self, key: str, value: bytes) -> None:
        self._data[key] = bytes(value)

    async def remove(self, key: str) -> None:
        self._data.pop(key, None)

    async def keys(self, prefix: str = "") -> list[str]:
        return [key for key in self._data if key.startswith(prefix)]

    async def clear(self, prefix: str = "") -> None:
        for key in await self.keys(prefix):
            del self._data[key]


class JsonFileKeyValueStore:
    """
    Store backed by a single JSON file.

    Every mutation rewrites the file to a temporary sibling and atomically
    replaces the original, so a crash leaves either the old or the new state.
    File I/O runs in a worker thread so the event loop is never blocked.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._data: dict[str, bytes] | None = None
        self._lock = asyncio.Lock()

    async def _load(self) -> dict[str, bytes]:
        if self._data is None:
            async with self._lock:
                if self._data is None:
                    self._data = await asyncio.to_thread(self._read_file, self.path)
                    logger.debug(f"Loaded {len(self._data)} keys from {self.path}")
        return self._data

    async def _flush(self) -> None:
        data = await self._load()
        async with self._lock:
            # Snapshot on the loop; the worker thread only sees the encoded payload
            payload = json.dumps(
                {key: base64.b64encode(value).decode("ascii") for key, value in data.items()},
            )
            await asyncio.to_thread(self._write_file, self.path, payload)

    @staticmethod
    def _read_file(path: Path) -> dict[str, bytes]:
        if not path.exists():
            return {}
        with path.open() as file:
            raw: dict[str, str] = json.load(file)
        return {key: base64.b64decode(value) for key, value in raw.items()}

    @staticmethod
    def _write_file(path: Path, payload: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_name(f"{path.name}.tmp")
        with tmp_path.open("w") as file:
            file.write(payload)
            file.flush()
            os.fsync(file.fileno())
        os.replace(tmp_path, path)

    async def get(self, key: str) -> bytes | None:
        return (await self._load()).get(key)

    async def set(self, key: str, value: bytes) -> None:
        (await self._load())[key] = bytes(value)
        await self._flush()

    async def remove(self, key: str) -> None:
        if (await self._load()).pop(key, None) is not None:
            await self._flush()

    async def keys(self, prefix: str = "") -> list[str]:
        return [key for key in await self._load() if key.startswith(prefix)]

    async def clear(self, prefix: str = "") -> None:
        data = await self._load()
        doomed = [key for key in data if key.startswith(prefix)]
        for key in doomed:
            del data[key]
        if doomed:
            await self._flush()


async def get_json(store: KeyValueStore, key: str) -> Any | None:
    """Read and decode a JSON value, treating corrupt entries as absent."""
    raw = await store.get(key)
    if raw is None:
        return None
    try:
        return json.loads(raw)
    except ValueError as e:
        logger.warning(f"Discarding unreadable entry {key}: {e}")
        await store.remove(key)
        return None


async def set_json(store: KeyValueStore, key: str, value: Any) -> None:
    await store.set(key, json.dumps(value, separators=(",", ":")).encode())
