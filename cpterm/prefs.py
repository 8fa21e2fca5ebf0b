import asyncio
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)

# Listener receives {key: {"newValue": value-or-None}} for every changed key
ChangeListener = Callable[[dict[str, dict]], Awaitable[None]]


class PreferenceStore:
    """Key -> string preferences persisted as a JSON file.

    Change listeners are notified after the new values have been written,
    with one ``{"newValue": ...}`` entry per changed key (``None`` for a
    removed key).
    """

    def __init__(self, filepath: str | Path):
        self.filepath = Path(filepath).resolve()
        self._data: dict[str, str] = {}
        self._lock = asyncio.Lock()
        self._listeners: list[ChangeListener] = []
        self._load_sync()

    def _load_sync(self):
        """Synchronous load, called from __init__."""
        if self.filepath.exists():
            try:
                with open(self.filepath) as f:
                    raw = json.load(f)
            except (json.JSONDecodeError, OSError):
                logger.warning("Corrupt preferences file %s, starting fresh", self.filepath)
                return
            if isinstance(raw, dict):
                self._data = {str(k): str(v) for k, v in raw.items() if v is not None}

    def _save_sync(self):
        """Synchronous save; must be called via asyncio.to_thread()."""
        self.filepath.parent.mkdir(parents=True, exist_ok=True)
        tmp_fd, tmp_path = tempfile.mkstemp(
            dir=str(self.filepath.parent), suffix=".tmp"
        )
        try:
            with os.fdopen(tmp_fd, "w") as f:
                json.dump(self._data, f, indent=2, sort_keys=True)
            os.replace(tmp_path, self.filepath)
        except BaseException:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise

    def on_change(self, listener: ChangeListener) -> None:
        self._listeners.append(listener)

    async def get_all(self) -> dict[str, str]:
        async with self._lock:
            return dict(self._data)

    async def get(self, key: str) -> str | None:
        async with self._lock:
            return self._data.get(key)

    async def update(self, changes: dict[str, str | None]) -> dict[str, dict]:
        """Apply *changes* (``None`` removes a key) and notify listeners.

        Returns the change set that was broadcast; keys whose value did not
        actually change are left out of it.
        """
        async with self._lock:
            delta: dict[str, dict] = {}
            for key, value in changes.items():
                if value is None:
                    if key in self._data:
                        del self._data[key]
                        delta[key] = {"newValue": None}
                elif self._data.get(key) != value:
                    self._data[key] = str(value)
                    delta[key] = {"newValue": str(value)}
            if delta:
                await asyncio.to_thread(self._save_sync)

        if delta:
            for listener in list(self._listeners):
                try:
                    await listener(delta)
                except Exception:
                    logger.exception("Preference change listener failed")
        return delta
