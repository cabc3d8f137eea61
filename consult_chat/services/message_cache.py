"""
Durable per-conversation message history used to paint a conversation before
the network history arrives. Advisory only: canonical history overwrites it.
"""
import asyncio
import json
import os
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Protocol, Set

from pydantic import ValidationError

from consult_chat.schemas import ConversationKey, Message
from consult_chat.utils.logger import get_logger

logger = get_logger("message_cache")


class CacheStore(Protocol):
    def read(self, name: str) -> Optional[str]:
        ...

    def write(self, name: str, data: str) -> None:
        ...

    def delete(self, name: str) -> None:
        ...


class InMemoryCacheStore:
    """Process-local store; used by tests and headless runs."""

    def __init__(self) -> None:
        self.entries: Dict[str, str] = {}

    def read(self, name: str) -> Optional[str]:
        return self.entries.get(name)

    def write(self, name: str, data: str) -> None:
        self.entries[name] = data

    def delete(self, name: str) -> None:
        self.entries.pop(name, None)


def _sanitize_name(name: str) -> str:
    cleaned = "".join(ch if ch.isalnum() or ch in "-_" else "_" for ch in name.strip())
    return cleaned.strip("_") or "conversation"


class FileCacheStore:
    """One JSON document per conversation under `directory`."""

    def __init__(self, directory: str | Path) -> None:
        self.directory = Path(directory)

    def _path(self, name: str) -> Path:
        return self.directory / f"{_sanitize_name(name)}.json"

    def read(self, name: str) -> Optional[str]:
        path = self._path(name)
        if not path.exists():
            return None
        try:
            return path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            logger.warning(f"Failed to read cache file {path}: {e}")
            return None

    def write(self, name: str, data: str) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        path = self._path(name)
        tmp_path = path.with_suffix(".json.tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            f.write(data)
        # Readers never see a half-written document
        os.replace(tmp_path, path)

    def delete(self, name: str) -> None:
        try:
            self._path(name).unlink()
        except FileNotFoundError:
            pass


def _decode(raw: str, name: str) -> List[Message]:
    try:
        records = json.loads(raw)
    except ValueError as e:
        logger.warning(f"Dropping corrupt cache entry {name}: {e}")
        return []
    if not isinstance(records, list):
        logger.warning("Dropping cache entry %s: expected a list", name)
        return []

    messages: List[Message] = []
    for record in records:
        try:
            messages.append(Message.model_validate(record))
        except ValidationError:
            logger.warning("Dropping unparseable cached message in %s", name)
    return messages


def _encode(messages: Iterable[Message]) -> str:
    return json.dumps([m.model_dump(mode="json") for m in messages], ensure_ascii=False)


class MessageCache:
    """Load/save conversation history; background writes run on one worker thread in order."""

    def __init__(self, store: Optional[CacheStore] = None) -> None:
        self.store: CacheStore = store if store is not None else InMemoryCacheStore()
        self._executor: Optional[ThreadPoolExecutor] = None
        self._pending: Set[asyncio.Future] = set()

    def load(self, key: ConversationKey) -> List[Message]:
        """Cached messages for `key`; empty on a miss or a corrupt entry."""
        name = key.storage_key
        try:
            raw = self.store.read(name)
        except OSError as e:
            logger.warning(f"Cache read failed for {name}: {e}")
            return []
        if not raw:
            return []
        return _decode(raw, name)

    def save(self, key: ConversationKey, messages: Iterable[Message]) -> None:
        """Overwrite the entry for `key`."""
        self.store.write(key.storage_key, _encode(messages))

    def append(self, key: ConversationKey, message: Message) -> None:
        existing = self.load(key)
        if any(m.id == message.id for m in existing):
            return
        existing.append(message)
        self.save(key, existing)

    def clear(self, key: ConversationKey) -> None:
        self.store.delete(key.storage_key)

    def save_later(self, key: ConversationKey, messages: Iterable[Message]) -> None:
        """Fire-and-forget overwrite; never blocks message display."""
        self._submit(self.save, key, list(messages))

    def append_later(self, key: ConversationKey, message: Message) -> None:
        self._submit(self.append, key, message)

    async def flush(self) -> None:
        """Wait for every background write scheduled so far."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def close(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None

    def _submit(self, func, key: ConversationKey, payload) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._run(func, key, payload)
            return

        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="chat-cache")
        future = loop.run_in_executor(self._executor, self._run, func, key, payload)
        self._pending.add(future)
        future.add_done_callback(self._pending.discard)

    @staticmethod
    def _run(func, key: ConversationKey, payload) -> None:
        try:
            func(key, payload)
        except Exception as e:
            logger.error(f"Cache write failed for {key.storage_key}: {e}", exc_info=True)
