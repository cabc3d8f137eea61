"""
Presence registry: which participant identities are connected to the realtime channel.
"""
from typing import Callable, Iterable, List, Set

from consult_chat.utils.logger import get_logger

logger = get_logger("presence")

PresenceListener = Callable[[Set[str]], None]


class PresenceRegistry:
    """In-memory online set, authoritative only for the current connection."""

    def __init__(self) -> None:
        self._online: Set[str] = set()
        self._listeners: List[PresenceListener] = []

    def mark_online(self, user_id: str) -> None:
        if not user_id or user_id in self._online:
            return
        self._online.add(user_id)
        logger.debug("User online: %s", user_id)
        self._notify()

    def mark_offline(self, user_id: str) -> None:
        if user_id not in self._online:
            return
        self._online.discard(user_id)
        logger.debug("User offline: %s", user_id)
        self._notify()

    def is_online(self, user_id: str) -> bool:
        return user_id in self._online

    def replace_all(self, user_ids: Iterable[str]) -> None:
        """Apply a full snapshot delivered on (re)connect."""
        snapshot = {str(uid) for uid in user_ids if uid}
        if snapshot == self._online:
            return
        self._online = snapshot
        logger.debug("Presence snapshot: %d online", len(snapshot))
        self._notify()

    def clear(self) -> None:
        self.replace_all(())

    def online_ids(self) -> Set[str]:
        return set(self._online)

    def subscribe(self, listener: PresenceListener) -> Callable[[], None]:
        """Register a change listener; returns an unsubscribe callable."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def _notify(self) -> None:
        snapshot = set(self._online)
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception as e:
                logger.error(f"Presence listener failed: {e}", exc_info=True)
