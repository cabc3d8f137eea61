from collections import OrderedDict
from typing import Iterable


class BoundedIdSet:
    """Insertion-ordered set of message ids that evicts the oldest past `capacity`.

    Shared by every conversation of the process so transport retries and
    overlapping listeners cannot re-add a message.
    """

    def __init__(self, capacity: int = 5000) -> None:
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self.capacity = capacity
        self._ids: "OrderedDict[str, None]" = OrderedDict()

    def __contains__(self, message_id: object) -> bool:
        return message_id in self._ids

    def __len__(self) -> int:
        return len(self._ids)

    def add(self, message_id: str) -> None:
        if message_id in self._ids:
            self._ids.move_to_end(message_id)
            return
        self._ids[message_id] = None
        while len(self._ids) > self.capacity:
            self._ids.popitem(last=False)

    def update(self, message_ids: Iterable[str]) -> None:
        for message_id in message_ids:
            self.add(message_id)

    def discard(self, message_id: str) -> None:
        self._ids.pop(message_id, None)
