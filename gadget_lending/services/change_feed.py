from __future__ import annotations

import logging
import threading
from typing import Callable, Iterable


LOGGER = logging.getLogger("gadget_lending.change_feed")

TABLES = (
    "students",
    "gadgets",
    "gadget_types",
    "rentals",
    "rental_items",
    "rental_extensions",
    "damage_assessments",
    "transactions",
)

Listener = Callable[[str, int], None]


class ChangeFeed:
    """Per-table invalidation signal.

    Listeners are told "this table changed, re-fetch it" together with the
    table's new version number; no row data is carried.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._listeners: dict[str, list[Listener]] = {}
        self._versions: dict[str, int] = {table: 0 for table in TABLES}

    def subscribe(self, table: str, listener: Listener) -> Callable[[], None]:
        with self._lock:
            self._listeners.setdefault(table, []).append(listener)

        def unsubscribe() -> None:
            with self._lock:
                listeners = self._listeners.get(table, [])
                if listener in listeners:
                    listeners.remove(listener)

        return unsubscribe

    def publish(self, tables: Iterable[str]) -> None:
        notifications: list[tuple[Listener, str, int]] = []
        with self._lock:
            for table in sorted(set(tables)):
                version = self._versions.get(table, 0) + 1
                self._versions[table] = version
                for listener in list(self._listeners.get(table, [])):
                    notifications.append((listener, table, version))

        for listener, table, version in notifications:
            try:
                listener(table, version)
            except Exception:
                LOGGER.exception("Change listener failed table=%s version=%s", table, version)

    def versions(self) -> dict[str, int]:
        with self._lock:
            return dict(self._versions)


change_feed = ChangeFeed()
