from __future__ import annotations

from collections.abc import Callable

import structlog

logger = structlog.get_logger(__name__)

ConnectivityListener = Callable[[bool], None]


class ConnectivitySignal:
    """Online/offline event source shared by the offline queue and the repository."""

    def __init__(self, online: bool = True) -> None:
        self._online = online
        self._listeners: list[ConnectivityListener] = []

    @property
    def is_online(self) -> bool:
        return self._online

    def subscribe(self, listener: ConnectivityListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def set_online(self, online: bool) -> None:
        if online == self._online:
            return
        self._online = online
        logger.info("connectivity_changed", online=online, listeners=len(self._listeners))
        for listener in list(self._listeners):
            listener(online)
