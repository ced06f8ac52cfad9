"""Lifecycle contract for components the app starts and stops."""

from __future__ import annotations

from abc import ABC, abstractmethod


class Service(ABC):
    """A component started with the app and stopped, newest first, on shutdown.

    Subclasses flip ``_running`` in ``start``/``stop``; the default health
    check reports it. Services wrapping an external client report that
    client's state instead.
    """

    _running: bool = False

    @property
    @abstractmethod
    def service_name(self) -> str:
        ...

    @abstractmethod
    async def start(self) -> None:
        ...

    @abstractmethod
    async def stop(self) -> None:
        ...

    async def health_check(self) -> bool:
        return self._running
