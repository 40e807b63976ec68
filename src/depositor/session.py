"""
Session binding between a wallet/session provider and the deposit engine.

The provider reports which identity is connected and on which network.
Every change is forwarded to the engine: a new identity or network
supersedes all in-flight work for the old one, a disconnect stops it.
"""

from __future__ import annotations

import logging
from typing import Callable, Optional, Protocol, runtime_checkable

from .config import normalize_address

logger = logging.getLogger(__name__)

SessionListener = Callable[[Optional[str], Optional[str]], None]


@runtime_checkable
class SessionProvider(Protocol):
    @property
    def identity(self) -> Optional[str]: ...

    @property
    def network(self) -> Optional[str]: ...

    def subscribe(self, listener: SessionListener) -> Callable[[], None]: ...


class LocalSession:
    """In-process session provider for the CLI and tests."""

    def __init__(self):
        self._identity: Optional[str] = None
        self._network: Optional[str] = None
        self._listeners: list[SessionListener] = []

    @property
    def identity(self) -> Optional[str]:
        return self._identity

    @property
    def network(self) -> Optional[str]:
        return self._network

    @property
    def connected(self) -> bool:
        return self._identity is not None

    def connect(self, identity: str, network: str) -> None:
        self._identity = normalize_address(identity)
        self._network = network
        self._emit()

    def disconnect(self) -> None:
        if self._identity is None and self._network is None:
            return
        self._identity = None
        self._network = None
        self._emit()

    def switch_network(self, network: str) -> None:
        if network == self._network:
            return
        self._network = network
        self._emit()

    def subscribe(self, listener: SessionListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _emit(self) -> None:
        for listener in list(self._listeners):
            listener(self._identity, self._network)


class SessionBinding:
    """Keeps a DepositEngine in step with a SessionProvider."""

    def __init__(self, engine, provider: SessionProvider):
        self.engine = engine
        self.provider = provider
        self._unsubscribe: Optional[Callable[[], None]] = None

    @property
    def bound(self) -> bool:
        return self._unsubscribe is not None

    def bind(self) -> None:
        """Start following the provider and apply its current session."""
        if self._unsubscribe is not None:
            return
        self._unsubscribe = self.provider.subscribe(self._on_session_change)
        self._on_session_change(self.provider.identity, self.provider.network)

    def unbind(self) -> None:
        if self._unsubscribe is None:
            return
        self._unsubscribe()
        self._unsubscribe = None
        self.engine.deactivate()

    def _on_session_change(self, identity: Optional[str], network: Optional[str]) -> None:
        if identity is None or network is None:
            logger.info("Session disconnected")
            self.engine.deactivate()
            return
        logger.debug("Session changed: %s on %s", identity, network)
        self.engine.activate(identity, network)
