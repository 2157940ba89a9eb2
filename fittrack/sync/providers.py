"""Simple identity and connectivity providers.

Used by the CLI, by tests, and by hosts that track sign-in and network
state themselves and just push the current value in.
"""

import logging
from typing import Callable, List, Optional

logger = logging.getLogger(__name__)


class StaticIdentity:
    """Identity provider holding a fixed (or externally updated) account id."""

    def __init__(self, account_id: Optional[str] = None):
        self.account_id = account_id

    def current_account_id(self) -> Optional[str]:
        return self.account_id

    def sign_in(self, account_id: str) -> None:
        self.account_id = account_id

    def sign_out(self) -> None:
        self.account_id = None


class ManualConnectivity:
    """Connectivity provider whose state is set by the host.

    ``set_connected`` notifies listeners only when the state actually
    changes.
    """

    def __init__(self, connected: bool = True):
        self._connected = connected
        self._listeners: List[Callable[[bool], None]] = []

    def is_connected(self) -> bool:
        return self._connected

    def on_connectivity_change(self, callback: Callable[[bool], None]) -> Callable[[], None]:
        self._listeners.append(callback)

        def unsubscribe() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return unsubscribe

    def set_connected(self, connected: bool) -> None:
        if connected == self._connected:
            return
        self._connected = connected
        logger.debug(f"Connectivity changed: connected={connected}")
        for callback in list(self._listeners):
            try:
                callback(connected)
            except Exception as e:
                logger.error(f"Connectivity listener failed: {e}", exc_info=True)
