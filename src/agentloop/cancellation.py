"""Cooperative cancellation tokens.

A CancellationToken wraps a ``threading.Event``. Tokens can be linked: a
child token is cancelled whenever its parent is, which is how a parent
loop's cancellation reaches the sub-agent loops it delegated to. Cancelling
a child never affects the parent.
"""

from __future__ import annotations

import threading

from agentloop.exceptions import CancelledByCallerError


class CancellationToken:
    """Thread-safe, one-shot cancellation signal.

    Usage::

        token = CancellationToken()
        worker = threading.Thread(target=loop.run, kwargs={"cancel": token})
        ...
        token.cancel("user pressed stop")
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._reason: str | None = None
        self._children: list[CancellationToken] = []

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    def cancel(self, reason: str = "Cancelled by caller") -> None:
        """Signal cancellation to this token and every linked child."""
        with self._lock:
            if self._event.is_set():
                return
            self._reason = reason
            self._event.set()
            children = list(self._children)
        for child in children:
            child.cancel(reason)

    def child(self) -> CancellationToken:
        """Create a token that is cancelled together with this one."""
        token = CancellationToken()
        with self._lock:
            if not self._event.is_set():
                self._children.append(token)
                return token
        token.cancel(self._reason or "Cancelled by caller")
        return token

    def wait(self, timeout: float | None = None) -> bool:
        """Block up to ``timeout`` seconds; return True if cancelled."""
        return self._event.wait(timeout)

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise CancelledByCallerError(self._reason or "Cancelled by caller")
