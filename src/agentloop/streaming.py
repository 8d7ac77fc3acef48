"""Streaming channel: mirrors in-flight model text to a subscriber.

While the gateway produces a response, each text delta is pushed through a
``TurnStream`` to the subscriber and accumulated. When the response is
complete the loop commits the turn, and the stream checks that the
authoritative turn text equals the concatenation of everything delivered.
An aborted stream (cancellation, gateway failure) commits nothing and
drops any fragment that arrives late from an abandoned gateway thread.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING

from agentloop.exceptions import CancelledByCallerError, GatewayFatalError

if TYPE_CHECKING:
    from agentloop.cancellation import CancellationToken

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StreamFragment:
    """One delivered piece of a turn's text.

    Attributes:
        turn_index: Index of the turn in the conversation once committed.
        seq: Zero-based delivery order within the turn.
        text: The text delta.
    """

    turn_index: int
    seq: int
    text: str


StreamSubscriber = Callable[[StreamFragment], None]


class TurnStream:
    """Fragment accumulator for a single agent turn."""

    def __init__(
        self,
        turn_index: int,
        subscriber: StreamSubscriber,
        cancel: CancellationToken | None = None,
    ) -> None:
        self.turn_index = turn_index
        self._subscriber = subscriber
        self._cancel = cancel
        self._fragments: list[StreamFragment] = []
        self._lock = threading.Lock()
        self._closed = False
        self._committed = False

    @property
    def fragments(self) -> tuple[StreamFragment, ...]:
        with self._lock:
            return tuple(self._fragments)

    @property
    def text(self) -> str:
        with self._lock:
            return "".join(f.text for f in self._fragments)

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def committed(self) -> bool:
        return self._committed

    def push(self, text: str) -> None:
        """Deliver one fragment to the subscriber and record it.

        Raises:
            CancelledByCallerError: If cancellation has been signalled; the
                gateway propagates this to abort the in-flight call.
        """
        if self._cancel is not None and self._cancel.is_cancelled:
            raise CancelledByCallerError(self._cancel.reason or "Cancelled by caller")
        if not text:
            return
        with self._lock:
            if self._closed:
                logger.debug("Dropping late fragment for closed turn %d", self.turn_index)
                return
            fragment = StreamFragment(self.turn_index, len(self._fragments), text)
            self._fragments.append(fragment)
            self._deliver(fragment)

    def commit(self, expected_text: str) -> tuple[StreamFragment, ...]:
        """Close the stream against the turn's aggregated text.

        A gateway that did not stream at all has its whole text delivered
        here as a single fragment.

        Raises:
            GatewayFatalError: If the streamed text differs from the turn text.
        """
        with self._lock:
            if self._closed:
                raise GatewayFatalError(f"Stream for turn {self.turn_index} is already closed")
            if not self._fragments and expected_text:
                fragment = StreamFragment(self.turn_index, 0, expected_text)
                self._fragments.append(fragment)
                self._deliver(fragment)
            streamed = "".join(f.text for f in self._fragments)
            self._closed = True
            if streamed != expected_text:
                raise GatewayFatalError(
                    f"Streamed text for turn {self.turn_index} does not match the "
                    f"response ({len(streamed)} vs {len(expected_text)} chars)"
                )
            self._committed = True
            return tuple(self._fragments)

    def abort(self) -> None:
        """Close the stream without committing; later fragments are dropped."""
        with self._lock:
            self._closed = True

    def _deliver(self, fragment: StreamFragment) -> None:
        try:
            self._subscriber(fragment)
        except Exception:
            logger.debug("Stream subscriber error", exc_info=True)


class StreamChannel:
    """Factory for per-turn streams sharing one subscriber.

    Usage::

        recorder = StreamRecorder()
        channel = StreamChannel(recorder, cancel=token)
        stream = channel.open_turn(len(state))
        gateway.invoke(..., on_fragment=stream.push)
        stream.commit(response.text)
    """

    def __init__(
        self,
        subscriber: StreamSubscriber,
        cancel: CancellationToken | None = None,
    ) -> None:
        self._subscriber = subscriber
        self._cancel = cancel

    def open_turn(self, turn_index: int) -> TurnStream:
        return TurnStream(turn_index, self._subscriber, self._cancel)


class StreamRecorder:
    """Subscriber that records every fragment it receives."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.fragments: list[StreamFragment] = []

    def __call__(self, fragment: StreamFragment) -> None:
        with self._lock:
            self.fragments.append(fragment)

    def text_for(self, turn_index: int) -> str:
        with self._lock:
            return "".join(f.text for f in self.fragments if f.turn_index == turn_index)

    def turns(self) -> list[int]:
        with self._lock:
            return sorted({f.turn_index for f in self.fragments})
