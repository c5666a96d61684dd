"""Live output fan-out.

Each subscriber owns a bounded queue keyed by command id (or ``"*"`` for every
command). Publishing never blocks: if a subscriber's queue is full an output
event is dropped for that subscriber and counted, while a terminal event evicts
the oldest queued event so every stream still ends. A subscriber only sees
events published after it subscribed.
"""

import queue
import threading
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Optional

from shellpilot.config import SUBSCRIBER_QUEUE_SIZE

ALL_COMMANDS = "*"

EVENT_OUTPUT = "output"
EVENT_COMPLETED = "completed"
EVENT_ERROR = "error"
EVENT_BLOCKED = "blocked"

TERMINAL_EVENTS = (EVENT_COMPLETED, EVENT_ERROR, EVENT_BLOCKED)


@dataclass
class OutputEvent:
    type: str
    command_id: str
    chunk_type: str = ""
    data: str = ""
    exit_code: Optional[int] = None
    duration_ms: Optional[int] = None
    error: str = ""
    message: str = ""

    @property
    def terminal(self) -> bool:
        return self.type in TERMINAL_EVENTS

    def to_dict(self) -> Dict[str, Any]:
        if self.type == EVENT_OUTPUT:
            return {"type": self.type, "commandId": self.command_id, "chunkType": self.chunk_type, "data": self.data}
        if self.type == EVENT_COMPLETED:
            return {
                "type": self.type,
                "commandId": self.command_id,
                "exitCode": self.exit_code,
                "durationMs": self.duration_ms,
            }
        if self.type == EVENT_BLOCKED:
            return {"type": self.type, "commandId": self.command_id, "message": self.message}
        return {"type": self.type, "commandId": self.command_id, "error": self.error}


class Subscription:
    def __init__(self, broadcaster: "OutputBroadcaster", command_id: str, maxsize: int):
        self._broadcaster = broadcaster
        self.command_id = command_id
        self._queue: "queue.Queue[Optional[OutputEvent]]" = queue.Queue(maxsize=maxsize)
        self.dropped = 0
        self.closed = False

    def offer(self, event: Optional[OutputEvent], evict: bool = False) -> bool:
        """Queue `event`; with `evict` the oldest entries make room instead of the event being dropped."""
        while True:
            try:
                self._queue.put_nowait(event)
                return True
            except queue.Full:
                self.dropped += 1
                if not evict:
                    return False
            try:
                self._queue.get_nowait()
            except queue.Empty:
                pass

    def _end(self) -> None:
        self.closed = True
        try:
            self._queue.put_nowait(None)
        except queue.Full:
            # the terminal event is already queued and ends iteration
            pass

    def get(self, timeout: Optional[float] = None) -> Optional[OutputEvent]:
        """Next event, or None on timeout / after close."""
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def drain(self) -> List[OutputEvent]:
        events = []
        while True:
            try:
                event = self._queue.get_nowait()
            except queue.Empty:
                return events
            if event is not None:
                events.append(event)

    def __iter__(self) -> Iterator[OutputEvent]:
        # per-command subscriptions end after the terminal event; "*" runs until close()
        while True:
            event = self._queue.get()
            if event is None:
                return
            yield event
            if event.terminal and self.command_id != ALL_COMMANDS:
                return

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._broadcaster.unsubscribe(self)
        self.offer(None, evict=True)


class OutputBroadcaster:
    def __init__(self, queue_size: int = SUBSCRIBER_QUEUE_SIZE):
        self.queue_size = queue_size
        self.lock = threading.Lock()
        self._subscribers: Dict[str, List[Subscription]] = {}
        self.published = 0
        self.undelivered = 0

    def subscribe(self, command_id: str = ALL_COMMANDS) -> Subscription:
        sub = Subscription(self, command_id, self.queue_size)
        with self.lock:
            self._subscribers.setdefault(command_id, []).append(sub)
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        with self.lock:
            subs = self._subscribers.get(sub.command_id)
            if not subs:
                return
            if sub in subs:
                subs.remove(sub)
            if not subs:
                self._subscribers.pop(sub.command_id, None)

    def subscriber_count(self, command_id: Optional[str] = None) -> int:
        with self.lock:
            if command_id is None:
                return sum(len(subs) for subs in self._subscribers.values())
            return len(self._subscribers.get(command_id, ()))

    def _targets(self, command_id: str) -> List[Subscription]:
        with self.lock:
            return list(self._subscribers.get(command_id, ())) + list(self._subscribers.get(ALL_COMMANDS, ()))

    def _deliver(self, event: OutputEvent) -> int:
        targets = self._targets(event.command_id)
        delivered = 0
        for sub in targets:
            if sub.offer(event, evict=event.terminal):
                delivered += 1
        with self.lock:
            self.published += 1
            if not targets:
                self.undelivered += 1
        if event.terminal:
            self._finish(event.command_id)
        return delivered

    def _finish(self, command_id: str) -> None:
        with self.lock:
            subs = self._subscribers.pop(command_id, [])
        for sub in subs:
            sub._end()

    def publish(self, command_id: str, data: str, chunk_type: str = "stdout") -> int:
        return self._deliver(OutputEvent(EVENT_OUTPUT, command_id, chunk_type=chunk_type, data=data))

    def publish_terminal(self, command_id: str, exit_code: Optional[int], duration_ms: int) -> int:
        return self._deliver(OutputEvent(EVENT_COMPLETED, command_id, exit_code=exit_code, duration_ms=duration_ms))

    def publish_error(self, command_id: str, error: str) -> int:
        return self._deliver(OutputEvent(EVENT_ERROR, command_id, error=error))

    def publish_blocked(self, command_id: str, message: str) -> int:
        return self._deliver(OutputEvent(EVENT_BLOCKED, command_id, message=message))

    def sink_for(self, command_id: str):
        """Chunk callback for CommandExecutor that publishes under `command_id`."""
        def _sink(chunk) -> None:
            self.publish(command_id, chunk.data, chunk_type=chunk.stream)
        return _sink
