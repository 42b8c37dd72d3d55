import asyncio
import json
import logging

log = logging.getLogger(__name__)

# Shared list of (loop, queue) subscribers for direct broadcast
_subscribers: list[tuple[asyncio.AbstractEventLoop, asyncio.Queue]] = []

def _sse(evt_type: str, data: dict) -> bytes:
    return f"event: {evt_type}\ndata: {json.dumps(data, default=str)}\n\n".encode("utf-8")

def _heartbeat() -> bytes:
    return b": keep-alive\n\n"

def _deliver(q: asyncio.Queue, payload: dict):
    try:
        q.put_nowait(payload)
    except asyncio.QueueFull:
        log.warning("Dropping %s event for a full subscriber queue", payload["type"])

def _broadcast(evt_type: str, data: dict | None = None):
    """
    Pushes an event to all connected SSE clients (other devices counting the
    same stock). Sync routes call this from the threadpool, so delivery is
    handed to each subscriber's own event loop. A slow or closed subscriber
    never fails the write that triggered the event.
    """
    payload = {"type": evt_type, "data": data or {}}
    # Iterate over a copy so a disconnect during iteration is harmless
    for loop, q in list(_subscribers):
        try:
            loop.call_soon_threadsafe(_deliver, q, payload)
        except RuntimeError:
            log.debug("Skipping %s event for a subscriber whose loop is closed", evt_type)

def subscribe(maxsize: int = 1000) -> asyncio.Queue:
    """Must be called from the event loop that will consume the queue."""
    q: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
    _subscribers.append((asyncio.get_running_loop(), q))
    return q

def unsubscribe(q: asyncio.Queue):
    _subscribers[:] = [(loop, sub) for loop, sub in _subscribers if sub is not q]
