"""One-shot relay reads and writes.

``query_relay`` subscribes with a filter, collects verified events until the
relay signals end of stored events and closes the subscription.
``publish_event`` sends one event and waits for the relay's OK. Both treat
an unreachable or misbehaving relay as "no result" rather than an error so
callers can fan out across many relays.
"""

import asyncio
import json
import uuid
from typing import Any, Callable, Dict, List

import websockets
from nostr_sdk import Event
from websockets.exceptions import ConnectionClosed, InvalidHandshake, InvalidURI

from runstr_rewards.logging_utils import get_logger

from .events import event_to_dict, parse_event

logger = get_logger(__name__)

RELAY_ERRORS = (OSError, ValueError, InvalidURI, InvalidHandshake, ConnectionClosed)


async def query_relay(
    relay_url: str,
    filters: Dict[str, Any],
    timeout: float = 3.0,
    connect: Callable[..., Any] = websockets.connect,
) -> List[Event]:
    """Return the verified events ``relay_url`` holds for ``filters``.

    Events that fail signature checks are dropped. Whatever arrived before a
    timeout or a relay failure is returned.
    """
    sub_id = f"q-{uuid.uuid4().hex[:12]}"
    found: List[Event] = []

    async def read_until_eose(ws):
        while True:
            message = json.loads(await ws.recv())
            if not isinstance(message, list) or len(message) < 2 or message[1] != sub_id:
                continue
            if message[0] == "EVENT" and len(message) >= 3:
                event = parse_event(message[2])
                if event is not None:
                    found.append(event)
            elif message[0] in ("EOSE", "CLOSED"):
                return

    async def exchange():
        async with connect(relay_url, open_timeout=timeout) as ws:
            await ws.send(json.dumps(["REQ", sub_id, filters]))
            try:
                await read_until_eose(ws)
            finally:
                try:
                    await ws.send(json.dumps(["CLOSE", sub_id]))
                except ConnectionClosed:
                    logger.debug(f"{relay_url} closed before CLOSE {sub_id}")

    try:
        await asyncio.wait_for(exchange(), timeout)
    except asyncio.TimeoutError:
        logger.debug(f"Query on {relay_url} timed out with {len(found)} event(s)")
    except RELAY_ERRORS as e:
        logger.debug(f"Query on {relay_url} failed: {e}")
    return found


async def publish_event(
    relay_url: str,
    event: Event,
    timeout: float = 5.0,
    connect: Callable[..., Any] = websockets.connect,
) -> bool:
    """Publish ``event`` to one relay. True only when the relay accepted it."""
    event_id = event.id().to_hex()

    async def exchange() -> bool:
        async with connect(relay_url, open_timeout=timeout) as ws:
            await ws.send(json.dumps(["EVENT", event_to_dict(event)]))
            while True:
                message = json.loads(await ws.recv())
                if (
                    isinstance(message, list)
                    and len(message) >= 3
                    and message[0] == "OK"
                    and message[1] == event_id
                ):
                    if not message[2]:
                        reason = message[3] if len(message) > 3 else ""
                        logger.warning(f"{relay_url} rejected event {event_id}: {reason}")
                    return bool(message[2])

    try:
        return await asyncio.wait_for(exchange(), timeout)
    except asyncio.TimeoutError:
        logger.warning(f"No OK from {relay_url} for event {event_id} within {timeout:g}s")
    except RELAY_ERRORS as e:
        logger.warning(f"Publishing {event_id} to {relay_url} failed: {e}")
    return False
