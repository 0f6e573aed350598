"""Encrypted request/response exchange with a wallet service over a relay.

One call opens one websocket connection, subscribes to responses that
reference the outgoing envelope, publishes the encrypted request and waits
for the first response that decrypts. The subscription and the connection
are always closed before control returns to the caller.
"""

import asyncio
import json
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List

import websockets
from nostr_sdk import Event
from websockets.exceptions import ConnectionClosed, InvalidHandshake, InvalidURI

from runstr_rewards.logging_utils import get_logger

from . import events
from .errors import DecryptError, NWCTimeoutError, RelayError, RemoteError
from .types import REQUEST_KIND, RESPONSE_KIND
from .uri import ConnectionDescriptor

logger = get_logger(__name__)

DEFAULT_TIMEOUT = 30.0


@dataclass
class _Exchange:
    """Progress of one request, readable after a deadline cancels it."""

    published: bool = False
    failures: List[DecryptError] = field(default_factory=list)


class RelayTransport:
    """Sends encrypted RPC envelopes for one connection descriptor."""

    def __init__(
        self,
        descriptor: ConnectionDescriptor,
        timeout: float = DEFAULT_TIMEOUT,
        connect: Callable[..., Any] = websockets.connect,
    ):
        """Initialize the transport.

        Args:
            descriptor: Parsed wallet-connect URI.
            timeout: Seconds allowed for a whole exchange, connect included.
            connect: Websocket connect factory, replaceable in tests.
        """
        self.descriptor = descriptor
        self.timeout = timeout
        self._connect = connect

    async def send_request(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Send one request and return the decrypted response body.

        Args:
            payload: Plaintext request body, ``{"method": ..., "params": ...}``.

        Returns:
            The decoded response body.

        Raises:
            NWCTimeoutError: No response before the deadline.
            DecryptError: A response arrived but none could be decrypted.
            RemoteError: The wallet answered with an error payload.
            RelayError: The relay was unreachable or rejected the request.
                ``published`` tells whether the request may have reached it.
        """
        method = payload.get("method")
        descriptor = self.descriptor
        content = events.encrypt(json.dumps(payload), descriptor.secret, descriptor.wallet_pubkey)
        request = events.sign_event(
            descriptor.secret,
            kind=REQUEST_KIND,
            content=content,
            tags=[["p", descriptor.wallet_pubkey]],
        )
        request_id = request.id().to_hex()
        exchange = _Exchange()

        logger.debug(f"Sending {method} request {request_id} via {descriptor.relay_url}")

        try:
            plaintext = await asyncio.wait_for(self._exchange(request, exchange), self.timeout)
        except asyncio.TimeoutError as e:
            if exchange.failures:
                raise exchange.failures[-1] from e
            if not exchange.published:
                raise RelayError(
                    f"Could not reach {descriptor.relay_url} within {self.timeout:g}s"
                ) from e
            logger.warning(f"{method} request {request_id} timed out after {self.timeout:g}s")
            raise NWCTimeoutError(method, self.timeout) from e
        except (OSError, InvalidURI, InvalidHandshake) as e:
            raise RelayError(
                f"Could not connect to {descriptor.relay_url}: {e}", published=exchange.published
            ) from e
        except ConnectionClosed as e:
            raise RelayError(
                f"Relay {descriptor.relay_url} closed the connection: {e}",
                published=exchange.published,
            ) from e

        try:
            body = json.loads(plaintext)
        except ValueError as e:
            raise DecryptError(f"Response to {method} is not valid JSON") from e
        if not isinstance(body, dict):
            raise DecryptError(f"Response to {method} is not a JSON object")

        error = body.get("error")
        if error:
            if isinstance(error, dict):
                raise RemoteError(str(error.get("code", "OTHER")), str(error.get("message", "")))
            raise RemoteError("OTHER", str(error))

        logger.debug(f"Received {body.get('result_type', method)} response for {request_id}")
        return body

    async def _exchange(self, request: Event, exchange: _Exchange) -> str:
        """Connect, subscribe, publish and wait for the decrypted response."""
        descriptor = self.descriptor
        request_id = request.id().to_hex()
        sub_id = f"nwc-{uuid.uuid4().hex[:16]}"

        async with self._connect(descriptor.relay_url, open_timeout=self.timeout) as ws:
            try:
                # Response kinds are ephemeral, so subscribe before publishing.
                subscription = {
                    "kinds": [RESPONSE_KIND],
                    "authors": [descriptor.wallet_pubkey],
                    "#e": [request_id],
                }
                await ws.send(json.dumps(["REQ", sub_id, subscription]))
                exchange.published = True
                await ws.send(json.dumps(["EVENT", events.event_to_dict(request)]))
                return await self._await_response(ws, sub_id, request_id, exchange)
            finally:
                await self._close_subscription(ws, sub_id)

    async def _await_response(self, ws, sub_id: str, request_id: str, exchange: _Exchange) -> str:
        """Read relay messages until a response envelope decrypts.

        Undecryptable responses are skipped in favour of a later valid one. If
        the relay ends the subscription after only bad responses, the last
        decrypt failure is raised. Failures are collected on ``exchange`` so the
        caller can report them if the deadline passes first.
        """
        descriptor = self.descriptor
        failures = exchange.failures

        while True:
            try:
                raw = await ws.recv()
            except ConnectionClosed:
                if failures:
                    raise failures[-1]
                raise

            try:
                message = json.loads(raw)
            except ValueError:
                logger.debug(f"Ignoring non-JSON relay message: {raw!r:.80}")
                continue
            if not isinstance(message, list) or not message:
                continue

            kind = message[0]
            if kind == "EVENT" and len(message) >= 3 and message[1] == sub_id:
                event = events.parse_event(message[2])
                if (
                    event is None
                    or event.kind().as_u16() != RESPONSE_KIND
                    or event.author().to_hex() != descriptor.wallet_pubkey
                    or request_id not in events.tag_values(event, "e")
                ):
                    logger.debug(f"Ignoring unrelated or unsigned event on {sub_id}")
                    continue
                try:
                    return events.decrypt(event.content(), descriptor.secret, descriptor.wallet_pubkey)
                except DecryptError as e:
                    logger.warning(f"Response {event.id().to_hex()} to {request_id} did not decrypt: {e}")
                    failures.append(e)
            elif kind == "OK" and len(message) >= 3 and message[1] == request_id:
                if not message[2]:
                    reason = message[3] if len(message) > 3 else ""
                    raise RelayError(f"Relay rejected request {request_id}: {reason}")
            elif kind == "CLOSED" and len(message) >= 2 and message[1] == sub_id:
                if failures:
                    raise failures[-1]
                reason = message[2] if len(message) > 2 else ""
                raise RelayError(f"Relay closed subscription {sub_id}: {reason}", published=True)
            elif kind == "NOTICE" and len(message) >= 2:
                logger.info(f"Relay notice from {descriptor.relay_url}: {message[1]}")

    async def _close_subscription(self, ws, sub_id: str) -> None:
        try:
            await ws.send(json.dumps(["CLOSE", sub_id]))
        except ConnectionClosed:
            logger.debug(f"Connection already closed before CLOSE {sub_id}")
