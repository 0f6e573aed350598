import asyncio
import json
import os

import pytest
from nostr_sdk import Keys

# Generate a throwaway treasury connection for the whole test session.
# This must run before runstr_rewards.config is imported by any test.
_wallet_keys = Keys.generate()
_wallet_secret = _wallet_keys.secret_key().to_hex()
_client_secret = Keys.generate().secret_key().to_hex()
_wallet_pubkey = _wallet_keys.public_key().to_hex()

os.environ.setdefault(
    "FUNDING_NWC_URI",
    f"nostr+walletconnect://{_wallet_pubkey}?relay=wss%3A%2F%2Frelay.test&secret={_client_secret}",
)
os.environ.setdefault("LOG_FORMAT", "text")


class FakeWalletRelay:
    """In-process relay that answers requests as a wallet service would.

    ``handler`` receives the decrypted request body and returns the response
    body, or None to stay silent. ``garble`` makes every response undecryptable.
    """

    def __init__(self, wallet_secret, handler, garble=False):
        self.wallet_secret = wallet_secret
        self.handler = handler
        self.garble = garble
        self.sent = []
        self.requests = []
        self.connect_calls = []
        self.closed = False
        self.sub_id = None
        self._queue = asyncio.Queue()

    def connect(self, url, **kwargs):
        self.connect_calls.append((url, kwargs))
        return self

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        self.closed = True

    async def send(self, raw):
        from runstr_rewards.nwc import events
        from runstr_rewards.nwc.types import RESPONSE_KIND

        message = json.loads(raw)
        self.sent.append(message)
        if message[0] == "REQ":
            self.sub_id = message[1]
        elif message[0] == "EVENT":
            event = message[1]
            await self._queue.put(json.dumps(["OK", event["id"], True, ""]))
            body = json.loads(events.decrypt(event["content"], self.wallet_secret, event["pubkey"]))
            self.requests.append(body)
            response = self.handler(body)
            if response is None:
                return
            if self.garble:
                content = "bm90IGVuY3J5cHRlZA==?iv=AAAAAAAAAAAAAAAAAAAAAA=="
            else:
                content = events.encrypt(json.dumps(response), self.wallet_secret, event["pubkey"])
            reply = events.sign_event(
                self.wallet_secret,
                kind=RESPONSE_KIND,
                content=content,
                tags=[["p", event["pubkey"]], ["e", event["id"]]],
            )
            await self._queue.put(json.dumps(["EVENT", self.sub_id, events.event_to_dict(reply)]))

    async def recv(self):
        return await self._queue.get()

    def sent_types(self):
        return [message[0] for message in self.sent]


@pytest.fixture
def wallet_secret():
    return _wallet_secret


@pytest.fixture
def descriptor():
    from runstr_rewards.nwc.uri import parse_connection_uri

    return parse_connection_uri(os.environ["FUNDING_NWC_URI"])


@pytest.fixture
def make_relay(wallet_secret):
    """Factory for fake relays bound to the session wallet key."""

    def factory(handler, garble=False):
        return FakeWalletRelay(wallet_secret, handler, garble=garble)

    return factory


@pytest.fixture
async def test_db(tmp_path):
    """Create a temporary test database."""
    from runstr_rewards.database import Database

    db = Database(str(tmp_path / "test.db"))
    await db.initialize()
    return db
