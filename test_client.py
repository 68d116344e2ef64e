"""
Tests for the client side: local key storage, directory HTTP client and event handling.
"""

import asyncio
import json
import os

import httpx
import pytest

from client.cli_client import ChatClient
from client.storage import EncryptedStorage
from e2ee.config import Settings
from e2ee.directory import DirectoryClient
from e2ee.errors import DirectoryError, NetworkError, NotFound
from e2ee.models import EncryptedMessage, OutgoingMessage
from e2ee.primitives import b64encode
from e2ee.session import CryptoSession

from conftest import FAST_SETTINGS

PEER_KEY = os.urandom(32)


class FakeWebSocket:
    def __init__(self):
        self.sent = []

    async def send(self, data):
        self.sent.append(json.loads(data))


def directory_handler(request: httpx.Request) -> httpx.Response:
    path = request.url.path
    if path == "/keys/alice" and request.method == "GET":
        return httpx.Response(200, json={"userId": "alice", "publicKey": b64encode(PEER_KEY), "version": 2})
    if path.startswith("/keys/") and request.method == "PUT":
        if request.headers.get("Authorization") != "Bearer test-token":
            return httpx.Response(401, json={"detail": "Not authenticated"})
        body = json.loads(request.content)
        return httpx.Response(200, json={"userId": path.split("/")[-1], "publicKey": body["publicKey"], "version": 1})
    if path == "/keys/ghost":
        return httpx.Response(404, json={"detail": "User not found or no key published"})
    if path == "/keys/busy":
        return httpx.Response(503)
    if path == "/keys/mallory":
        return httpx.Response(403, json={"detail": "Not authorized"})
    if path == "/keys/proxied":
        return httpx.Response(400, text="<html>Bad Gateway Request</html>", headers={"Content-Type": "text/html"})
    if path == "/keys/portal":
        return httpx.Response(200, text="<html>Sign in to the network</html>", headers={"Content-Type": "text/html"})
    if path == "/groups/team/key":
        return httpx.Response(200, json={"groupId": "team", "wrappedKey": b64encode(b"w" * 60), "version": 4})
    raise httpx.ConnectError("connection refused", request=request)


def _directory(token="test-token") -> DirectoryClient:
    transport = httpx.MockTransport(directory_handler)
    return DirectoryClient("http://directory.test/", token, httpx.AsyncClient(transport=transport))


def test_storage_unlock_and_slots(tmp_path):
    storage = EncryptedStorage("alice", str(tmp_path))
    assert storage.unlock("correct horse")
    storage.save_keys("keypair", {"public": "cHVi", "private": "cHJpdg=="})
    storage.close()

    reopened = EncryptedStorage("alice", str(tmp_path))
    assert reopened.unlock("correct horse")
    assert reopened.load_keys("keypair") == {"public": "cHVi", "private": "cHJpdg=="}
    assert reopened.load_keys("session_keys") is None

    reopened.delete_keys("keypair")
    assert reopened.load_keys("keypair") is None
    reopened.close()

    # Nothing on disk is readable without the password
    raw = (tmp_path / "alice.db").read_bytes()
    assert b"cHJpdg" not in raw


def test_storage_wrong_password(tmp_path):
    storage = EncryptedStorage("alice", str(tmp_path))
    storage.unlock("correct horse")
    storage.close()

    intruder = EncryptedStorage("alice", str(tmp_path))
    assert not intruder.unlock("battery staple")
    assert intruder.load_keys("keypair") is None


def test_directory_client_fetch_and_publish():
    async def scenario():
        directory = _directory()
        record = await directory.get_public_key("alice")
        published = await directory.put_public_key("bob", PEER_KEY)
        wrapped, version = await directory.get_group_key("team")
        await directory.aclose()
        return record, published, wrapped, version

    record, published, wrapped, version = asyncio.run(scenario())

    assert (record.user_id, record.public_key, record.version) == ("alice", PEER_KEY, 2)
    assert published.public_key == PEER_KEY
    assert (wrapped, version) == (b"w" * 60, 4)


@pytest.mark.parametrize("user_id,error", [
    ("ghost", NotFound),
    ("busy", NetworkError),
    ("mallory", DirectoryError),
    ("unreachable", NetworkError),
    ("proxied", DirectoryError),
    ("portal", NetworkError),
])
def test_directory_client_error_mapping(user_id, error):
    async def scenario():
        directory = _directory()
        try:
            await directory.get_public_key(user_id)
        finally:
            await directory.aclose()

    with pytest.raises(error):
        asyncio.run(scenario())


def test_directory_client_unauthenticated_publish():
    async def scenario():
        directory = _directory(token=None)
        try:
            await directory.put_public_key("bob", PEER_KEY)
        finally:
            await directory.aclose()

    with pytest.raises(DirectoryError, match="Not authenticated"):
        asyncio.run(scenario())


def test_login_bootstraps_crypto(tmp_path):
    settings = Settings(storage_dir=str(tmp_path), retry_attempts=1, retry_backoff=0.0)
    client = ChatClient(settings)
    client.http_client = httpx.AsyncClient(transport=httpx.MockTransport(directory_handler))

    assert asyncio.run(client.login("bob", "test-token", "bob-password"))
    assert client.crypto.report.to_dict() == {"hasPrivateKey": True, "hasCryptoPrimitive": True}
    client.storage.close()

    other = ChatClient(settings)
    assert not asyncio.run(other.login("bob", "test-token", "wrong-password"))


def test_incoming_message_is_decrypted(make_session):
    alice, bob = make_session("alice"), make_session("bob")
    client = ChatClient(FAST_SETTINGS)
    client.crypto = bob
    client.current_chat = "alice"

    message = asyncio.run(alice.encrypt_outgoing(OutgoingMessage("see you at the station", recipient_id="bob")))
    shown = asyncio.run(client._handle_incoming_message({"type": "message", **message.to_wire()}))

    assert shown == "see you at the station"


def test_rejected_send_is_reissued_unencrypted(make_session):
    make_session("bob")
    client = ChatClient(FAST_SETTINGS)
    client.crypto = make_session("alice")
    client.websocket = FakeWebSocket()

    asyncio.run(client.send_message("bob", "bob reinstalled his client"))
    asyncio.run(client.handle_event({
        "type": "error_sending",
        "reason": "recipient_no_private_key",
        "recipientId": "bob",
    }))

    first, resend = client.websocket.sent
    assert first["type"] == "message"
    assert first["meta"]["senderPublicKey"]
    assert "unencrypted" not in first["meta"]
    assert resend["ciphertext"] == "bob reinstalled his client"
    assert resend["meta"] == {"unencrypted": True}
    assert resend["recipientId"] == "bob"


def test_group_commands(make_session):
    make_session("bob")
    client = ChatClient(FAST_SETTINGS)
    client.crypto = make_session("alice")
    client.websocket = FakeWebSocket()

    asyncio.run(client._handle_command("/members team bob"))
    asyncio.run(client._handle_command("/group team"))
    asyncio.run(client.send_group_message("team", "group message for everyone"))

    assert client.current_group == "team"
    assert client.websocket.sent[0]["groupId"] == "team"
    assert client.crypto.keystore.get_group_key("team").version == 1

    asyncio.run(client._handle_command("/leave team"))
    assert client.current_group is None
    assert client.crypto.keystore.get_group_key("team") is None


def test_html_error_pages_do_not_escape_the_session():
    async def scenario():
        session = CryptoSession("bob", _directory(), settings=FAST_SETTINGS)
        await session.bootstrap()
        outgoing = await session.encrypt_outgoing(
            OutgoingMessage("long enough text", recipient_id="proxied")
        )
        incoming = await session.decrypt_incoming(
            EncryptedMessage("portal", b"\x05" * 48, recipient_id="bob")
        )
        await session.key_exchange.directory.aclose()
        return outgoing, incoming

    outgoing, incoming = asyncio.run(scenario())

    assert outgoing.meta.unencrypted
    assert not incoming.ok
    assert incoming.reason == "all_strategies_failed"
