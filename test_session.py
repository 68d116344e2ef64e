"""
Tests for the crypto session: negotiation, sending, key persistence and settings.
"""

import asyncio

import pytest

from client.storage import EncryptedStorage
from e2ee.cipher import encrypt_message
from e2ee.config import Settings
from e2ee.errors import NetworkError, NotFound
from e2ee.keystore import KEYPAIR_SLOT, SESSION_KEYS_SLOT, KeyStore
from e2ee.models import (
    EncryptedMessage,
    MessageMeta,
    OutgoingMessage,
    PeerPublicKeyRecord,
    SessionKeyCacheEntry,
)
from e2ee.negotiator import CapabilityNegotiator, CryptoState, RecipientState
from e2ee.retry import RetryPolicy
from e2ee.session import RECIPIENT_NO_PRIVATE_KEY
from e2ee.session_keys import derive_session_key


def _encrypt(session, text, recipient_id=None, group_id=None):
    return asyncio.run(session.encrypt_outgoing(
        OutgoingMessage(text, recipient_id=recipient_id, group_id=group_id)
    ))


def test_probe_runs_once():
    calls = []

    def probe():
        calls.append(1)
        return True

    negotiator = CapabilityNegotiator(probe=probe)
    assert negotiator.state is CryptoState.UNKNOWN
    assert negotiator.can_encrypt()
    assert negotiator.can_encrypt()
    assert negotiator.state is CryptoState.CRYPTO_AVAILABLE
    assert len(calls) == 1


def test_failing_probe_means_unavailable():
    def probe():
        raise RuntimeError("no backend")

    negotiator = CapabilityNegotiator(probe=probe)
    assert negotiator.resolve() is CryptoState.CRYPTO_UNAVAILABLE
    policy = negotiator.decide_policy(OutgoingMessage("a long enough message", recipient_id="bob"), True)
    assert not policy.encrypt
    assert policy.reason == "crypto_unavailable"


def test_recipient_becoming_encryptable_requests_rederive():
    negotiator = CapabilityNegotiator(probe=lambda: True)
    outgoing = OutgoingMessage("a long enough message", recipient_id="dave")

    fallback = negotiator.decide_policy(outgoing, recipient_has_public_key=False)
    upgraded = negotiator.decide_policy(outgoing, recipient_has_public_key=True)
    steady = negotiator.decide_policy(outgoing, recipient_has_public_key=True)

    assert (fallback.encrypt, fallback.reason) == (False, "recipient_no_public_key")
    assert upgraded.encrypt and upgraded.rederive
    assert steady.encrypt and not steady.rederive
    assert negotiator.recipient_state("dave") is RecipientState.CAN_ENCRYPT


def test_degraded_mode_sends_plaintext(make_session, directory):
    make_session("bob")
    alice = make_session("alice", probe=lambda: False)

    message = _encrypt(alice, "plaintext because no crypto", recipient_id="bob")

    assert alice.report.to_dict() == {"hasPrivateKey": False, "hasCryptoPrimitive": False}
    assert alice.keystore.key_pair is None
    assert "alice" not in directory.keys
    assert message.meta.unencrypted
    assert message.ciphertext == b"plaintext because no crypto"


def test_capability_report_after_bootstrap(make_session, directory):
    alice = make_session("alice")

    assert alice.report.to_dict() == {"hasPrivateKey": True, "hasCryptoPrimitive": True}
    assert directory.keys["alice"].public_key == alice.keystore.key_pair.public_key


def test_bootstrap_survives_offline_directory(make_session, directory):
    directory.offline = True
    alice = make_session("alice")

    assert alice.report.has_private_key
    assert "alice" not in directory.keys


def test_short_messages_go_unencrypted(make_session):
    make_session("bob")
    alice = make_session("alice")

    message = _encrypt(alice, "hi", recipient_id="bob")

    assert message.meta.unencrypted
    assert message.to_wire()["ciphertext"] == "hi"


def test_encrypted_message_carries_sender_key(make_session):
    make_session("bob")
    alice = make_session("alice")

    message = _encrypt(alice, "this one is encrypted", recipient_id="bob")

    assert not message.meta.unencrypted
    assert message.meta.sender_public_key == alice.keystore.key_pair.public_key
    assert b"this one is encrypted" not in message.ciphertext


def test_recipient_without_key_then_with_key(make_session):
    alice = make_session("alice")

    before = _encrypt(alice, "dave has no key yet", recipient_id="dave")
    assert before.meta.unencrypted
    assert alice.negotiator.recipient_state("dave") is RecipientState.MUST_FALLBACK

    dave = make_session("dave")
    after = _encrypt(alice, "dave published a key", recipient_id="dave")

    assert not after.meta.unencrypted
    assert alice.negotiator.recipient_state("dave") is RecipientState.CAN_ENCRYPT
    assert asyncio.run(dave.decrypt_incoming(after)).plaintext == "dave published a key"


def test_unusable_published_key_falls_back(make_session, directory):
    alice = make_session("alice")
    directory.keys["mallory"] = PeerPublicKeyRecord("mallory", b"\x00" * 32, 1)

    message = _encrypt(alice, "mallory's key is all zeroes", recipient_id="mallory")

    assert message.meta.unencrypted


def test_send_rejection_resends_unencrypted(make_session):
    make_session("bob")
    alice = make_session("alice")
    _encrypt(alice, "bob lost his private key", recipient_id="bob")

    assert alice.handle_send_rejection("recipient_offline", "bob") is None
    resend = alice.handle_send_rejection(RECIPIENT_NO_PRIVATE_KEY, "bob")

    assert resend.meta.unencrypted
    assert resend.recipient_id == "bob"
    assert resend.ciphertext == b"bob lost his private key"
    assert alice.handle_send_rejection(RECIPIENT_NO_PRIVATE_KEY, "bob") is None


def test_failed_self_verification_sends_nothing(make_session, monkeypatch):
    make_session("bob")
    alice = make_session("alice")
    monkeypatch.setattr("e2ee.session.decrypt_message", lambda key, envelope: b"something else")

    assert _encrypt(alice, "must not leave the device", recipient_id="bob") is None


def test_decrypt_incoming_never_raises(make_session):
    bob = make_session("bob")

    async def broken(message):
        raise RuntimeError("boom")

    bob.resolver.resolve = broken
    result = asyncio.run(bob.decrypt_incoming(
        EncryptedMessage("alice", b"x" * 40, recipient_id="bob")
    ))

    assert not result.ok
    assert result.reason == "internal_error"


def test_decrypt_history(make_session):
    alice, bob = make_session("alice"), make_session("bob")
    history = [
        _encrypt(alice, "first message in history", recipient_id="bob"),
        EncryptedMessage("alice", b"old plaintext", recipient_id="bob"),
    ]

    results = asyncio.run(bob.decrypt_history(history))

    assert [r.plaintext for r in results] == ["first message in history", "old plaintext"]


def test_alice_and_bob_across_restart(make_session, directory, tmp_path):
    alice = make_session("alice")
    storage = EncryptedStorage("bob", str(tmp_path))
    assert storage.unlock("bob-password")
    bob = make_session("bob", storage=storage)

    key = derive_session_key(alice.keystore.key_pair.private_key, directory.keys["bob"].public_key)
    message = EncryptedMessage(
        "alice",
        encrypt_message(key, b"hello"),
        recipient_id="bob",
        meta=MessageMeta(sender_public_key=directory.keys["alice"].public_key),
    )
    assert asyncio.run(bob.decrypt_incoming(message)).plaintext == "hello"
    storage.close()

    # Restart: same storage directory, new process state
    reopened = EncryptedStorage("bob", str(tmp_path))
    assert reopened.unlock("bob-password")
    restarted = make_session("bob", storage=reopened)
    result = asyncio.run(restarted.decrypt_incoming(message))

    assert restarted.keystore.key_pair.public_key == bob.keystore.key_pair.public_key
    assert directory.keys["bob"].version == 1
    assert result.plaintext == "hello"
    assert result.strategy == "cached_session_key"
    reopened.close()


def test_logout_clears_durable_slots(make_session, tmp_path):
    make_session("bob")
    storage = EncryptedStorage("alice", str(tmp_path))
    storage.unlock("alice-password")
    alice = make_session("alice", storage=storage)
    _encrypt(alice, "populate the session cache", recipient_id="bob")
    assert storage.load_keys(SESSION_KEYS_SLOT)

    alice.logout()

    assert alice.keystore.key_pair is None
    assert storage.load_keys(KEYPAIR_SLOT) is None
    assert storage.load_keys(SESSION_KEYS_SLOT) is None
    storage.close()


def test_rotate_keys_publishes_new_version(make_session, directory):
    alice = make_session("alice")
    old_public = alice.keystore.key_pair.public_key

    assert asyncio.run(alice.rotate_keys())

    assert directory.keys["alice"].version == 2
    assert directory.keys["alice"].public_key != old_public


def test_rotate_group_skips_members_without_keys(make_session):
    make_session("bob")
    alice = make_session("alice")

    record = asyncio.run(alice.rotate_group("team", ["bob", "nobody"]))

    assert set(record.wrapped_per_member) == {"alice", "bob"}
    assert record.version == 1


def test_settings_from_env():
    settings = Settings.from_env({
        "E2EE_SERVER_URL": "http://chat.example:9000",
        "E2EE_RETRY_ATTEMPTS": "5",
        "E2EE_FETCH_TIMEOUT": "1.5",
        "UNRELATED": "ignored",
    })

    assert settings.server_url == "http://chat.example:9000"
    assert settings.retry_attempts == 5
    assert settings.fetch_timeout == 1.5
    assert settings.min_encrypt_length == 8
    assert settings.retry_policy() == RetryPolicy(max_attempts=5, backoff=0.5, timeout=1.5)


def test_retry_policy_retries_network_errors():
    attempts = []

    async def flaky():
        attempts.append(1)
        if len(attempts) < 3:
            raise NetworkError("connection reset")
        return "ok"

    policy = RetryPolicy(max_attempts=3, backoff=0.0, timeout=1.0)

    assert asyncio.run(policy.run(flaky)) == "ok"
    assert len(attempts) == 3


def test_retry_policy_does_not_retry_other_errors():
    attempts = []

    async def missing():
        attempts.append(1)
        raise NotFound("/keys/ghost not found")

    with pytest.raises(NotFound):
        asyncio.run(RetryPolicy(backoff=0.0).run(missing))
    assert len(attempts) == 1


def test_retry_policy_times_out():
    async def hang():
        await asyncio.sleep(1.0)

    policy = RetryPolicy(max_attempts=2, backoff=0.0, timeout=0.05)

    with pytest.raises(NetworkError):
        asyncio.run(policy.run(hang))
    assert policy.delay_for(1) == 0.0
    assert RetryPolicy(backoff=0.5).delay_for(3) == 2.0


def test_unversioned_session_key_is_stamped_or_dropped():
    store = KeyStore("bob")
    store.put_session_key(SessionKeyCacheEntry("alice", b"k" * 32, peer_public_key=b"a" * 32))
    store.put_session_key(SessionKeyCacheEntry("carol", b"k" * 32, peer_public_key=b"c" * 32))

    store.put_peer_key(PeerPublicKeyRecord("alice", b"a" * 32, 3))
    store.put_peer_key(PeerPublicKeyRecord("carol", b"d" * 32, 2))

    assert store.get_session_key("alice").derived_from_version == 3
    assert store.get_session_key("carol") is None

    store.put_peer_key(PeerPublicKeyRecord("alice", b"e" * 32, 4))
    assert store.get_session_key("alice") is None


def test_sender_key_entry_gets_versioned_on_directory_fetch(make_session):
    alice, bob = make_session("alice"), make_session("bob")
    sent = asyncio.run(alice.encrypt_outgoing(OutgoingMessage("versioned later", recipient_id="bob")))
    asyncio.run(bob.decrypt_incoming(sent))
    assert bob.keystore.get_session_key("alice").derived_from_version is None

    asyncio.run(bob.key_exchange.fetch_peer_public_key("alice", use_cache=False))

    assert bob.keystore.get_session_key("alice").derived_from_version == 1
