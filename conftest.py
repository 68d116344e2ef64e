"""
Shared test fixtures: an in-memory key directory and session helpers.
"""

import asyncio
from typing import Dict, Tuple

import pytest

from e2ee.config import Settings
from e2ee.errors import NetworkError, NotFound
from e2ee.models import PeerPublicKeyRecord
from e2ee.primitives import b64decode
from e2ee.session import CryptoSession


class InMemoryDirectory:
    """Directory double with the same coroutines as DirectoryClient"""

    def __init__(self):
        self.keys: Dict[str, PeerPublicKeyRecord] = {}
        self.group_keys: Dict[str, Dict[str, Tuple[bytes, int]]] = {}
        self.get_calls = 0
        self.offline = False
        self.delay = 0.0
        # user id acting as caller for group key fetches
        self.caller = None

    async def put_public_key(self, user_id, public_key):
        if self.offline:
            raise NetworkError("directory offline")
        previous = self.keys.get(user_id)
        version = 1
        if previous is not None:
            version = previous.version if previous.public_key == public_key else previous.version + 1
        record = PeerPublicKeyRecord(user_id=user_id, public_key=public_key, version=version)
        self.keys[user_id] = record
        return record

    async def get_public_key(self, user_id):
        self.get_calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.offline:
            raise NetworkError("directory offline")
        if user_id not in self.keys:
            raise NotFound(f"/keys/{user_id} not found")
        return self.keys[user_id]

    async def put_group_key(self, group_id, payload):
        self.group_keys[group_id] = {
            member: (b64decode(blob), payload["version"])
            for member, blob in payload["wrapped"].items()
        }
        return {"status": "success"}

    async def get_group_key(self, group_id):
        if self.delay:
            await asyncio.sleep(self.delay)
        copies = self.group_keys.get(group_id, {})
        if self.caller not in copies:
            raise NotFound(f"/groups/{group_id}/key not found")
        return copies[self.caller]


class DirectoryView:
    """Per-user view of a shared directory, so group fetches know the caller"""

    def __init__(self, directory: InMemoryDirectory, user_id: str):
        self.directory = directory
        self.user_id = user_id

    def __getattr__(self, name):
        return getattr(self.directory, name)

    async def get_group_key(self, group_id):
        self.directory.caller = self.user_id
        return await self.directory.get_group_key(group_id)


FAST_SETTINGS = Settings(retry_attempts=2, retry_backoff=0.0, fetch_timeout=0.5)


@pytest.fixture
def directory():
    return InMemoryDirectory()


@pytest.fixture
def make_session(directory):
    """Factory for bootstrapped sessions sharing one directory"""

    def _make(user_id, storage=None, probe=None, settings=FAST_SETTINGS):
        session = CryptoSession(user_id, DirectoryView(directory, user_id), storage,
                                settings=settings, probe=probe)
        asyncio.run(session.bootstrap())
        return session

    return _make
