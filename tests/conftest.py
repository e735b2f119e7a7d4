import sys
from pathlib import Path

import pytest
import pytest_asyncio
from fakeredis.aioredis import FakeRedis

# Ensure the package is importable when tests run from a plain checkout
REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
	sys.path.insert(0, str(REPO_ROOT))

from kidato.adapters.base import StaticAuth
from kidato.adapters.memory import InMemoryDocumentSource
from kidato.domain.state import SyncState
from kidato.settings import settings


@pytest.fixture
def memory_source():
	return InMemoryDocumentSource(download_base_url="https://blobs.test", chunk_size=4)


@pytest.fixture
def auth():
	return StaticAuth(principal_id="u1", display_name="Jane Wanjiru")


@pytest.fixture
def state():
	return SyncState()


@pytest.fixture(autouse=True)
def force_test_settings():
	"""Keep info logs unsampled and collection names at their defaults."""
	original_env = settings.environment
	settings.environment = "dev"
	try:
		yield
	finally:
		settings.environment = original_env


@pytest_asyncio.fixture
async def fake_redis():
	from kidato.infra.redis import redis_client, set_redis_client

	original = redis_client.client
	client = FakeRedis(decode_responses=True)
	set_redis_client(client)
	try:
		yield client
	finally:
		set_redis_client(original)
		await client.flushall()
