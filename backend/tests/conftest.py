import asyncio
import json
import os
from typing import Any, Callable, Dict, List, Optional

os.environ.setdefault("SECRET_KEY", "spark-test-secret-key-0123456789abcdef0123456789")
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("CHAT_STORE", "memory")

import pytest
import pytest_asyncio
from fakeredis.aioredis import FakeRedis

from spark.domain.chat.blocks import InMemoryBlockList
from spark.domain.chat.config import ChatConfig
from spark.domain.chat.core import ChatCore
from spark.domain.chat.photos import InMemoryPhotoRepository
from spark.domain.chat.repo import InMemoryChatRepository
from spark.domain.chat.session import Session
from spark.domain.chat.storage import InMemoryPhotoStorage
from spark.infra.auth import JwtTokenVerifier
from spark.infra.jwt import encode_access
from spark.infra.redis import redis_client, set_redis_client

CONVERSATION_ID = "conv-ab"


class FakeChannel:
	"""In-memory stand-in for a WebSocket; `block` stalls writes until set."""

	def __init__(self) -> None:
		self.frames: List[Dict[str, Any]] = []
		self.closed_with: Optional[tuple] = None
		self.block: Optional[asyncio.Event] = None

	async def send_text(self, data: str) -> None:
		if self.block is not None:
			await self.block.wait()
		self.frames.append(json.loads(data))

	async def close(self, code: int = 1000, reason: Optional[str] = None) -> None:
		self.closed_with = (code, reason)

	def events(self, name: Optional[str] = None) -> List[Dict[str, Any]]:
		return [frame for frame in self.frames if name is None or frame["event"] == name]

	def data(self, name: str) -> List[Dict[str, Any]]:
		return [frame["data"] for frame in self.events(name)]


async def _wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
	loop = asyncio.get_running_loop()
	deadline = loop.time() + timeout
	while not predicate():
		if loop.time() > deadline:
			raise AssertionError("condition not met in time")
		await asyncio.sleep(0.005)


def make_config(**overrides: Any) -> ChatConfig:
	values: Dict[str, Any] = {
		"node_id": "node-a",
		"router_op_timeout": 1.0,
		"rate_limit_store_timeout": 1.0,
		"offline_grace": 0.05,
		"write_wait": 1.0,
		"session_drain_timeout": 0.5,
	}
	values.update(overrides)
	return ChatConfig(**values)


@pytest_asyncio.fixture(autouse=True)
async def fake_redis():
	original = redis_client._client
	client = FakeRedis(decode_responses=True)
	set_redis_client(client)
	try:
		yield client
	finally:
		await client.flushall()
		set_redis_client(original)


@pytest.fixture
def make_channel():
	return FakeChannel


@pytest.fixture
def wait_for():
	return _wait_until


@pytest.fixture
def chat_config():
	return make_config


@pytest.fixture
def issue_token():
	def _issue(user_id: str, *, session_id: Optional[str] = None, roles: Optional[list] = None, ttl_seconds: int = 900) -> str:
		payload: Dict[str, Any] = {"sub": user_id, "sid": session_id or f"sid-{user_id}", "did": f"device-{user_id}"}
		if roles:
			payload["roles"] = roles
		return encode_access(payload, ttl_seconds=ttl_seconds)

	return _issue


@pytest.fixture
def repository():
	repo = InMemoryChatRepository()
	repo.add_conversation(CONVERSATION_ID, "user-a", "user-b")
	repo.add_conversation("conv-ac", "user-a", "user-c")
	return repo


@pytest.fixture
def block_list():
	return InMemoryBlockList()


@pytest.fixture
def photo_repository():
	return InMemoryPhotoRepository()


@pytest.fixture
def photo_storage():
	return InMemoryPhotoStorage()


@pytest_asyncio.fixture
async def build_core(fake_redis, repository, photo_repository, photo_storage, block_list):
	"""Factory for chat cores that share one fake Redis server, message store and photo store."""
	cores: List[ChatCore] = []

	def _build(**overrides: Any) -> ChatCore:
		chat_core = ChatCore(
			redis=fake_redis,
			config=make_config(**overrides),
			repository=repository,
			photo_repository=photo_repository,
			storage=photo_storage,
			verifier=JwtTokenVerifier(fake_redis, allow_legacy=True),
			blocks=block_list,
		)
		cores.append(chat_core)
		return chat_core

	yield _build
	for chat_core in cores:
		await chat_core.registry.shutdown(drain_timeout=0.1)
		await chat_core.bus.stop()


@pytest.fixture
def core(build_core):
	return build_core()


@pytest.fixture
def connect():
	"""Register a fake-channel session for `user_id` on a core; returns (session, channel)."""
	counter = {"n": 0}

	async def _connect(chat_core: ChatCore, user_id: str, *, roles: tuple = (), queue_size: Optional[int] = None):
		counter["n"] += 1
		channel = FakeChannel()
		session = Session(
			channel,
			connection_id=f"{chat_core.config.node_id}-conn-{counter['n']}",
			user_id=user_id,
			session_id=f"sid-{user_id}-{counter['n']}",
			device_id="device",
			roles=roles,
			queue_size=queue_size or chat_core.config.write_queue_size,
			write_wait=chat_core.config.write_wait,
			dedup_window=chat_core.config.dedup_window,
		)
		session.start()
		await chat_core.registry.register(session)
		return session, channel

	return _connect


@pytest.fixture
def send_frame():
	"""Feed one inbound frame to a core's router as if it came off the socket."""

	async def _send(chat_core: ChatCore, session: Session, event: str, data: Optional[Dict[str, Any]] = None) -> None:
		await chat_core.router.dispatch(session, json.dumps({"event": event, "data": data or {}}))

	return _send


@pytest.fixture
def joined(connect, send_frame, wait_for):
	"""Connect `user_id` and join `conversation_id`; returns (session, channel) once joined."""

	async def _joined(chat_core: ChatCore, user_id: str, conversation_id: str = CONVERSATION_ID, **kwargs: Any):
		session, channel = await connect(chat_core, user_id, **kwargs)
		await send_frame(chat_core, session, "conversation:join", {"conversation_id": conversation_id})
		await wait_for(lambda: any(d["conversation_id"] == conversation_id for d in channel.data("conversation:joined")))
		return session, channel

	return _joined


@pytest.fixture
def link_nodes(monkeypatch):
	"""Route every bus publication of the given cores to all of them, publisher included."""

	def _link(*cores: ChatCore) -> List[str]:
		published: List[str] = []

		async def _publish(channel: str, envelope) -> None:
			payload = envelope.model_dump_json(exclude_none=True)
			published.append(payload)
			for target in cores:
				await target.bus.handle_raw(payload)

		for chat_core in cores:
			monkeypatch.setattr(chat_core.bus, "_publish", _publish)
		return published

	return _link
