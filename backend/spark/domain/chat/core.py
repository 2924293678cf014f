"""Composition root for the chat core: builds every component from explicit dependencies."""

from __future__ import annotations

import logging
from typing import Optional

import httpx

from spark.infra.auth import JwtTokenVerifier, TokenVerifier
from spark.infra.rate_limit import RateLimiter
from spark.settings import Settings

from .blocks import BlockList, InMemoryBlockList, PostgresBlockList
from .bus import ChatBus
from .config import ChatConfig
from .ephemeral import EphemeralPhotoService
from .photos import InMemoryPhotoRepository, PhotoRepository, PostgresPhotoRepository
from .policy import ContentPolicy, HeuristicContentPolicy
from .presence import PresenceStore
from .registry import SessionRegistry
from .repo import InMemoryChatRepository, MessageRepository, PostgresChatRepository
from .router import EventRouter
from .storage import HttpPhotoStorage, InMemoryPhotoStorage, PhotoStorage
from .sweeper import ChatSweeper, SweeperScheduler

_LOG = logging.getLogger(__name__)


class ChatCore:
	"""Owns the registry, router, bus and sweeper of one process.

	Nothing here reads module-level state; callers pass the Redis handle and
	the adapters, so tests assemble a core around fakeredis and in-memory stores.
	"""

	def __init__(
		self,
		*,
		redis,
		config: ChatConfig,
		repository: MessageRepository,
		photo_repository: PhotoRepository,
		storage: PhotoStorage,
		verifier: TokenVerifier,
		blocks: Optional[BlockList] = None,
		policy: Optional[ContentPolicy] = None,
		limiter: Optional[RateLimiter] = None,
		scheduler: Optional[SweeperScheduler] = None,
	) -> None:
		self.config = config
		self.redis = redis
		self.repository = repository
		self.blocks = blocks or InMemoryBlockList()
		self.storage = storage
		self.verifier = verifier
		self.presence = PresenceStore(redis, dedup_window=config.dedup_window)
		self.limiter = limiter or RateLimiter(redis, store_timeout=config.rate_limit_store_timeout)
		self.bus = ChatBus(redis, node_id=config.node_id)
		self.registry = SessionRegistry(presence=self.presence, bus=self.bus, config=config)
		self.photos = EphemeralPhotoService(
			photos=photo_repository,
			messages=repository,
			redis=redis,
			config=config,
		)
		self.router = EventRouter(
			registry=self.registry,
			repository=repository,
			presence=self.presence,
			limiter=self.limiter,
			policy=policy or HeuristicContentPolicy(),
			photos=self.photos,
			config=config,
			blocks=self.blocks,
		)
		self.sweeper = ChatSweeper(
			registry=self.registry,
			presence=self.presence,
			photos=photo_repository,
			storage=storage,
			config=config,
		)
		self.scheduler = scheduler
		self.accepting = False

	@classmethod
	def from_settings(cls, settings: Settings, *, redis) -> "ChatCore":
		config = ChatConfig.from_settings(settings)
		if settings.chat_store == "memory":
			repository: MessageRepository = InMemoryChatRepository()
			photo_repository: PhotoRepository = InMemoryPhotoRepository()
			storage: PhotoStorage = InMemoryPhotoStorage()
			blocks: BlockList = InMemoryBlockList()
		else:
			repository = PostgresChatRepository()
			photo_repository = PostgresPhotoRepository()
			blocks = PostgresBlockList()
			storage = HttpPhotoStorage(
				http=httpx.AsyncClient(),
				base_url=settings.photo_storage_url,
				request_timeout=settings.photo_storage_timeout,
			)
		return cls(
			redis=redis,
			config=config,
			repository=repository,
			photo_repository=photo_repository,
			storage=storage,
			verifier=JwtTokenVerifier(redis),
			blocks=blocks,
			scheduler=SweeperScheduler() if settings.sweeper_enabled else None,
		)

	async def start(self) -> None:
		await self.bus.start()
		if self.scheduler is not None:
			self.scheduler.install(self.sweeper, self.config)
			self.scheduler.start()
		self.accepting = True
		_LOG.info("chat.core.started", extra={"node_id": self.config.node_id})

	async def shutdown(self) -> None:
		"""Stop accepting upgrades, tell sessions to go away, then release the bus and scheduler."""
		self.accepting = False
		await self.registry.shutdown(drain_timeout=self.config.session_drain_timeout)
		if self.scheduler is not None:
			self.scheduler.shutdown()
		await self.bus.stop()
		if isinstance(self.storage, HttpPhotoStorage):
			await self.storage.aclose()
		_LOG.info("chat.core.stopped", extra={"node_id": self.config.node_id})
