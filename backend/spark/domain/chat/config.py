"""Runtime budgets for the chat core, snapshotted from settings at startup."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Tuple

from spark.settings import Settings


@dataclass(slots=True, frozen=True)
class ChatConfig:
	node_id: str = "local"
	ping_interval: float = 30.0
	pong_wait: float = 60.0
	write_wait: float = 10.0
	max_message_size: int = 32768
	max_connections_per_user: int = 5
	write_queue_size: int = 256
	session_drain_timeout: float = 5.0
	typing_ttl: float = 10.0
	typing_sweep_interval: float = 2.0
	offline_grace: float = 5.0
	dedup_window: int = 1024
	read_marker_ttl: int = 86400
	sweeper_interval: float = 60.0
	sweeper_batch_size: int = 100
	sweeper_max_retries: int = 3
	rate_limit_store_timeout: float = 0.05
	router_op_timeout: float = 2.0
	message_max_chars: int = 2000
	ephemeral_grant_ttl: int = 300
	allowed_origins: Tuple[str, ...] = field(default_factory=tuple)

	@classmethod
	def from_settings(cls, settings: Settings) -> "ChatConfig":
		return cls(
			node_id=settings.resolved_node_id(),
			ping_interval=settings.ping_interval,
			pong_wait=settings.pong_wait,
			write_wait=settings.write_wait,
			max_message_size=settings.max_message_size,
			max_connections_per_user=settings.max_connections_per_user,
			write_queue_size=settings.write_queue_size,
			session_drain_timeout=settings.session_drain_timeout,
			typing_ttl=settings.typing_ttl,
			typing_sweep_interval=settings.typing_sweep_interval,
			offline_grace=settings.offline_grace,
			dedup_window=settings.dedup_window,
			read_marker_ttl=settings.read_marker_ttl,
			sweeper_interval=settings.sweeper_interval,
			sweeper_batch_size=settings.sweeper_batch_size,
			sweeper_max_retries=settings.sweeper_max_retries,
			rate_limit_store_timeout=settings.rate_limit_store_timeout,
			router_op_timeout=settings.router_op_timeout,
			message_max_chars=settings.message_max_chars,
			ephemeral_grant_ttl=settings.ephemeral_grant_ttl,
			allowed_origins=tuple(settings.ws_allowed_origins),
		)
