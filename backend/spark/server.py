"""Process entrypoint: run the chat core under uvicorn."""

from __future__ import annotations

from typing import Any, Dict

import uvicorn

from spark.settings import Settings, settings

# Largest inbound frame uvicorn reads before cutting the socket with a bare 1009.
# The router enforces `max_message_size` itself and answers MESSAGE_TOO_LARGE,
# so this sits far above it; only frames past the ceiling skip that error event.
WS_FRAME_CEILING = 1024 * 1024
WS_FRAME_CEILING_FACTOR = 16


def ws_max_size(config: Settings) -> int:
	return max(WS_FRAME_CEILING, config.max_message_size * WS_FRAME_CEILING_FACTOR)


def uvicorn_options(config: Settings = settings) -> Dict[str, Any]:
	return {
		"host": "0.0.0.0",
		"port": int(config.port),
		"proxy_headers": True,
		"ws_ping_interval": config.ping_interval,
		"ws_ping_timeout": config.pong_wait,
		"ws_max_size": ws_max_size(config),
		"ws_per_message_deflate": config.ws_compression,
		"log_config": None,
	}


def run() -> None:
	uvicorn.run("spark.main:app", **uvicorn_options())


if __name__ == "__main__":
	run()
