"""FastAPI application entrypoint."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from spark.api import chat, ephemeral, ops, ws
from spark.api.errors import install_error_handlers
from spark.domain.chat.core import ChatCore
from spark.infra import postgres
from spark.infra.redis import redis_client
from spark.obs import init as obs_init
from spark.settings import settings


def create_app(core: Optional[ChatCore] = None) -> FastAPI:
	"""Build the app; a prebuilt `core` is used as-is and its external resources stay with the caller."""

	@asynccontextmanager
	async def lifespan(app: FastAPI):
		chat_core = app.state.chat_core
		owns_resources = chat_core is None
		if owns_resources:
			await redis_client.wait_until_ready()
			if settings.chat_store == "postgres":
				await postgres.init_pool()
			chat_core = ChatCore.from_settings(settings, redis=redis_client)
			app.state.chat_core = chat_core
		await chat_core.start()
		try:
			yield
		finally:
			await chat_core.shutdown()
			if owns_resources and settings.chat_store == "postgres":
				await postgres.close_pool()

	app = FastAPI(title="Spark Chat Core", lifespan=lifespan)
	app.state.chat_core = core
	install_error_handlers(app)
	obs_init(app)

	allow_origins = list(settings.ws_allowed_origins)
	if not allow_origins and settings.is_dev():
		allow_origins = ["http://localhost:3000", "http://127.0.0.1:3000"]
	if allow_origins:
		app.add_middleware(
			CORSMiddleware,
			allow_origins=allow_origins,
			allow_credentials=True,
			allow_methods=["*"],
			allow_headers=["*"],
		)

	app.include_router(ws.router)
	app.include_router(chat.router)
	app.include_router(ephemeral.router)
	app.include_router(ops.router)
	return app


app = create_app()
