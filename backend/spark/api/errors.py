"""Global error handlers: request ids on every JSON error and stable statuses for chat errors."""

from __future__ import annotations

from typing import Dict

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from spark.domain.chat.events import ChatError, ErrorCode
from spark.obs.middleware import REQUEST_ID_HEADER

CHAT_ERROR_STATUS: Dict[ErrorCode, int] = {
	ErrorCode.UNAUTHORIZED: 403,
	ErrorCode.NOT_A_MEMBER: 403,
	ErrorCode.CONTENT_BLOCKED: 422,
	ErrorCode.RATE_LIMITED: 429,
	ErrorCode.MAX_CONNECTIONS: 429,
	ErrorCode.MESSAGE_TOO_LARGE: 413,
	ErrorCode.INVALID_MESSAGE_FORMAT: 400,
	ErrorCode.UNSUPPORTED_EVENT: 400,
	ErrorCode.GONE: 410,
	ErrorCode.TIMEOUT: 504,
	ErrorCode.SLOW_CONSUMER: 503,
}


def get_request_id(request: Request) -> str:
	return getattr(request.state, "request_id", None) or request.headers.get(REQUEST_ID_HEADER, "")


def chat_error_response(request: Request, exc: ChatError) -> JSONResponse:
	headers = {}
	if exc.retry_after_ms is not None:
		headers["Retry-After"] = str(max(1, -(-exc.retry_after_ms // 1000)))
	payload = {"detail": exc.to_payload(), "request_id": get_request_id(request)}
	return JSONResponse(status_code=CHAT_ERROR_STATUS[exc.code], content=payload, headers=headers)


def install_error_handlers(app: FastAPI) -> None:
	@app.exception_handler(ChatError)
	async def chat_exc_handler(request: Request, exc: ChatError):  # type: ignore[override]
		return chat_error_response(request, exc)

	@app.exception_handler(StarletteHTTPException)
	async def http_exc_handler(request: Request, exc: StarletteHTTPException):  # type: ignore[override]
		payload = {"detail": exc.detail, "request_id": get_request_id(request)}
		return JSONResponse(status_code=exc.status_code, content=payload, headers=getattr(exc, "headers", None))

	@app.exception_handler(RequestValidationError)
	async def validation_exc_handler(request: Request, exc: RequestValidationError):  # type: ignore[override]
		payload = {"detail": "validation_error", "errors": jsonable_encoder(exc.errors()), "request_id": get_request_id(request)}
		return JSONResponse(status_code=422, content=payload)
