# api/chat.py
import logging
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from mangum import Mangum
from starlette.exceptions import HTTPException as StarletteHTTPException

from api._relay import (
    ChatRelay,
    ChatResponse,
    ErrorResponse,
    MethodNotAllowed,
    RelayError,
    RequestError,
    UpstreamError,
    parse_chat_request,
)
from api._settings import Settings, configure_logging

logger = logging.getLogger("chat_relay")


def error_response(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=ErrorResponse(error=message).model_dump())


def create_app(settings: Optional[Settings] = None, relay: Optional[ChatRelay] = None) -> FastAPI:
    """Builds the ASGI app. Settings are read and validated once, here."""
    settings = settings or Settings.from_env()
    configure_logging(settings)
    relay = relay or ChatRelay.from_settings(settings)

    app = FastAPI()
    app.state.relay = relay

    # --- Error Handlers ---
    @app.exception_handler(RelayError)
    async def relay_error_handler(request: Request, exc: RelayError):
        return error_response(exc.status_code, exc.public_message)

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        if exc.status_code == 405:
            return JSONResponse(
                status_code=405,
                content=ErrorResponse(error=MethodNotAllowed.public_message).model_dump(),
                headers=exc.headers,
            )
        return error_response(exc.status_code, str(exc.detail).lower())

    # --- Master Error Handler ---
    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception):
        logger.exception("Unhandled error in chat handler")
        return error_response(500, UpstreamError.public_message)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # --- Main Chat Endpoint ---
    # Vercel routes /api/chat to this file; inside the app the handler lives at "/".
    @app.post("/", response_model=ChatResponse)
    async def handle_chat(request: Request):
        # Configuration is checked before the body is read.
        app.state.relay.ensure_configured()

        try:
            payload = await request.json()
        except ValueError as e:
            logger.warning("Rejected chat request: body is not valid JSON")
            raise RequestError("body is not valid JSON") from e

        chat_request = parse_chat_request(payload)
        try:
            text = await app.state.relay.relay(chat_request.history)
        except RelayError:
            raise
        except Exception as e:
            # Errors left as RelayError are answered inside the CORS middleware.
            logger.exception("Unexpected error while relaying chat")
            raise UpstreamError(str(e)) from e
        return ChatResponse(text=text)

    return app


app = create_app()

handler = Mangum(app)
