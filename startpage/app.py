"""
FastAPI application entry point for the start page backend.
"""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from startpage.config import get_settings
from startpage.errors import BookmarkError, RequestInvalidError
from startpage.routes import router

logger = logging.getLogger(__name__)


async def bookmark_error_handler(request: Request, exc: BookmarkError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.as_dict())


async def request_validation_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    error = RequestInvalidError(details=jsonable_encoder(exc.errors()))
    return await bookmark_error_handler(request, error)


def create_app() -> FastAPI:
    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(name)s %(levelname)s %(asctime)s %(message)s",
    )
    app = FastAPI(title="Start Page Backend", version="0.1.0")
    app.include_router(router, prefix=settings.api_prefix)
    app.add_exception_handler(BookmarkError, bookmark_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    return app


app = create_app()
