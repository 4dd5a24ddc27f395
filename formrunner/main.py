import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from formrunner.api.routes import router
from formrunner.config import settings
from formrunner.db.connection import run_migrations
from formrunner.errors import GenerationError, NotFoundError, ParseError, TransportError
from formrunner.repositories.form_repository import SqliteFormRepository
from formrunner.services.form_service import FormService
from formrunner.services.generation_service import ContentGenerator, OpenAIContentProvider
from formrunner.services.job_machine import PREPARE, PROCESS
from formrunner.services.job_service import JobService
from formrunner.services.notifier import StatusNotifier
from formrunner.services.scheduler import AsyncioScheduler
from formrunner.services.submission_service import SubmissionService


def _configure_logging() -> None:
    logging.basicConfig(
        level=settings.LOG_LEVEL.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    _configure_logging()
    logger = logging.getLogger(__name__)
    logger.info("FormRunner starting | db=%s | port=%s", settings.DB_PATH, settings.PORT)
    run_migrations(settings.DB_PATH)

    scheduler = AsyncioScheduler()
    app.state.repository = SqliteFormRepository(settings.DB_PATH)
    app.state.form_service = FormService(app.state.repository)
    app.state.generator = ContentGenerator(OpenAIContentProvider())
    app.state.job_service = JobService(
        app.state.repository,
        app.state.form_service,
        app.state.generator,
        SubmissionService(),
        scheduler,
        StatusNotifier(),
    )
    scheduler.register(PREPARE, app.state.job_service.prepare)
    scheduler.register(PROCESS, app.state.job_service.process)
    app.state.scheduler = scheduler
    if not app.state.generator.configured:
        logger.warning("FormRunner has no generation credentials; jobs will fail until OPENAI_API_KEY is set")
    yield
    await scheduler.shutdown()
    logger.info("FormRunner shutting down")


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"status": "error", "message": message})


def create_app() -> FastAPI:
    app = FastAPI(title="FormRunner", version="1.0.0", lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "PUT", "OPTIONS"],
        allow_headers=["*"],
    )

    app.include_router(router)

    @app.exception_handler(NotFoundError)
    async def not_found_handler(request: Request, exc: NotFoundError) -> JSONResponse:
        return _error(404, str(exc))

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        # raw input is omitted: NaN and Infinity are not valid JSON
        detail = [
            {"loc": list(error["loc"]), "msg": error["msg"], "type": error["type"]}
            for error in exc.errors()
        ]
        return JSONResponse(
            status_code=422,
            content={"status": "error", "message": "Invalid request", "detail": detail},
        )

    @app.exception_handler(ParseError)
    async def parse_error_handler(request: Request, exc: ParseError) -> JSONResponse:
        logging.getLogger(__name__).info("[api] parse error | path=%s | error=%s", request.url.path, exc)
        return _error(422, str(exc))

    @app.exception_handler(TransportError)
    @app.exception_handler(GenerationError)
    async def upstream_error_handler(request: Request, exc: Exception) -> JSONResponse:
        logging.getLogger(__name__).warning(
            "[api] upstream error | path=%s | error=%s", request.url.path, exc
        )
        return _error(502, str(exc))

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logging.getLogger(__name__).exception("Unhandled exception")
        return _error(500, "Internal server error")

    return app


app = create_app()

if __name__ == "__main__":
    uvicorn.run("formrunner.main:app", host="0.0.0.0", port=settings.PORT, log_level=settings.LOG_LEVEL)
