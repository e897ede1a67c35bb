import os
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from cascade_categorizer.api.routes import categorize, feedback, training, usage
from cascade_categorizer.core import settings
from cascade_categorizer.domain.catalog import parse_category_list
from cascade_categorizer.errors import ValidationError
from cascade_categorizer.logger import get_logger, setup_logging
from cascade_categorizer.manager import CategorizerService

logger = get_logger(__name__)


def create_app(service: CategorizerService | None = None) -> FastAPI:
    setup_logging()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        logger.info("Initializing services...")
        settings.log_environment()

        svc = service
        if svc is None:
            categories = parse_category_list(os.getenv("CATEGORIES"))
            if not categories:
                logger.warning("CATEGORIES not set. Every request will come back unresolved.")
            if not os.getenv("OPENAI_API_KEY"):
                logger.info("OPENAI_API_KEY not set. OpenAI integration will be disabled.")
            svc = CategorizerService(
                categories=categories,
                config=settings.EngineConfig.from_env(),
                data_dir=settings.DATA_DIR,
            )

        app.state.service = svc
        app.state.training_manager = svc.trainer
        svc.learning.start()

        logger.info("Services initialized.")
        yield
        logger.info("Service shutting down.")
        svc.close()

    app = FastAPI(title="Cascade Categorizer", lifespan=lifespan)

    @app.exception_handler(ValidationError)
    async def validation_error_handler(request: Request, exc: ValidationError) -> JSONResponse:
        return JSONResponse(
            status_code=422,
            content={"detail": [{"loc": ["body", exc.field], "msg": exc.message, "type": "value_error"}]},
        )

    app.include_router(categorize.router)
    app.include_router(feedback.router)
    app.include_router(training.router)
    app.include_router(usage.router)

    return app


app = create_app()
