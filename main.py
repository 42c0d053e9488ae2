from typing import Any, Dict, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

import logging
from services.config import CORS_ALLOW_CREDENTIALS, CORS_ALLOW_ORIGINS
from settings.config import settings
from settings.logging_config import configure_logging
from pipeline.pipeline import Pipeline, build_pipeline, build_store
from routes.statement_route import router as statement_router
from feedback.routes import router as feedback_router

logger = logging.getLogger(__name__)


def get_app(pipeline: Optional[Pipeline] = None) -> FastAPI:
    configure_logging(settings.LOG_LEVEL)
    logger.info("Starting %s", settings.APP_NAME)
    app = FastAPI(title=settings.APP_NAME)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=CORS_ALLOW_ORIGINS,
        allow_credentials=CORS_ALLOW_CREDENTIALS,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    if pipeline is None:
        pipeline = build_pipeline(
            store=build_store(settings.STORE_BACKEND, settings.STORE_DIR),
            models_dir=settings.MODELS_DIR,
        )
    app.state.pipeline = pipeline

    @app.on_event("startup")
    async def on_startup() -> None:
        logger.info("Loading learned state")
        await app.state.pipeline.start()

    # Routers
    app.include_router(statement_router)
    app.include_router(feedback_router)
    logger.info("Routers initialized successfully")

    # Health
    @app.get("/health")
    async def health_check() -> Dict[str, Any]:
        return {"status": "ok", "recognizer": app.state.pipeline.recognizer_pool.recognizer.name}

    return app


# ASGI app instance
app = get_app()
