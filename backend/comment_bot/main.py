"""
CommentBot - Main FastAPI Application
"""

import logging
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI

from .api import telegram_router
from .api.telegram_webhook import UpdateDeduplicator
from .channels import TelegramBot
from .config import settings
from .core.chat_manager import ChatManager
from .core.feedback_aggregator import FeedbackAggregator
from .core.logging_config import setup_logging
from .core.orchestrator import BotContext, ConversationOrchestrator
from .core.result import Result
from .core.sweeper import PeriodicSweep
from .generation import HttpGenerationClient
from .storage import LocalStorage, open_backend
from .storage.factory import limits_from_settings

# Logger will be initialized after setup_logging() is called
logger = logging.getLogger(__name__)


def build_feedback_job(feedback: FeedbackAggregator, export_storage: LocalStorage, export_path: str):
    """Retention sweep followed by a fresh training-data export."""
    async def job() -> Result:
        purged = await feedback.sweep()
        if not purged.success:
            return purged
        return await feedback.export_training_data(export_storage, export_path)
    return job


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown events."""
    # Startup
    setup_logging(settings)
    logger.info(f"Starting {settings.app_name} v{settings.app_version}")

    backend = await open_backend(settings)
    chat_manager = ChatManager(
        backend,
        limits=limits_from_settings(settings),
        default_model=settings.default_model,
        default_chat_name=settings.default_chat_name,
        retention_days=settings.chat_retention_days,
    )
    repaired = await chat_manager.repair_active_chats()
    if not repaired.success:
        logger.warning(f"Active chat repair failed: {repaired.error}")

    feedback = FeedbackAggregator(backend, retention_days=settings.feedback_retention_days)
    generation = HttpGenerationClient(
        base_url=settings.generation_api_url,
        api_key=settings.generation_api_key,
        timeout=settings.generation_timeout,
    )
    context = BotContext(
        settings=settings,
        chat_manager=chat_manager,
        feedback=feedback,
        generation=generation,
    )
    app.state.backend = backend
    app.state.orchestrator = ConversationOrchestrator(context)
    app.state.telegram_updates = UpdateDeduplicator()
    app.state.telegram_bot = None
    if settings.telegram_bot_token:
        app.state.telegram_bot = TelegramBot(
            settings.telegram_bot_token,
            webhook_secret=settings.telegram_webhook_secret,
        )
    else:
        logger.warning("TELEGRAM_BOT_TOKEN not set, webhook disabled")

    interval = settings.sweep_interval_hours * 3600
    export_storage = LocalStorage(str(Path(settings.flat_file_path).parent))
    sweeps = [
        PeriodicSweep("stale_chats", chat_manager.sweep_stale_chats, interval),
        PeriodicSweep(
            "feedback_retention",
            build_feedback_job(feedback, export_storage, settings.training_export_path),
            interval,
        ),
    ]
    for sweep in sweeps:
        sweep.start()

    logger.info(f"Storage backend: {backend.name}")
    logger.info(f"Generation API: {settings.generation_api_url}")
    logger.info(f"Log level: {settings.log_level.upper()}")
    yield
    # Shutdown
    for sweep in sweeps:
        await sweep.stop()
    await backend.close()
    logger.info(f"Shutting down {settings.app_name}")


# Create FastAPI application
app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="Comment generation bot with chat management and a feedback loop",
    lifespan=lifespan
)

# Include routers
app.include_router(telegram_router)


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "app": settings.app_name,
        "version": settings.app_version,
        "status": "running",
    }


@app.get("/health")
async def health_check():
    """Health check endpoint with storage statistics."""
    backend = app.state.backend
    stats = await backend.get_storage_stats()
    return {
        "status": "degraded" if backend.degraded else "healthy",
        "storage": backend.name,
        "stats": stats.data.model_dump() if stats.success else None,
        "version": settings.app_version,
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "comment_bot.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.debug
    )
