import logging

import uvicorn
from fastapi import FastAPI

from .config import get_settings
from .db import Base, SessionLocal, engine
from .integrations.currency import ExchangeRateConverter
from .integrations.ocr import TesseractOcrProvider
from .integrations.task_queue import HttpTaskQueue
from .ledger import SqlLedger
from .pipeline.service import ReceiptPipeline
from .routers import tasks
from .schemas import HealthStatus
from .telegram_bot import TelegramGateway, TelegramImageSource, attach_pipeline, build_application

logger = logging.getLogger(__name__)

settings = get_settings()

app = FastAPI(title="Expense Bot API", version="1.0.0")
app.state.pipeline = None
app.state.telegram = None

app.include_router(tasks.router)


@app.on_event("startup")
async def on_startup() -> None:
    """Ensure database tables exist and start the Telegram bot when configured."""
    Base.metadata.create_all(bind=engine)
    if not settings.telegram_bot_token:
        logger.warning("TELEGRAM_BOT is not set; the receipt pipeline is disabled.")
        return

    ledger = SqlLedger(SessionLocal, settings.home_currency)
    application = build_application(settings.telegram_bot_token)
    pipeline = ReceiptPipeline.from_settings(
        settings,
        images=TelegramImageSource(application.bot),
        ocr=TesseractOcrProvider(settings.ocr_languages),
        converter=ExchangeRateConverter(
            settings.exchange_rate_url,
            home_currency=settings.home_currency,
            ttl=settings.exchange_rate_ttl_seconds,
            timeout=settings.exchange_rate_timeout_s,
        ),
        gateway=TelegramGateway(application.bot),
        ledger=ledger,
        task_queue=HttpTaskQueue(settings.service_url, delay=settings.task_queue_delay_seconds),
    )
    attach_pipeline(application, pipeline, ledger)
    app.state.pipeline = pipeline
    app.state.telegram = application

    await application.initialize()
    await application.start()
    await application.updater.start_polling(drop_pending_updates=True)
    logger.info("Telegram bot started, home currency %s", settings.home_currency)


@app.on_event("shutdown")
async def on_shutdown() -> None:
    application = app.state.telegram
    if application is None:
        return
    await application.updater.stop()
    await application.stop()
    await application.shutdown()
    logger.info("Telegram bot stopped")


@app.get("/")
def health_check() -> dict[str, HealthStatus]:
    return {"status": "ok"}


def run() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    uvicorn.run(app, host="0.0.0.0", port=8000)


if __name__ == "__main__":
    run()
