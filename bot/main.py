import asyncio
import logging

import structlog
from aiogram import Bot, Dispatcher
from aiogram.fsm.storage.memory import MemoryStorage
from aiogram.fsm.storage.redis import RedisStorage
from redis.asyncio import Redis

import config
from bot.extraction_gemini import GeminiExtractor
from bot.handlers_registration import AdminGate, RegistrationFlow, create_registration_router
from bot.log_config import configure_logging
from eligibility_engine.audit import AuditLogger, InMemoryAuditSink
from eligibility_engine.engine import EligibilityEvaluator
from eligibility_engine.store import RegistrationStore

logger = logging.getLogger(__name__)


def build_flow(extractor: GeminiExtractor, store: RegistrationStore) -> RegistrationFlow:
    return RegistrationFlow(
        extractor=extractor,
        store=store,
        admin_gate=AdminGate(access_code=config.ADMIN_ACCESS_CODE),
        evaluator=EligibilityEvaluator(),
        audit_logger=AuditLogger(sink=InMemoryAuditSink(records={}), logger=structlog.get_logger("registration_audit")),
        extraction_timeout_sec=config.EXTRACTION_TIMEOUT_SECONDS,
    )


async def main() -> None:
    configure_logging()
    if not config.TELEGRAM_TOKEN:
        raise ValueError("TELEGRAM_TOKEN is not set. Fill .env file first.")
    if not config.ADMIN_ACCESS_CODE:
        logger.warning("ADMIN_ACCESS_CODE is empty, dashboard access is disabled")

    storage = MemoryStorage()
    redis_client = None
    if config.USE_REDIS:
        redis_client = Redis.from_url(config.REDIS_URL)
        storage = RedisStorage(redis=redis_client)

    extractor = GeminiExtractor()
    flow = build_flow(extractor, RegistrationStore())

    bot = Bot(token=config.TELEGRAM_TOKEN)
    dp = Dispatcher(storage=storage)
    dp.include_router(create_registration_router(flow))

    try:
        await dp.start_polling(bot)
    finally:
        await extractor.aclose()
        if redis_client is not None:
            await redis_client.aclose()


if __name__ == "__main__":
    asyncio.run(main())
