import asyncio
import logging
from contextlib import suppress

from aiogram import Bot, Dispatcher

from booking_scheduler.config import Settings
from booking_scheduler.db import init_models, make_engine, make_session_factory
from booking_scheduler.handlers import router as handlers_router
from booking_scheduler.services.errors import SchedulerError
from booking_scheduler.services.notifications import LogNotifier, NotificationDispatcher, TelegramNotifier
from booking_scheduler.services.profiles import SqlProfileStore
from booking_scheduler.services.scheduler import AppointmentScheduler
from booking_scheduler.services.store import SqlBookingStore

logger = logging.getLogger(__name__)


def setup_logging(level):
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )


def setup_dispatcher(notifier: TelegramNotifier, scheduler: AppointmentScheduler) -> Dispatcher:
    dispatcher = Dispatcher()
    dispatcher.include_router(handlers_router)
    dispatcher.workflow_data["notifier"] = notifier
    dispatcher.workflow_data["scheduler"] = scheduler
    return dispatcher


async def run_sweeper(scheduler: AppointmentScheduler, interval_sec: float) -> None:
    """Complete confirmed bookings whose end has passed, forever."""
    while True:
        try:
            await scheduler.complete_elapsed()
        except SchedulerError:
            logger.exception("sweeper: run failed")
        await asyncio.sleep(interval_sec)


async def shutdown_notifications(notifications: NotificationDispatcher, notifier) -> None:
    """Deliver what is still queued, then release the delivery channel."""
    if notifications.pending:
        logger.info("shutdown: draining notifications pending=%s", notifications.pending)
    await notifications.drain()
    if isinstance(notifier, TelegramNotifier):
        await notifier.close()


async def main():
    settings = Settings()
    setup_logging(settings.log_level)

    engine = make_engine(settings.database_url)
    await init_models(engine)
    session_factory = make_session_factory(engine)

    bot = Bot(settings.bot_token) if settings.bot_token else None
    notifier = TelegramNotifier(bot) if bot else LogNotifier()
    notifications = NotificationDispatcher(notifier)
    scheduler = AppointmentScheduler(
        SqlBookingStore(session_factory),
        SqlProfileStore(session_factory),
        notifications,
        settings,
    )
    logger.info(
        "scheduler started db=%s notifier=%s sweep_every=%ss",
        engine.url.render_as_string(hide_password=True),
        type(notifier).__name__,
        settings.sweep_interval_sec,
    )

    sweeper = asyncio.create_task(run_sweeper(scheduler, settings.sweep_interval_sec))
    try:
        if bot is not None:
            await setup_dispatcher(notifier, scheduler).start_polling(bot)
        else:
            await sweeper
    finally:
        sweeper.cancel()
        with suppress(asyncio.CancelledError):
            await sweeper
        await shutdown_notifications(notifications, notifier)
        await engine.dispose()


def run():
    asyncio.run(main())


if __name__ == "__main__":
    run()
