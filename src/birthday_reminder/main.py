from __future__ import annotations

import logging
from datetime import datetime, timezone

from telegram.ext import Application, CallbackContext

from birthday_reminder.backup_service import BACKUP_JOB_NAME, BACKUP_TIME, BackupService
from birthday_reminder.bot_handlers import HandlerDependencies, build_handlers, error_handler
from birthday_reminder.command_modes import ModeTracker
from birthday_reminder.notification_service import (
    HEALTH_CHECK_JOB_NAME,
    HEALTH_CHECK_TIME,
    NOTIFICATION_JOB_NAME,
    NOTIFICATION_TIME,
    NotificationService,
    report_to_maintainer,
    utc_today,
)
from birthday_reminder.permissions import PermissionGate
from birthday_reminder.settings import load_settings
from birthday_reminder.snapshot_store import load_registry

LOGGER = logging.getLogger(__name__)


def configure_logging() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logging.getLogger("httpx").setLevel(logging.WARNING)


async def scheduled_notification_callback(context: CallbackContext) -> None:
    deps: HandlerDependencies = context.application.bot_data["handler_deps"]
    await deps.notifications.dispatch_for_date(utc_today())


async def scheduled_backup_callback(context: CallbackContext) -> None:
    deps: HandlerDependencies = context.application.bot_data["handler_deps"]
    await deps.backup.run_backup()


async def health_check_callback(context: CallbackContext) -> None:
    deps: HandlerDependencies = context.application.bot_data["handler_deps"]
    await report_to_maintainer(context.bot, deps.settings.maintainer_user_id, "I'm alive!")
    LOGGER.info("Health check sent")


async def startup_catchup(application: Application) -> None:
    deps: HandlerDependencies = application.bot_data["handler_deps"]
    if not deps.settings.notify_catch_up:
        return

    now = datetime.now(timezone.utc)
    scheduled = now.replace(
        hour=NOTIFICATION_TIME.hour,
        minute=NOTIFICATION_TIME.minute,
        second=0,
        microsecond=0,
    )
    if now >= scheduled and not deps.notifications.already_fired(now.date()):
        LOGGER.info("Catching up on missed notifications for %s", now.date().isoformat())
        await deps.notifications.dispatch_for_date(now.date())


async def final_backup(application: Application) -> None:
    deps: HandlerDependencies = application.bot_data["handler_deps"]
    LOGGER.info("Saving birthday data before shutdown")
    await deps.backup.run_backup()


def main() -> None:
    configure_logging()

    settings = load_settings()
    LOGGER.info("Bot maintainer user ID: %s", settings.maintainer_user_id)

    registry = load_registry(settings.snapshot_path, max_birthdays=settings.max_birthdays)

    application = (
        Application.builder()
        .token(settings.telegram_bot_token)
        .post_init(startup_catchup)
        .post_stop(final_backup)
        .build()
    )

    application.bot_data["handler_deps"] = HandlerDependencies(
        settings=settings,
        registry=registry,
        modes=ModeTracker(timeout=settings.mode_timeout),
        gate=PermissionGate(
            bot=application.bot,
            maintainer_user_id=settings.maintainer_user_id,
            timeout=settings.permission_timeout,
        ),
        notifications=NotificationService(
            bot=application.bot,
            registry=registry,
            state_path=settings.notification_state_path,
            maintainer_user_id=settings.maintainer_user_id,
        ),
        backup=BackupService(
            bot=application.bot,
            registry=registry,
            snapshot_path=settings.snapshot_path,
            maintainer_user_id=settings.maintainer_user_id,
        ),
    )

    for handler in build_handlers(settings):
        application.add_handler(handler)
    application.add_error_handler(error_handler)

    application.job_queue.run_daily(
        scheduled_notification_callback,
        time=NOTIFICATION_TIME,
        name=NOTIFICATION_JOB_NAME,
    )
    application.job_queue.run_daily(
        scheduled_backup_callback,
        time=BACKUP_TIME,
        name=BACKUP_JOB_NAME,
    )
    if settings.maintainer_user_id is not None:
        application.job_queue.run_daily(
            health_check_callback,
            time=HEALTH_CHECK_TIME,
            name=HEALTH_CHECK_JOB_NAME,
        )

    LOGGER.info("Starting birthday reminder bot")
    application.run_polling()


if __name__ == "__main__":
    main()
