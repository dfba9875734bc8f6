from __future__ import annotations

import asyncio
import logging
from datetime import time, timezone
from pathlib import Path

from telegram import Bot

from birthday_reminder.errors import PersistenceFailure
from birthday_reminder.notification_service import report_to_maintainer
from birthday_reminder.registry import BirthdayRegistry
from birthday_reminder.snapshot_store import save_registry_atomic

LOGGER = logging.getLogger(__name__)

BACKUP_JOB_NAME = "daily-backup"
BACKUP_TIME = time(hour=12, minute=0, tzinfo=timezone.utc)


class BackupService:
    def __init__(
        self,
        *,
        bot: Bot,
        registry: BirthdayRegistry,
        snapshot_path: Path,
        maintainer_user_id: int | None = None,
    ) -> None:
        self._bot = bot
        self._registry = registry
        self._snapshot_path = snapshot_path
        self._maintainer_user_id = maintainer_user_id

    async def run_backup(self) -> bool:
        """Write a snapshot without blocking the event loop.

        Failures are logged and reported to the maintainer; the registry keeps
        working from memory either way.
        """
        try:
            await asyncio.to_thread(save_registry_atomic, self._snapshot_path, self._registry)
        except PersistenceFailure as exc:
            LOGGER.error("Backup failed: %s", exc)
            await report_to_maintainer(self._bot, self._maintainer_user_id, f"Backup failed: {exc}")
            return False

        LOGGER.info("Birthday data saved to %s", self._snapshot_path)
        return True
