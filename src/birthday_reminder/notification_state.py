from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import date
from pathlib import Path

from birthday_reminder.errors import PersistenceFailure
from birthday_reminder.snapshot_store import write_json_atomic

LOGGER = logging.getLogger(__name__)


@dataclass
class NotificationState:
    last_fired: date | None = None


def load_state(path: Path) -> NotificationState:
    if not path.exists():
        return NotificationState()

    try:
        with path.open("r", encoding="utf-8") as file_obj:
            data = json.load(file_obj)
        last_fired = data.get("last_fired")
        return NotificationState(last_fired=date.fromisoformat(last_fired) if last_fired else None)
    except (OSError, ValueError, AttributeError) as exc:
        LOGGER.error("Notification state %s is unreadable (%s), ignoring it", path, exc)
        return NotificationState()


def save_state_atomic(path: Path, state: NotificationState) -> None:
    payload = {
        "last_fired": state.last_fired.isoformat() if state.last_fired else None,
    }
    try:
        write_json_atomic(path, payload)
    except OSError as exc:
        raise PersistenceFailure(f"Could not write notification state {path}: {exc}") from exc
