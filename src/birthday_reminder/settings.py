from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

TRUE_VALUES = {"1", "true", "yes", "on"}
FALSE_VALUES = {"0", "false", "no", "off", ""}


@dataclass(frozen=True)
class Settings:
    telegram_bot_token: str
    snapshot_path: Path
    notification_state_path: Path
    maintainer_user_id: int | None = None
    permission_timeout: float = 10.0
    mode_timeout: float | None = None
    max_birthdays: int | None = None
    notify_catch_up: bool = False


def _optional_env(name: str) -> str | None:
    value = os.getenv(name)
    if value is None or not value.strip():
        return None
    return value.strip()


def _read_token() -> str:
    token_file = _optional_env("BIRTHDAY_BOT_TOKEN_FILE")
    if token_file is not None:
        lines = Path(token_file).read_text(encoding="utf-8").splitlines()
        token = lines[0].strip() if lines else ""
        if not token:
            raise ValueError(f"Token file is empty: {token_file}")
        return token

    token = _optional_env("BIRTHDAY_BOT_TOKEN")
    if token is None:
        raise ValueError("Set BIRTHDAY_BOT_TOKEN or BIRTHDAY_BOT_TOKEN_FILE")
    return token


def _optional_int(name: str, *, minimum: int | None = None) -> int | None:
    value = _optional_env(name)
    if value is None:
        return None
    try:
        parsed = int(value)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer") from exc
    if minimum is not None and parsed < minimum:
        raise ValueError(f"{name} must be at least {minimum}")
    return parsed


def _optional_seconds(name: str) -> float | None:
    value = _optional_env(name)
    if value is None:
        return None
    try:
        parsed = float(value)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number of seconds") from exc
    if parsed <= 0:
        raise ValueError(f"{name} must be positive")
    return parsed


def _flag(name: str) -> bool:
    value = (os.getenv(name) or "").strip().lower()
    if value in TRUE_VALUES:
        return True
    if value in FALSE_VALUES:
        return False
    raise ValueError(f"{name} must be true or false")


def load_settings() -> Settings:
    root = Path.cwd()

    snapshot_path = Path(os.getenv("BIRTHDAY_SNAPSHOT_PATH", root / "backup.json"))
    notification_state_path = Path(
        os.getenv("NOTIFICATION_STATE_PATH", root / "data" / "notification_state.json")
    )
    permission_timeout = _optional_seconds("PERMISSION_TIMEOUT_SECONDS")

    return Settings(
        telegram_bot_token=_read_token(),
        snapshot_path=snapshot_path,
        notification_state_path=notification_state_path,
        maintainer_user_id=_optional_int("MAINTAINER_USER_ID"),
        permission_timeout=permission_timeout if permission_timeout is not None else 10.0,
        mode_timeout=_optional_seconds("MODE_TIMEOUT_SECONDS"),
        max_birthdays=_optional_int("MAX_BIRTHDAYS", minimum=1),
        notify_catch_up=_flag("NOTIFY_CATCH_UP"),
    )
