from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path

from birthday_reminder.errors import PersistenceFailure
from birthday_reminder.registry import BirthdayRegistry

LOGGER = logging.getLogger(__name__)

CORRUPT_SUFFIX = ".corrupt"


def load_registry(path: Path, *, max_birthdays: int | None = None) -> BirthdayRegistry:
    """Load the registry from a snapshot file.

    A missing or unreadable snapshot yields an empty registry so that the bot
    still starts; the condition is logged. An unreadable snapshot is renamed
    to ``<name>.corrupt`` first so the next backup does not overwrite it.
    """
    if not path.exists():
        LOGGER.warning("Snapshot %s not found, starting with an empty registry", path)
        return BirthdayRegistry(max_birthdays=max_birthdays)

    try:
        with path.open("r", encoding="utf-8") as file_obj:
            data = json.load(file_obj)
        registry = BirthdayRegistry.from_snapshot(data, max_birthdays=max_birthdays)
    except (OSError, ValueError, KeyError, TypeError, AttributeError) as exc:
        LOGGER.error("Snapshot %s is unreadable (%s), starting with an empty registry", path, exc)
        _set_aside(path)
        return BirthdayRegistry(max_birthdays=max_birthdays)

    stats = registry.stats()
    LOGGER.info("Loaded %s chat(s) with %s birthday(s) from %s", stats.chats, stats.birthdays, path)
    return registry


def _set_aside(path: Path) -> None:
    target = path.with_name(path.name + CORRUPT_SUFFIX)
    try:
        os.replace(path, target)
    except OSError as exc:
        LOGGER.error("Could not move unreadable snapshot %s aside: %s", path, exc)
        return
    LOGGER.warning("Unreadable snapshot kept as %s", target)


def write_json_atomic(path: Path, payload: object) -> None:
    """Write ``payload`` as JSON next to ``path`` and swap it into place.

    The temporary file is removed when any step fails.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    with tempfile.NamedTemporaryFile(
        mode="w",
        encoding="utf-8",
        dir=path.parent,
        prefix=f".{path.name}.",
        delete=False,
    ) as temp_file:
        temp_name = temp_file.name
        try:
            json.dump(payload, temp_file, indent=2, ensure_ascii=False)
            temp_file.write("\n")
        except (OSError, TypeError, ValueError):
            temp_file.close()
            Path(temp_name).unlink(missing_ok=True)
            raise

    try:
        os.replace(temp_name, path)
    except OSError:
        Path(temp_name).unlink(missing_ok=True)
        raise


def save_registry_atomic(path: Path, registry: BirthdayRegistry) -> None:
    try:
        write_json_atomic(path, registry.to_snapshot())
    except OSError as exc:
        raise PersistenceFailure(f"Could not write snapshot {path}: {exc}") from exc
