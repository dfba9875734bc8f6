"""JSON documents used to import and export a chat's birthday list.

Schema::

    {"birthdays": [{"name": "Alice Smith", "date": "15-03", "username": "alice"}]}

Each entry carries ``name`` and ``date`` (``DD-MM``) in that order, followed by
``username`` only when one is known. Any other key is rejected.
"""

from __future__ import annotations

import json
import re
from typing import Any

from birthday_reminder.errors import InvalidDate, ValidationError
from birthday_reminder.models import BirthdayEntry, ChatRecord
from birthday_reminder.registry import clean_entry

DOCUMENT_KEYS = {"birthdays"}
ENTRY_REQUIRED_KEYS = ("name", "date")
ENTRY_OPTIONAL_KEYS = ("username",)

SAMPLE_ENTRIES = (
    BirthdayEntry(name="Ivan Petrov", month=1, day=31, username="ivan_petrov"),
    BirthdayEntry(name="Anna Smirnova", month=2, day=29),
    BirthdayEntry(name="John Smith", month=12, day=5, username="jsmith"),
)

_DATE_RE = re.compile(r"(\d{2})-(\d{2})")
_LINE_RE = re.compile(r"(?P<name>[^,]+),\s*(?P<date>\d{2}-\d{2})(?:\s*,\s*@?(?P<username>\w+))?")


def parse_date_text(value: str) -> tuple[int, int]:
    match = _DATE_RE.fullmatch(value.strip())
    if match is None:
        raise InvalidDate("Date must use the DD-MM format")
    return int(match.group(2)), int(match.group(1))


def parse_birthday_line(raw_text: str) -> BirthdayEntry:
    """Parse the single-entry format ``Name, DD-MM[, @username]``."""
    match = _LINE_RE.fullmatch(raw_text.strip())
    if match is None:
        raise ValueError("Expected: Name, DD-MM or Name, DD-MM, @username")

    month, day = parse_date_text(match.group("date"))
    return clean_entry(
        BirthdayEntry(
            name=match.group("name"),
            month=month,
            day=day,
            username=match.group("username"),
        )
    )


def _entry_to_row(entry: BirthdayEntry) -> dict[str, str]:
    row = {"name": entry.name, "date": entry.date_text}
    if entry.username:
        row["username"] = entry.username
    return row


def _render(entries: tuple[BirthdayEntry, ...] | list[BirthdayEntry]) -> bytes:
    document = {"birthdays": [_entry_to_row(entry) for entry in entries]}
    return (json.dumps(document, indent=2, ensure_ascii=False) + "\n").encode("utf-8")


def export_document(record: ChatRecord) -> bytes:
    return _render(record.birthdays)


def sample_document() -> bytes:
    return _render(list(SAMPLE_ENTRIES))


def _row_to_entry(index: int, row: Any) -> BirthdayEntry:
    if not isinstance(row, dict):
        raise ValidationError("entry must be an object", index)

    unknown = set(row) - set(ENTRY_REQUIRED_KEYS) - set(ENTRY_OPTIONAL_KEYS)
    if unknown:
        raise ValidationError(f"unknown field(s): {', '.join(sorted(unknown))}", index)

    for key in ENTRY_REQUIRED_KEYS:
        if key not in row:
            raise ValidationError(f"missing field '{key}'", index)
        if not isinstance(row[key], str):
            raise ValidationError(f"field '{key}' must be a string", index)

    username = row.get("username")
    if username is not None and not isinstance(username, str):
        raise ValidationError("field 'username' must be a string", index)

    try:
        month, day = parse_date_text(row["date"])
        return clean_entry(BirthdayEntry(name=row["name"], month=month, day=day, username=username))
    except ValueError as exc:
        raise ValidationError(str(exc), index) from exc


def import_document(raw: bytes | str) -> list[BirthdayEntry]:
    """Validate a whole document; nothing is returned unless every entry is valid."""
    try:
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8-sig")
        document = json.loads(raw)
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise ValidationError(f"not a valid JSON document ({exc})") from exc

    if not isinstance(document, dict):
        raise ValidationError("document must be an object with a 'birthdays' list")

    unknown = set(document) - DOCUMENT_KEYS
    if unknown:
        raise ValidationError(f"unknown field(s): {', '.join(sorted(unknown))}")

    rows = document.get("birthdays")
    if not isinstance(rows, list):
        raise ValidationError("document must be an object with a 'birthdays' list")

    entries: list[BirthdayEntry] = []
    seen: set[tuple[str, int, int]] = set()
    for index, row in enumerate(rows):
        entry = _row_to_entry(index, row)
        if entry.identity in seen:
            raise ValidationError(f"duplicate entry for {entry.name} ({entry.date_text})", index)
        seen.add(entry.identity)
        entries.append(entry)

    return entries
