from __future__ import annotations


class BirthdayBotError(Exception):
    pass


class InvalidDate(BirthdayBotError, ValueError):
    pass


class DuplicateEntry(BirthdayBotError):
    def __init__(self, name: str, month: int, day: int) -> None:
        super().__init__(f"{name} ({day:02d}-{month:02d}) is already in the list")
        self.name = name
        self.month = month
        self.day = day


class NotFound(BirthdayBotError):
    pass


class AmbiguousEntry(BirthdayBotError):
    def __init__(self, name: str, positions: list[int]) -> None:
        listed = ", ".join(str(position) for position in positions)
        super().__init__(f"Several entries are named {name} (numbers {listed})")
        self.name = name
        self.positions = positions


class RegistryFull(BirthdayBotError):
    pass


class ValidationError(BirthdayBotError):
    """Raised when an imported document is rejected.

    ``index`` is the zero-based position of the offending entry, or ``None``
    when the document itself is malformed.
    """

    def __init__(self, reason: str, index: int | None = None) -> None:
        self.reason = reason
        self.index = index
        if index is None:
            super().__init__(reason)
        else:
            super().__init__(f"Entry {index + 1}: {reason}")


class Forbidden(BirthdayBotError):
    pass


class PersistenceFailure(BirthdayBotError):
    pass
