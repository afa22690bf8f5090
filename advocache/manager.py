"""Registry of sheets by ID."""

from __future__ import annotations

import threading

from . import logger
from .cache import DEFAULT_CAPACITY
from .sheet import Sheet


class InvalidPasswordError(Exception):
    """The password does not match the existing sheet."""

    def __init__(self, message: str = "invalid password") -> None:
        super().__init__(message)


class SheetManager:
    """All sheets on this server, looked up by ID."""

    def __init__(self, capacity: int = DEFAULT_CAPACITY) -> None:
        self._sheets: dict[str, Sheet] = {}
        self._lock = threading.Lock()
        self._capacity = capacity
        logger.info("SheetManager initialized")

    @staticmethod
    def _checked(sheet: Sheet, password: str) -> Sheet:
        if not sheet.validate_password(password):
            logger.warning(f"Invalid password for sheet: {sheet.id}")
            raise InvalidPasswordError()
        return sheet

    def get_or_create_sheet(self, sheet_id: str, password: str) -> Sheet:
        """Return the sheet if the password matches, creating it if new.

        Raises ValueError for an empty ID or password and
        InvalidPasswordError for a wrong password.
        """
        if not sheet_id or not password:
            raise ValueError("sheet ID and password required")

        existing = self.get_sheet(sheet_id)
        if existing is not None:
            return self._checked(existing, password)

        created = Sheet(sheet_id, password, self._capacity)
        with self._lock:
            current = self._sheets.setdefault(sheet_id, created)
        if current is not created:
            created.stop_ttl_cleaner()
            return self._checked(current, password)

        logger.info(f"Sheet created: {sheet_id}")
        return created

    def get_sheet(self, sheet_id: str) -> Sheet | None:
        """The sheet with this ID, or None."""
        with self._lock:
            return self._sheets.get(sheet_id)

    def add_sheet(self, sheet_id: str, sheet: Sheet) -> None:
        """Store a sheet directly, replacing any with the same ID."""
        with self._lock:
            self._sheets[sheet_id] = sheet

    def delete_sheet(self, sheet_id: str) -> None:
        """Remove a sheet and stop its background expiry."""
        with self._lock:
            sheet = self._sheets.pop(sheet_id, None)
        if sheet is not None:
            sheet.stop_ttl_cleaner()
        logger.info(f"Sheet deleted: {sheet_id}")

    def sheet_count(self) -> int:
        """Number of sheets."""
        with self._lock:
            return len(self._sheets)

    def items(self) -> list[tuple[str, Sheet]]:
        """A snapshot of (ID, sheet) pairs."""
        with self._lock:
            return list(self._sheets.items())