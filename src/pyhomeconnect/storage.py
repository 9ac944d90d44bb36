"""Durable storage for the OAuth refresh token."""

import logging
from pathlib import Path

_LOGGER = logging.getLogger(__name__)


class RefreshTokenFile:
    """Stores the bare refresh-token string in a single file."""

    def __init__(self, path: str | Path) -> None:
        """Initialize the token file wrapper."""
        self._path = Path(path)

    @property
    def path(self) -> Path:
        """Return the file location."""
        return self._path

    def load(self) -> str | None:
        """Return the stored refresh token, or None if missing or unreadable."""
        if not self._path.exists():
            _LOGGER.debug("No refresh token file found at %s", self._path)
            return None
        try:
            token = self._path.read_text(encoding="utf-8").strip()
        except OSError as err:
            _LOGGER.error("Could not read refresh token file: %s", err)
            return None
        if not token:
            _LOGGER.warning("Refresh token file is empty")
            return None
        _LOGGER.info("Existing refresh token found (length %d)", len(token))
        return token

    def save(self, token: str) -> None:
        """Persist a (rotated) refresh token."""
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._path.write_text(token, encoding="utf-8")
        _LOGGER.debug("Refresh token saved to %s", self._path)

    def delete(self) -> bool:
        """Delete the stored token. Returns True if a file was removed."""
        try:
            self._path.unlink()
        except FileNotFoundError:
            return False
        _LOGGER.info("Refresh token file deleted")
        return True
