"""Advisory local copy of the server entitlement.

Exists so screens can render without waiting on the network. The server
always wins; this cache is only ever written from server responses.
"""

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from pydantic import ValidationError as PydanticValidationError

from app.models.entitlement import EntitlementView

logger = logging.getLogger(__name__)


class EntitlementCache:
    """Holds the last server-confirmed entitlement, optionally on disk."""

    def __init__(self, path: Optional[Path] = None):
        self.path = Path(path) if path else None
        self._view: Optional[EntitlementView] = self._load()

    def get(self, now: Optional[datetime] = None) -> Optional[EntitlementView]:
        """Cached entitlement with liveness recomputed against expiryTime."""
        if self._view is None:
            return None
        now = now or datetime.now(timezone.utc)
        if self._view.isActive and not self._view.is_live(now):
            logger.info("Cached entitlement has expired")
            return self._view.model_copy(update={"isActive": False})
        return self._view

    def set(self, view: EntitlementView) -> None:
        self._view = view
        self._save()

    def clear(self) -> None:
        """Forget the cached entitlement (e.g. on logout)."""
        self._view = None
        if self.path and self.path.exists():
            self.path.unlink()

    def _load(self) -> Optional[EntitlementView]:
        if not self.path or not self.path.exists():
            return None
        try:
            return EntitlementView.model_validate_json(self.path.read_text(encoding="utf-8"))
        except (OSError, PydanticValidationError) as e:
            logger.warning(f"Ignoring unreadable entitlement cache {self.path}: {e}")
            return None

    def _save(self) -> None:
        if not self.path or self._view is None:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(self._view.model_dump_json(), encoding="utf-8")
