"""Cadence: Abstract Source Adapter."""

from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from cadence.models.sync_models import SyncResult
from cadence.sync.time_windows import TimeRange


class AdapterError(Exception):
    """Raised inside an adapter. Never escapes ``fetch_metric``."""

    def __init__(self, message: str, status_code: int = 0):
        self.status_code = status_code
        super().__init__(message)


class SourceAdapter(ABC):
    """Uniform contract every external metric provider implements.

    The sync engine only ever talks to this interface, so swapping or faking
    a provider needs no engine change.
    """

    provider: str = ""

    @abstractmethod
    def is_configured(self) -> bool:
        """True iff the credentials this adapter needs are present."""
        ...

    @abstractmethod
    async def fetch_metric(
        self, config: Dict[str, Any], time_range: Optional[TimeRange] = None
    ) -> SyncResult:
        """Fetch a single scalar value.

        Args:
            config: Provider-specific query parameters.
            time_range: Optional window to restrict the query to.

        Returns:
            A ``SyncResult``. Provider failures are reported with
            ``success=False`` rather than raised.
        """
        ...

    @abstractmethod
    async def test_connection(self) -> SyncResult:
        ...

    async def close(self) -> None:
        return None
