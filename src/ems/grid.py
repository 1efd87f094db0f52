"""Point of connection (POC) between the site and the public grid."""

from datetime import datetime
from typing import Dict, Any, Optional, Callable


class GridConnection:
    """Read-only view of the power measured at the point of connection.

    Negative power means the site draws from the grid, positive power means
    it injects into the grid.
    """

    def __init__(self, p: float = 0.0, meter: Optional[Callable[[], float]] = None):
        """Initialize with a last known reading and an optional meter."""
        self.p = float(p)
        self._meter = meter
        self._last_update = datetime.now()

    def get_meter_measure(self) -> float:
        """Return the current POC power, polling the meter when there is one."""
        if self._meter is not None:
            self.record(self._meter())
        return self.p

    def record(self, p: float) -> None:
        """Store a reading pushed by an external metering driver."""
        self.p = float(p)
        self._last_update = datetime.now()

    def get_metrics(self) -> Dict[str, Any]:
        return {
            "p": self.p,
            "last_update": self._last_update.isoformat()
        }
