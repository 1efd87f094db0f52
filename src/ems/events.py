"""Decision events emitted by the EMS controller."""

from enum import Enum
from typing import Dict, Any, Optional, List
from dataclasses import dataclass, field
from datetime import datetime


class Regime(str, Enum):
    """Band a POC measurement falls into."""
    OVER_THRESHOLD = "over_threshold"
    UNDER_THRESHOLD = "under_threshold"
    NORMAL = "normal"


class EventType(str, Enum):
    """Types of EMS decision events."""
    # Fast corrective path
    SITE_DISCHARGE_INCREASED = "site_discharge_increased"
    SITE_DISCHARGE_DECREASED = "site_discharge_decreased"

    # Slow balancing path
    ENERGY_BALANCED = "energy_balanced"

    # Failures
    COVERAGE_SHORTFALL = "coverage_shortfall"
    CYCLE_FAILED = "cycle_failed"


@dataclass
class DecisionEvent:
    """Outcome of one decision cycle."""
    type: EventType
    regime: Regime
    timestamp: datetime
    poc: float
    pv_setpoint: float
    ess_setpoint: float
    requested: Optional[float] = None
    uncovered: Optional[float] = None
    exhausted: List[str] = field(default_factory=list)
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return self.type not in (EventType.COVERAGE_SHORTFALL, EventType.CYCLE_FAILED)

    def to_log_line(self) -> str:
        """Render the event as a key=value log line."""
        parts = [
            f"event={self.type.value}",
            f"regime={self.regime.value}",
            f"poc={self.poc:.2f}",
        ]
        if self.requested is not None:
            parts.append(f"requested={self.requested:.2f}")
        if self.uncovered is not None:
            parts.append(f"uncovered={self.uncovered:.2f}")
        if self.exhausted:
            parts.append(f"exhausted={','.join(self.exhausted)}")
        for key, value in self.details.items():
            if isinstance(value, float):
                parts.append(f"{key}={value:.2f}")
            else:
                parts.append(f"{key}={value}")
        parts.append(f"pv_setpoint={self.pv_setpoint:.2f}")
        parts.append(f"ess_setpoint={self.ess_setpoint:.2f}")
        return " ".join(parts)
