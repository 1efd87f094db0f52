"""Power asset implementations controlled by the Energy Management System."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Dict, Any, Optional, Callable, Tuple

from .exceptions import ResourceError, ValidationRangeError

# Remainders smaller than this are considered fully covered (kW)
POWER_TOLERANCE = 1e-9


class AdjustmentStatus(Enum):
    """Outcome of an asset discharge adjustment."""
    SATISFIED = "satisfied"
    PARTIAL = "partial"
    EXHAUSTED = "exhausted"


@dataclass(frozen=True)
class AdjustmentResult:
    """Result of an adjust_discharge call.

    ``remaining`` is the part of ``requested`` the asset could not take on and
    that the next asset in a waterfall has to cover.
    """
    status: AdjustmentStatus
    requested: float
    remaining: float = 0.0

    @property
    def applied(self) -> float:
        """Change of the commanded power actually made by the asset."""
        return self.requested - self.remaining

    @property
    def satisfied(self) -> bool:
        return self.status == AdjustmentStatus.SATISFIED

    @property
    def exhausted(self) -> bool:
        return self.status == AdjustmentStatus.EXHAUSTED

    @classmethod
    def from_remaining(cls, requested: float, remaining: float) -> 'AdjustmentResult':
        """Build a satisfied or partial result from an unmet remainder."""
        if abs(remaining) <= POWER_TOLERANCE:
            return cls(AdjustmentStatus.SATISFIED, requested, 0.0)
        return cls(AdjustmentStatus.PARTIAL, requested, remaining)


def poc_percentage(poc: float, poc_max: float) -> float:
    """Fraction of the allowed grid draw currently used."""
    if poc_max == 0:
        raise ValidationRangeError("POC limit must be non-zero")
    return poc / poc_max


class PowerAsset(ABC):
    """Abstract base class for assets whose output the EMS commands."""

    def __init__(
        self,
        p: float,
        name: Optional[str] = None,
        actuator: Optional[Callable[[float], None]] = None,
        metadata: Optional[Dict[str, Any]] = None
    ):
        """Initialize asset with its measured output and optional actuator."""
        self.name = name or self.__class__.__name__
        self.p = float(p)
        # Hold the current operating point until the EMS decides otherwise
        self.setpoint_p = float(p)
        self._actuator = actuator
        self._metadata = metadata or {}
        self._last_update = datetime.now()

    @abstractmethod
    def get_measure(self) -> Tuple[float, ...]:
        """Return a snapshot of the asset measurements."""
        pass

    @abstractmethod
    def increase_discharge(self, delta: float, base: Optional[float] = None) -> AdjustmentResult:
        """Raise discharge by ``delta`` (>= 0) within the asset limits."""
        pass

    @abstractmethod
    def decrease_discharge(self, delta: float, base: Optional[float] = None) -> AdjustmentResult:
        """Lower discharge by ``delta`` (< 0) within the asset limits."""
        pass

    @abstractmethod
    def balance_energy(self, poc: float, poc_max: float, base: Optional[float] = None) -> float:
        """Nudge the asset output and return the power delta applied."""
        pass

    def adjust_discharge(self, delta: float, base: Optional[float] = None) -> AdjustmentResult:
        """Adjust discharge by ``delta`` and report what could not be covered.

        The new setpoint is ``base + delta`` within the asset limits. ``base``
        defaults to the measured output, so repeating a call without a new
        measurement gives the same setpoint.
        """
        if delta < 0:
            return self.decrease_discharge(delta, base)
        return self.increase_discharge(delta, base)

    def operating_point(self, base: Optional[float] = None) -> float:
        """Output an adjustment starts from."""
        return self.p if base is None else float(base)

    def set_setpoint(self, setpoint: float) -> None:
        """Record the commanded output."""
        self.setpoint_p = float(setpoint)

    def apply_setpoint(self) -> None:
        """Send the current setpoint to the actuator, if any."""
        if self._actuator is not None:
            self._actuator(self.setpoint_p)

    def get_metrics(self) -> Dict[str, Any]:
        """Get current asset metrics."""
        return {
            "name": self.name,
            "p": self.p,
            "setpoint_p": self.setpoint_p,
            "last_update": self._last_update.isoformat(),
            **self._metadata
        }


class PVInverter(PowerAsset):
    """Photovoltaic plant whose AC output is capped by the available production."""

    def __init__(
        self,
        p: float,
        pprod: float,
        peak: float,
        name: Optional[str] = None,
        actuator: Optional[Callable[[float], None]] = None
    ):
        """Initialize PV plant with output, production estimate and peak power."""
        if peak <= 0:
            raise ResourceError("Peak power must be positive")
        if not 0 <= p <= pprod <= peak:
            raise ResourceError(
                f"PV powers must satisfy 0 <= P <= Pprod <= Peak, "
                f"got P={p}, Pprod={pprod}, Peak={peak}"
            )
        super().__init__(p, name=name or "pv", actuator=actuator)

        self.pprod = float(pprod)  # kW, DC side estimate
        self.peak = float(peak)    # kW

        # Energy balancing parameters
        self.poc_ceiling = 0.8   # fraction of allowed draw
        self.step_divisor = 20   # steps of 5% of allowed draw

    def get_measure(self) -> Tuple[float, float]:
        """Return P and Pprod."""
        return self.p, self.pprod

    def available_prod(self) -> float:
        """Production the inverter could still deliver."""
        return self.pprod - self.p

    def update_measurement(self, p: Optional[float] = None,
                           pprod: Optional[float] = None) -> None:
        """Record fresh readings from the inverter and pyranometer."""
        if p is not None:
            if p < 0:
                raise ResourceError("PV output cannot be negative")
            self.p = float(p)
        if pprod is not None:
            if pprod < 0 or pprod > self.peak:
                raise ResourceError(f"PV production must be between 0 and {self.peak} kW")
            self.pprod = float(pprod)
        self._last_update = datetime.now()

    def increase_discharge(self, delta: float, base: Optional[float] = None) -> AdjustmentResult:
        p, pprod = self.operating_point(base), self.pprod

        if p + delta <= pprod:
            self.set_setpoint(p + delta)
            return AdjustmentResult.from_remaining(delta, 0.0)

        # Not enough production, still use all of it
        self.set_setpoint(pprod)
        return AdjustmentResult.from_remaining(delta, delta - (pprod - p))

    def decrease_discharge(self, delta: float, base: Optional[float] = None) -> AdjustmentResult:
        p = self.operating_point(base)

        if p + delta >= 0:
            self.set_setpoint(p + delta)
            return AdjustmentResult.from_remaining(delta, 0.0)

        # Output cannot go below zero
        self.set_setpoint(0.0)
        return AdjustmentResult.from_remaining(delta, delta - (0.0 - p))

    def balance_energy(self, poc: float, poc_max: float, base: Optional[float] = None) -> float:
        """Raise PV output while the site is well inside its draw limit.

        A negative available production (output above the estimate) is
        corrected at once. Otherwise output grows by at most 5% of the allowed
        draw per call, and only while less than 80% of that draw is used.
        """
        pct = poc_percentage(poc, poc_max)
        available = self.pprod - self.operating_point(base)

        if available < 0:
            return self.adjust_discharge(available, base).applied

        if available > 0 and pct < self.poc_ceiling:
            step = min(available, abs(poc_max) / self.step_divisor)
            return self.adjust_discharge(step, base).applied

        return 0.0

    def get_metrics(self) -> Dict[str, Any]:
        """Get PV-specific metrics."""
        metrics = super().get_metrics()
        metrics.update({
            "pprod": self.pprod,
            "peak": self.peak,
            "available_prod": self.available_prod()
        })
        return metrics


class EnergyStorage(PowerAsset):
    """Battery energy storage system (ESS).

    Power is negative while charging and positive while discharging.
    """

    def __init__(
        self,
        p: float,
        pmax_ch: float,
        pmax_disch: float,
        e: float,
        capacity: float,
        name: Optional[str] = None,
        actuator: Optional[Callable[[float], None]] = None
    ):
        """Initialize battery with power limits and stored energy."""
        if capacity <= 0:
            raise ResourceError("Capacity must be positive")
        if pmax_ch > 0:
            raise ResourceError("Maximal charge power must be <= 0")
        if pmax_disch < 0:
            raise ResourceError("Maximal discharge power must be >= 0")
        if not pmax_ch <= p <= pmax_disch:
            raise ResourceError(
                f"ESS power must be between {pmax_ch} and {pmax_disch} kW, got {p}"
            )
        if e < 0 or e > capacity:
            raise ResourceError("Stored energy must be between 0 and capacity")
        super().__init__(p, name=name or "ess", actuator=actuator)

        self.pmax_ch = float(pmax_ch)        # kW, <= 0
        self.pmax_disch = float(pmax_disch)  # kW, >= 0
        self.e = float(e)                    # kWh
        self.capacity = float(capacity)      # kWh

        # Energy balancing parameters
        self.low_consumption = 0.3
        self.high_consumption = 0.7
        self.energy_threshold = 0.7
        self.step_divisor = 20

    def get_measure(self) -> Tuple[float, float, float, float]:
        """Return P, PmaxCh, PmaxDisch and E."""
        return self.p, self.pmax_ch, self.pmax_disch, self.e

    def state_of_charge(self) -> float:
        return self.e / self.capacity

    def update_measurement(self, p: Optional[float] = None,
                           e: Optional[float] = None) -> None:
        """Record fresh readings from the battery management system."""
        if p is not None:
            self.p = float(p)
        if e is not None:
            if e < 0 or e > self.capacity:
                raise ResourceError(f"Stored energy must be between 0 and {self.capacity} kWh")
            self.e = float(e)
        self._last_update = datetime.now()

    def increase_discharge(self, delta: float, base: Optional[float] = None) -> AdjustmentResult:
        p, e = self.operating_point(base), self.e
        pmax_disch = self.pmax_disch

        # Battery is empty: stop discharging and hand everything to the next asset
        if p + delta > 0 and e <= 0:
            self.set_setpoint(0.0)
            return AdjustmentResult(AdjustmentStatus.EXHAUSTED, delta, delta + p)

        if p + delta <= pmax_disch:
            self.set_setpoint(p + delta)
            return AdjustmentResult.from_remaining(delta, 0.0)

        self.set_setpoint(pmax_disch)
        return AdjustmentResult.from_remaining(delta, delta - (pmax_disch - p))

    def decrease_discharge(self, delta: float, base: Optional[float] = None) -> AdjustmentResult:
        p, e = self.operating_point(base), self.e
        pmax_ch = self.pmax_ch

        # Battery is full: stop charging and hand everything to the next asset
        if p + delta < 0 and e >= self.capacity:
            self.set_setpoint(0.0)
            return AdjustmentResult(AdjustmentStatus.EXHAUSTED, delta, delta + p)

        if p + delta >= pmax_ch:
            self.set_setpoint(p + delta)
            return AdjustmentResult.from_remaining(delta, 0.0)

        self.set_setpoint(pmax_ch)
        return AdjustmentResult.from_remaining(delta, delta - (pmax_ch - p))

    def balance_energy(self, poc: float, poc_max: float, base: Optional[float] = None) -> float:
        """Charge when the site is quiet and discharge when it is busy.

        Each step is the smaller of 5% of the battery power limit and 5% of
        the allowed draw. High consumption with a low battery, and low
        consumption with a full one, are left alone.
        """
        pct = poc_percentage(poc, poc_max)
        e_pct = self.state_of_charge()
        step_limit = abs(poc_max) / self.step_divisor
        p = self.operating_point(base)

        if pct < self.low_consumption and e_pct < self.energy_threshold and p > self.pmax_ch:
            step = max(self.pmax_ch / self.step_divisor, -step_limit)
            return self.adjust_discharge(step, base).applied

        if pct > self.high_consumption and e_pct > self.energy_threshold and p < self.pmax_disch:
            step = min(self.pmax_disch / self.step_divisor, step_limit)
            return self.adjust_discharge(step, base).applied

        return 0.0

    def get_metrics(self) -> Dict[str, Any]:
        """Get battery-specific metrics."""
        metrics = super().get_metrics()
        metrics.update({
            "pmax_ch": self.pmax_ch,
            "pmax_disch": self.pmax_disch,
            "e": self.e,
            "capacity": self.capacity,
            "state_of_charge": self.state_of_charge() * 100
        })
        return metrics
