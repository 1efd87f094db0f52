"""Core Energy Management System controller.

There is no direct metering of the site consumption. The meter at the point
of connection (POC) measures the resultant of every production and
consumption on site, ``Ppoc = Pess + Ppv + Pload``, so the load is only
known implicitly.

The controller keeps the site inside ``PMaxSite < Ppoc <= 0``: consumption
must stay under the configured maximum and nothing may be injected into the
grid.
"""

import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Dict, Any, Callable

from .events import DecisionEvent, EventType, Regime
from .exceptions import EMSError, GridCoverageError, ValidationRangeError
from .grid import GridConnection
from .resources import AdjustmentResult, EnergyStorage, PVInverter

# Safety margin applied to PMaxSite at startup
DEFAULT_MARGIN = 0.1
DEFAULT_PERIOD = 1.0  # seconds


@dataclass(frozen=True)
class SiteThresholds:
    """Band the POC has to stay in, narrowed by a safety margin.

    All limits are negative (grid draw), e.g. PMaxSite -1000 kW with a 10%
    margin gives an effective maximum of -900 kW and a minimum of -90 kW.
    """
    pmax_site: float
    margin: float
    pmax_effective: float
    pmin: float

    @classmethod
    def from_pmax_site(cls, pmax_site: float, margin: float = DEFAULT_MARGIN) -> 'SiteThresholds':
        if pmax_site >= 0:
            raise ValidationRangeError(f"PMaxSite must be negative, got {pmax_site}")
        if not 0 <= margin < 1:
            raise ValidationRangeError(f"Margin must be in [0, 1), got {margin}")
        pmax_effective = pmax_site - pmax_site * margin
        pmin = pmax_effective * margin
        return cls(pmax_site=pmax_site, margin=margin,
                   pmax_effective=pmax_effective, pmin=pmin)

    def classify(self, poc: float) -> Regime:
        """Classify a POC measurement by the grid draw it represents."""
        draw = -poc
        if draw > -self.pmax_effective:
            return Regime.OVER_THRESHOLD
        if draw < -self.pmin:
            return Regime.UNDER_THRESHOLD
        return Regime.NORMAL

    def excess_draw(self, poc: float) -> float:
        """Draw above the effective maximum (positive when over threshold)."""
        return -poc + self.pmax_effective

    def missing_draw(self, poc: float) -> float:
        """Draw below the minimum (negative when under threshold)."""
        return -poc + self.pmin


class EnergyManagementSystem:
    """Controller owning the PV plant, the battery and the grid connection.

    The controller is the single writer of asset state: none of its methods
    may be called from more than one thread at a time.
    """

    def __init__(
        self,
        pv: PVInverter,
        ess: EnergyStorage,
        poc: GridConnection,
        pmax_site: float,
        margin: float = DEFAULT_MARGIN,
        period: float = DEFAULT_PERIOD
    ):
        """Initialize the controller and narrow PMaxSite by the margin."""
        if period <= 0:
            raise ValidationRangeError(f"Period must be positive, got {period}")

        self.pv = pv
        self.ess = ess
        self.poc = poc
        self.pmax_site = pmax_site
        self.thresholds = SiteThresholds.from_pmax_site(pmax_site, margin)
        self.period = period

        self.logger = logging.getLogger("ems.controller")

        # Decision tracking
        self._decision_history: List[DecisionEvent] = []
        self._max_history = 1000
        self._cycle_count = 0
        self._failure_count = 0

    @classmethod
    def from_config(
        cls,
        config,
        meter: Optional[Callable[[], float]] = None,
        pv_actuator: Optional[Callable[[float], None]] = None,
        ess_actuator: Optional[Callable[[float], None]] = None
    ) -> 'EnergyManagementSystem':
        """Build a controller from an ``EMSConfig``."""
        pv = PVInverter(
            p=config.pv.p,
            pprod=config.pv.pprod,
            peak=config.pv.peak,
            actuator=pv_actuator
        )
        ess = EnergyStorage(
            p=config.ess.p,
            pmax_ch=config.ess.pmaxch,
            pmax_disch=config.ess.pmaxdisch,
            e=config.ess.e,
            capacity=config.ess.capacity,
            actuator=ess_actuator
        )
        poc = GridConnection(p=config.poc.p, meter=meter)
        return cls(
            pv=pv,
            ess=ess,
            poc=poc,
            pmax_site=config.pmaxsite,
            margin=config.controller.margin,
            period=config.controller.period
        )

    def get_pload(self) -> float:
        """Site consumption deduced from the POC, PV and ESS powers."""
        return self.poc.p - self.pv.p - self.ess.p

    def serve(
        self,
        stop_event: threading.Event,
        period: Optional[float] = None,
        pre_cycle: Optional[Callable[[], None]] = None
    ) -> None:
        """Run the decision loop every ``period`` seconds until ``stop_event`` is set.

        Cancellation is checked once per tick, so a cycle in progress always
        completes. ``pre_cycle`` runs on the loop thread right before each
        decision.
        """
        period = period or self.period
        self.logger.info(f"EMS decision loop started (period={period}s)")

        next_tick = time.monotonic() + period
        while not stop_event.wait(max(0.0, next_tick - time.monotonic())):
            try:
                if pre_cycle is not None:
                    pre_cycle()
                self.run_cycle()
            except Exception as e:
                self._failure_count += 1
                self.logger.exception(f"EMS decision cycle failed: {e}")

            next_tick += period
            now = time.monotonic()
            if next_tick < now:
                # Drop ticks missed by a slow cycle
                next_tick = now + period

        self.logger.info("EMS decision loop stopped")

    def run_cycle(self) -> DecisionEvent:
        """Read the POC once, take one decision and push the setpoints."""
        self._cycle_count += 1
        poc = self.poc.get_meter_measure()
        regime = self.thresholds.classify(poc)

        try:
            if regime == Regime.OVER_THRESHOLD:
                amount = self.thresholds.excess_draw(poc)
                results = self.increase_site_discharge(amount)
                event = self._event(EventType.SITE_DISCHARGE_INCREASED, regime, poc,
                                    requested=amount, adjustments=results)
            elif regime == Regime.UNDER_THRESHOLD:
                amount = self.thresholds.missing_draw(poc)
                results = self.decrease_site_discharge(amount)
                event = self._event(EventType.SITE_DISCHARGE_DECREASED, regime, poc,
                                    requested=amount, adjustments=results)
            else:
                event = self._balance(poc)
        except GridCoverageError as e:
            event = self._event(EventType.COVERAGE_SHORTFALL, regime, poc,
                                requested=self._requested_amount(regime, poc),
                                uncovered=e.required, adjustments=e.adjustments)
        except EMSError as e:
            event = self._event(EventType.CYCLE_FAILED, regime, poc,
                                details={"error": str(e)})

        self._apply_setpoints()
        self._record_decision(event)
        return event

    def _balance(self, poc: float) -> DecisionEvent:
        """Slow path: redistribute between PV and ESS, then balance energy."""
        shifted = self.balance_site_discharge(poc)
        poc_estimate = poc

        # Nudges build on the redistributed setpoints
        pv_base = self.pv.setpoint_p if shifted else None
        ess_base = self.ess.setpoint_p if shifted else None

        pv_delta = self.pv.balance_energy(poc_estimate, self.thresholds.pmax_effective, pv_base)
        poc_estimate += pv_delta

        ess_delta = self.ess.balance_energy(poc_estimate, self.thresholds.pmax_effective, ess_base)
        poc_estimate += ess_delta

        return self._event(EventType.ENERGY_BALANCED, Regime.NORMAL, poc, details={
            "shifted": shifted,
            "pv_delta": pv_delta,
            "ess_delta": ess_delta,
            "poc_estimate": poc_estimate
        })

    def increase_site_discharge(self, amount: float) -> List[AdjustmentResult]:
        """Cover extra site consumption, PV first and ESS with the remainder."""
        if amount <= 0:
            raise ValidationRangeError(f"Discharge increase must be positive, got {amount}")

        results = [self.pv.adjust_discharge(amount)]
        if results[-1].satisfied:
            return results

        results.append(self.ess.adjust_discharge(results[-1].remaining))
        if not results[-1].satisfied:
            raise GridCoverageError(required=results[-1].remaining, adjustments=results)

        return results

    def decrease_site_discharge(self, amount: float) -> List[AdjustmentResult]:
        """Give back site discharge, ESS first and PV with the remainder."""
        if amount >= 0:
            raise ValidationRangeError(f"Discharge decrease must be negative, got {amount}")

        results = [self.ess.adjust_discharge(amount)]
        if results[-1].satisfied:
            return results

        results.append(self.pv.adjust_discharge(results[-1].remaining))
        if not results[-1].satisfied:
            raise GridCoverageError(required=results[-1].remaining, adjustments=results)

        return results

    def balance_site_discharge(self, poc: float) -> float:
        """Move discharge from ESS to PV without changing the POC.

        Returns the power shifted from the battery to the PV plant.
        """
        # Maximize PV discharge
        available = self.pv.available_prod()

        # Minimize ESS discharge
        p, pmax_ch, _, e = self.ess.get_measure()

        shift = 0.0
        if available > 0 and p > 0:
            # Both PV and ESS are discharging
            shift = min(available, p)
        elif available > 0 and p < 0 and e < self.ess.capacity:
            # PV has headroom while ESS charges: charge harder from PV
            shift = min(available, p - pmax_ch)

        if shift <= 0:
            return 0.0

        self.pv.adjust_discharge(shift)
        self.ess.adjust_discharge(-shift)
        return shift

    def _apply_setpoints(self) -> None:
        for asset in (self.pv, self.ess):
            asset.apply_setpoint()

    def _requested_amount(self, regime: Regime, poc: float) -> Optional[float]:
        if regime == Regime.OVER_THRESHOLD:
            return self.thresholds.excess_draw(poc)
        if regime == Regime.UNDER_THRESHOLD:
            return self.thresholds.missing_draw(poc)
        return None

    def _event(
        self,
        event_type: EventType,
        regime: Regime,
        poc: float,
        requested: Optional[float] = None,
        uncovered: Optional[float] = None,
        adjustments: tuple = (),
        details: Optional[Dict[str, Any]] = None
    ) -> DecisionEvent:
        names = self._asset_names(adjustments)
        exhausted = [name for name, result in zip(names, adjustments) if result.exhausted]
        return DecisionEvent(
            type=event_type,
            regime=regime,
            timestamp=datetime.now(),
            poc=poc,
            pv_setpoint=self.pv.setpoint_p,
            ess_setpoint=self.ess.setpoint_p,
            requested=requested,
            uncovered=uncovered,
            exhausted=exhausted,
            details=details or {}
        )

    def _asset_names(self, adjustments) -> List[str]:
        """Names of the assets in the order a waterfall tried them."""
        if not adjustments:
            return []
        # Increases go PV first, decreases ESS first
        if adjustments[0].requested > 0:
            return [self.pv.name, self.ess.name]
        return [self.ess.name, self.pv.name]

    def _record_decision(self, event: DecisionEvent) -> None:
        """Log the decision and keep it for later analysis."""
        line = event.to_log_line()
        if not event.success:
            self._failure_count += 1
            self.logger.error(line)
        elif event.exhausted:
            self.logger.warning(line)
        else:
            self.logger.info(line)

        self._decision_history.append(event)
        if len(self._decision_history) > self._max_history:
            self._decision_history = self._decision_history[-self._max_history:]

    def get_decision_history(self) -> List[DecisionEvent]:
        """Get recorded decisions, oldest first."""
        return self._decision_history

    def get_metrics(self) -> Dict[str, Any]:
        """Get controller and asset metrics."""
        return {
            "pmax_site": self.pmax_site,
            "pmax_effective": self.thresholds.pmax_effective,
            "pmin": self.thresholds.pmin,
            "pload": self.get_pload(),
            "cycles": self._cycle_count,
            "failures": self._failure_count,
            "pv": self.pv.get_metrics(),
            "ess": self.ess.get_metrics(),
            "poc": self.poc.get_metrics()
        }
