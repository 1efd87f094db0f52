"""Simulated PV and battery site for running the EMS without hardware drivers."""

import logging
from typing import List, Optional, Tuple

import numpy as np

from .core import EnergyManagementSystem
from .events import DecisionEvent


class SiteSimulator:
    """Moves a site one step forward from the setpoints the EMS commanded.

    Readings reach the controller only through the assets'
    ``update_measurement`` and the grid connection's ``record``, the same
    entry points a hardware driver would use.
    """

    def __init__(
        self,
        ems: EnergyManagementSystem,
        seed: Optional[int] = None,
        load_fraction: Tuple[float, float] = (0.1, 0.2),
        dt: Optional[float] = None
    ):
        """Initialize simulator for ``ems`` with a reproducible random stream."""
        self.ems = ems
        self.rng = np.random.RandomState(seed)
        self.load_fraction = load_fraction
        self.dt = dt if dt is not None else ems.period  # seconds

        # Production estimate moves by up to 5% of peak per step
        self.pprod_step_percent = 5

        self.load = None  # kW, last simulated consumption
        self._steps = 0
        self.logger = logging.getLogger("ems.simulation")

    def step(self) -> float:
        """Advance the site by ``dt`` and return the new POC power."""
        ess = self.ems.ess
        pv = self.ems.pv

        # Battery energy follows the power it delivered during the step
        e = float(np.clip(ess.e - ess.p * self.dt / 3600, 0.0, ess.capacity))
        ess.update_measurement(p=ess.setpoint_p, e=e)

        # Irradiance drift
        drift = self.rng.randint(-self.pprod_step_percent, self.pprod_step_percent) / 100
        pprod = float(np.clip(pv.pprod + drift * pv.peak, 0.0, pv.peak))
        pv.update_measurement(p=min(pv.setpoint_p, pprod), pprod=pprod)

        # Site consumption as a share of the allowed draw
        self.load = -self.rng.uniform(*self.load_fraction) * abs(self.ems.pmax_site)
        poc = pv.p + ess.p + self.load
        self.ems.poc.record(poc)

        self._steps += 1
        self.logger.debug(
            f"step={self._steps} poc={poc:.2f} load={self.load:.2f} "
            f"pv={pv.p:.2f} pprod={pv.pprod:.2f} ess={ess.p:.2f} e={ess.e:.2f}"
        )
        return poc

    def run(self, steps: int) -> List[DecisionEvent]:
        """Alternate simulation steps and EMS decisions."""
        events = []
        for _ in range(steps):
            self.step()
            events.append(self.ems.run_cycle())
        return events
