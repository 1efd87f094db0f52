"""
Basic usage example of the Energy Management System library.
This example demonstrates:
- Building the controller from a site configuration
- Running decision cycles against the simulated site
- Reading decision events and metrics
"""

from pathlib import Path

from ems import EnergyManagementSystem, EMSConfig
from ems.simulation import SiteSimulator


def main():
    config = EMSConfig.load_from_file(Path(__file__).parent / "site.yaml")
    config.check()
    config.setup_logging()

    ems = EnergyManagementSystem.from_config(config)
    print(f"Effective PMaxSite: {ems.thresholds.pmax_effective:.1f} kW")
    print(f"Minimum draw: {ems.thresholds.pmin:.1f} kW")

    simulator = SiteSimulator(ems, seed=config.simulation.seed,
                              load_fraction=(0.2, 1.1))

    print("\nRunning 20 decision cycles...")
    for event in simulator.run(20):
        status = "ok" if event.success else "FAILED"
        print(f"{event.regime.value:>16} poc={event.poc:8.2f} "
              f"pv={event.pv_setpoint:6.2f} ess={event.ess_setpoint:6.2f} {status}")

    metrics = ems.get_metrics()
    print(f"\nCycles: {metrics['cycles']}, failures: {metrics['failures']}")
    print(f"Battery state of charge: {metrics['ess']['state_of_charge']:.1f}%")


if __name__ == "__main__":
    main()
