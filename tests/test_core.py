"""
Test suite for the EMS controller.

This test suite validates:
- Threshold narrowing and regime classification
- Waterfall allocation across PV and ESS
- Redistribution between PV and ESS at constant POC
- The decision cycle and the periodic loop
"""

import sys
from pathlib import Path
import threading
import time
import unittest
from unittest import mock

# Add the src directory to the path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from ems.core import EnergyManagementSystem, SiteThresholds
from ems.events import EventType, Regime
from ems.exceptions import EMSError, GridCoverageError, ValidationRangeError
from ems.grid import GridConnection
from ems.resources import AdjustmentStatus, EnergyStorage, PVInverter


def make_ems(poc=-500.0, pv=None, ess=None, pmax_site=-1000.0, meter=None,
             pv_actuator=None, ess_actuator=None):
    """Build a controller around a 50 kWp PV plant and a 200 kWh battery."""
    pv_params = {"p": 0.0, "pprod": 30.0, "peak": 50.0}
    pv_params.update(pv or {})
    ess_params = {"p": 0.0, "pmax_ch": -40.0, "pmax_disch": 40.0, "e": 100.0, "capacity": 200.0}
    ess_params.update(ess or {})
    return EnergyManagementSystem(
        pv=PVInverter(actuator=pv_actuator, **pv_params),
        ess=EnergyStorage(actuator=ess_actuator, **ess_params),
        poc=GridConnection(p=poc, meter=meter),
        pmax_site=pmax_site
    )


class TestSiteThresholds(unittest.TestCase):

    def setUp(self):
        self.thresholds = SiteThresholds.from_pmax_site(-1000.0, 0.1)

    def test_margin_narrows_limits(self):
        self.assertAlmostEqual(self.thresholds.pmax_effective, -900.0)
        self.assertAlmostEqual(self.thresholds.pmin, -90.0)

    def test_classification(self):
        self.assertEqual(self.thresholds.classify(-950.0), Regime.OVER_THRESHOLD)
        self.assertEqual(self.thresholds.classify(-500.0), Regime.NORMAL)
        self.assertEqual(self.thresholds.classify(-900.0), Regime.NORMAL)
        self.assertEqual(self.thresholds.classify(-90.0), Regime.NORMAL)
        self.assertEqual(self.thresholds.classify(-50.0), Regime.UNDER_THRESHOLD)
        self.assertEqual(self.thresholds.classify(10.0), Regime.UNDER_THRESHOLD)

    def test_corrective_amounts(self):
        self.assertAlmostEqual(self.thresholds.excess_draw(-950.0), 50.0)
        self.assertAlmostEqual(self.thresholds.missing_draw(-50.0), -40.0)
        self.assertAlmostEqual(self.thresholds.missing_draw(10.0), -100.0)

    def test_invalid_limits(self):
        with self.assertRaises(ValidationRangeError):
            SiteThresholds.from_pmax_site(1000.0)
        with self.assertRaises(ValidationRangeError):
            SiteThresholds.from_pmax_site(-1000.0, margin=1.0)


class TestSiteDischarge(unittest.TestCase):
    """Test suite for the corrective waterfalls."""

    def test_increase_pv_first_then_ess(self):
        ems = make_ems()
        results = ems.increase_site_discharge(50.0)

        self.assertEqual(len(results), 2)
        self.assertAlmostEqual(results[0].remaining, 20.0)
        self.assertTrue(results[1].satisfied)
        self.assertAlmostEqual(ems.pv.setpoint_p, 30.0)
        self.assertAlmostEqual(ems.ess.setpoint_p, 20.0)

    def test_increase_covered_by_pv_alone(self):
        ems = make_ems()
        results = ems.increase_site_discharge(10.0)
        self.assertEqual(len(results), 1)
        self.assertAlmostEqual(ems.pv.setpoint_p, 10.0)
        self.assertEqual(ems.ess.setpoint_p, 0.0)

    def test_increase_shortfall_conserves_allocation(self):
        ems = make_ems()
        with self.assertRaises(GridCoverageError) as ctx:
            ems.increase_site_discharge(100.0)

        self.assertAlmostEqual(ctx.exception.required, 30.0)
        delta_pv = ems.pv.setpoint_p - ems.pv.p
        delta_ess = ems.ess.setpoint_p - ems.ess.p
        self.assertAlmostEqual(delta_pv + delta_ess, 100.0 - ctx.exception.required)

    def test_increase_with_empty_battery(self):
        ems = make_ems(pv={"p": 30.0}, ess={"e": 0.0})
        with self.assertRaises(GridCoverageError) as ctx:
            ems.increase_site_discharge(50.0)

        self.assertAlmostEqual(ctx.exception.required, 50.0)
        self.assertEqual(ctx.exception.adjustments[-1].status, AdjustmentStatus.EXHAUSTED)
        self.assertEqual(ems.ess.setpoint_p, 0.0)

    def test_decrease_ess_first(self):
        ems = make_ems(pv={"p": 20.0})
        results = ems.decrease_site_discharge(-40.0)

        self.assertEqual(len(results), 1)
        self.assertAlmostEqual(ems.ess.setpoint_p, -40.0)
        self.assertAlmostEqual(ems.pv.setpoint_p, 20.0)

    def test_decrease_falls_back_to_pv_when_battery_full(self):
        ems = make_ems(pv={"p": 30.0}, ess={"e": 200.0})
        results = ems.decrease_site_discharge(-20.0)

        self.assertTrue(results[0].exhausted)
        self.assertTrue(results[1].satisfied)
        self.assertEqual(ems.ess.setpoint_p, 0.0)
        self.assertAlmostEqual(ems.pv.setpoint_p, 10.0)

    def test_decrease_shortfall(self):
        ems = make_ems(pv={"p": 5.0})
        with self.assertRaises(GridCoverageError) as ctx:
            ems.decrease_site_discharge(-60.0)
        self.assertAlmostEqual(ctx.exception.required, -15.0)

    def test_wrong_signed_amounts_rejected(self):
        ems = make_ems()
        with self.assertRaises(ValidationRangeError):
            ems.increase_site_discharge(-1.0)
        with self.assertRaises(ValidationRangeError):
            ems.decrease_site_discharge(1.0)


class TestBalanceSiteDischarge(unittest.TestCase):
    """Redistribution must never change PV + ESS."""

    def assert_sum_kept(self, ems):
        self.assertAlmostEqual(
            ems.pv.setpoint_p + ems.ess.setpoint_p,
            ems.pv.p + ems.ess.p
        )

    def test_pv_takes_over_battery_discharge(self):
        ems = make_ems(pv={"p": 10.0}, ess={"p": 15.0})
        shifted = ems.balance_site_discharge(-500.0)

        self.assertAlmostEqual(shifted, 15.0)
        self.assertAlmostEqual(ems.pv.setpoint_p, 25.0)
        self.assertAlmostEqual(ems.ess.setpoint_p, 0.0)
        self.assert_sum_kept(ems)

    def test_pv_headroom_limits_the_shift(self):
        ems = make_ems(pv={"p": 25.0}, ess={"p": 15.0})
        shifted = ems.balance_site_discharge(-500.0)

        self.assertAlmostEqual(shifted, 5.0)
        self.assertAlmostEqual(ems.ess.setpoint_p, 10.0)
        self.assert_sum_kept(ems)

    def test_pv_feeds_charging_battery(self):
        ems = make_ems(pv={"p": 10.0}, ess={"p": -10.0})
        shifted = ems.balance_site_discharge(-500.0)

        self.assertAlmostEqual(shifted, 20.0)
        self.assertAlmostEqual(ems.pv.setpoint_p, 30.0)
        self.assertAlmostEqual(ems.ess.setpoint_p, -30.0)
        self.assert_sum_kept(ems)

    def test_charge_headroom_limits_the_shift(self):
        ems = make_ems(pv={"p": 0.0}, ess={"p": -35.0})
        shifted = ems.balance_site_discharge(-500.0)

        self.assertAlmostEqual(shifted, 5.0)
        self.assertAlmostEqual(ems.ess.setpoint_p, -40.0)
        self.assert_sum_kept(ems)

    def test_full_battery_is_left_alone(self):
        ems = make_ems(pv={"p": 10.0}, ess={"p": -10.0, "e": 200.0})
        self.assertEqual(ems.balance_site_discharge(-500.0), 0.0)
        self.assert_sum_kept(ems)

    def test_no_pv_headroom(self):
        ems = make_ems(pv={"p": 30.0}, ess={"p": 15.0})
        self.assertEqual(ems.balance_site_discharge(-500.0), 0.0)
        self.assert_sum_kept(ems)


class TestDecisionCycle(unittest.TestCase):
    """Test suite for one decision cycle."""

    def test_over_threshold_increases_site_discharge(self):
        ems = make_ems(poc=-950.0)
        with mock.patch.object(ems, "increase_site_discharge",
                               wraps=ems.increase_site_discharge) as increase:
            event = ems.run_cycle()

        self.assertAlmostEqual(increase.call_args[0][0], 50.0)
        self.assertEqual(event.type, EventType.SITE_DISCHARGE_INCREASED)
        self.assertEqual(event.regime, Regime.OVER_THRESHOLD)
        self.assertTrue(event.success)
        self.assertAlmostEqual(event.pv_setpoint, 30.0)
        self.assertAlmostEqual(event.ess_setpoint, 20.0)

    def test_under_threshold_decreases_site_discharge(self):
        ems = make_ems(poc=-50.0)
        event = ems.run_cycle()

        self.assertEqual(event.type, EventType.SITE_DISCHARGE_DECREASED)
        self.assertAlmostEqual(event.requested, -40.0)
        self.assertAlmostEqual(ems.ess.setpoint_p, -40.0)

    def test_shortfall_is_logged_not_raised(self):
        pv_actuator = mock.Mock()
        ess_actuator = mock.Mock()
        ems = make_ems(poc=-1100.0, pv_actuator=pv_actuator, ess_actuator=ess_actuator)

        with self.assertLogs("ems.controller", level="ERROR") as logs:
            event = ems.run_cycle()

        self.assertEqual(event.type, EventType.COVERAGE_SHORTFALL)
        self.assertFalse(event.success)
        self.assertAlmostEqual(event.uncovered, 130.0)
        self.assertIn("event=coverage_shortfall", logs.output[0])
        # Partial coverage still reaches the assets
        pv_actuator.assert_called_once_with(30.0)
        ess_actuator.assert_called_once_with(40.0)

    def test_exhausted_battery_logged_as_warning(self):
        ems = make_ems(poc=-50.0, pv={"p": 45.0, "pprod": 50.0}, ess={"e": 200.0})
        with self.assertLogs("ems.controller", level="WARNING") as logs:
            event = ems.run_cycle()

        self.assertTrue(event.success)
        self.assertEqual(event.exhausted, ["ess"])
        self.assertIn("exhausted=ess", logs.output[0])

    def test_normal_band_balances_energy(self):
        ems = make_ems(poc=-500.0, pv={"p": 10.0})
        event = ems.run_cycle()

        self.assertEqual(event.type, EventType.ENERGY_BALANCED)
        self.assertAlmostEqual(event.details["pv_delta"], 20.0)
        self.assertEqual(event.details["ess_delta"], 0.0)
        self.assertAlmostEqual(event.details["poc_estimate"], -480.0)
        self.assertAlmostEqual(ems.pv.setpoint_p, 30.0)

    def test_pv_delta_is_folded_into_battery_decision(self):
        # 640 kW drawn is above 70% of 900 kW, 620 kW is not
        ems = make_ems(poc=-640.0, pv={"p": 10.0}, ess={"e": 180.0})
        event = ems.run_cycle()

        self.assertAlmostEqual(event.details["pv_delta"], 20.0)
        self.assertEqual(event.details["ess_delta"], 0.0)
        self.assertEqual(ems.ess.setpoint_p, 0.0)

    def test_battery_discharges_when_site_is_busy(self):
        ems = make_ems(poc=-800.0, pv={"p": 30.0}, ess={"e": 180.0})
        event = ems.run_cycle()

        self.assertEqual(event.details["pv_delta"], 0.0)
        self.assertAlmostEqual(event.details["ess_delta"], 2.0)
        self.assertAlmostEqual(event.details["poc_estimate"], -798.0)

    def assert_commanded_change(self, ems, event):
        commanded = (ems.pv.setpoint_p + ems.ess.setpoint_p) - (ems.pv.p + ems.ess.p)
        self.assertAlmostEqual(commanded, event.details["pv_delta"] + event.details["ess_delta"])
        self.assertAlmostEqual(event.details["poc_estimate"], event.poc + commanded)

    def test_battery_nudge_builds_on_redistribution(self):
        ems = make_ems(poc=-800.0, pv={"p": 10.0}, ess={"p": 15.0, "e": 180.0})
        event = ems.run_cycle()

        self.assertAlmostEqual(event.details["shifted"], 15.0)
        self.assertEqual(event.details["pv_delta"], 0.0)
        self.assertAlmostEqual(event.details["ess_delta"], 2.0)
        self.assertAlmostEqual(ems.pv.setpoint_p, 25.0)
        self.assertAlmostEqual(ems.ess.setpoint_p, 2.0)
        self.assertAlmostEqual(event.details["poc_estimate"], -798.0)
        self.assert_commanded_change(ems, event)

    def test_pv_nudge_builds_on_redistribution(self):
        ems = make_ems(poc=-500.0, pv={"p": 10.0}, ess={"p": 15.0})
        event = ems.run_cycle()

        self.assertAlmostEqual(event.details["shifted"], 15.0)
        self.assertAlmostEqual(event.details["pv_delta"], 5.0)
        self.assertEqual(event.details["ess_delta"], 0.0)
        self.assertAlmostEqual(ems.pv.setpoint_p, 30.0)
        self.assertAlmostEqual(ems.ess.setpoint_p, 0.0)
        self.assert_commanded_change(ems, event)

    def test_cycle_error_is_contained(self):
        ems = make_ems(poc=-500.0)
        with mock.patch.object(ems.ess, "balance_energy", side_effect=EMSError("boom")):
            with self.assertLogs("ems.controller", level="ERROR"):
                event = ems.run_cycle()

        self.assertEqual(event.type, EventType.CYCLE_FAILED)
        self.assertEqual(event.details["error"], "boom")

    def test_meter_is_read_each_cycle(self):
        readings = iter([-950.0, -500.0])
        ems = make_ems(meter=lambda: next(readings))

        self.assertEqual(ems.run_cycle().regime, Regime.OVER_THRESHOLD)
        self.assertEqual(ems.run_cycle().regime, Regime.NORMAL)
        self.assertEqual(ems.poc.p, -500.0)

    def test_setpoints_applied_once_per_cycle(self):
        pv_actuator = mock.Mock()
        ess_actuator = mock.Mock()
        ems = make_ems(poc=-950.0, pv_actuator=pv_actuator, ess_actuator=ess_actuator)
        ems.run_cycle()

        pv_actuator.assert_called_once_with(30.0)
        ess_actuator.assert_called_once_with(20.0)

    def test_history_and_metrics(self):
        ems = make_ems(poc=-500.0, pv={"p": 10.0})
        ems.run_cycle()

        self.assertEqual(len(ems.get_decision_history()), 1)
        metrics = ems.get_metrics()
        self.assertEqual(metrics["cycles"], 1)
        self.assertEqual(metrics["failures"], 0)
        self.assertAlmostEqual(metrics["pload"], -510.0)

    def test_invalid_controller_settings(self):
        with self.assertRaises(ValidationRangeError):
            make_ems(pmax_site=1000.0)
        with self.assertRaises(ValidationRangeError):
            EnergyManagementSystem(
                pv=PVInverter(p=0.0, pprod=0.0, peak=1.0),
                ess=EnergyStorage(p=0.0, pmax_ch=-1.0, pmax_disch=1.0, e=0.0, capacity=1.0),
                poc=GridConnection(),
                pmax_site=-10.0,
                period=0.0
            )


class TestServe(unittest.TestCase):
    """Test suite for the periodic decision loop."""

    def test_stops_after_current_tick(self):
        ems = make_ems(poc=-500.0)
        stop_event = threading.Event()
        calls = []

        def pre_cycle():
            calls.append(1)
            if len(calls) == 3:
                stop_event.set()

        with mock.patch.object(ems, "run_cycle", wraps=ems.run_cycle) as run_cycle:
            ems.serve(stop_event, period=0.001, pre_cycle=pre_cycle)

        self.assertEqual(len(calls), 3)
        self.assertEqual(run_cycle.call_count, 3)

    def test_already_cancelled(self):
        ems = make_ems()
        stop_event = threading.Event()
        stop_event.set()

        with mock.patch.object(ems, "run_cycle") as run_cycle:
            ems.serve(stop_event, period=0.001)

        run_cycle.assert_not_called()

    def test_unexpected_errors_do_not_stop_the_loop(self):
        ems = make_ems()
        stop_event = threading.Event()
        calls = []

        def pre_cycle():
            calls.append(1)
            if len(calls) == 2:
                stop_event.set()
            raise RuntimeError("driver offline")

        with self.assertLogs("ems.controller", level="ERROR"):
            ems.serve(stop_event, period=0.001, pre_cycle=pre_cycle)

        self.assertEqual(len(calls), 2)
        self.assertEqual(ems.get_metrics()["failures"], 2)

    def test_runs_in_background_thread(self):
        ems = make_ems(poc=-500.0, pv={"p": 10.0})
        stop_event = threading.Event()
        thread = threading.Thread(target=ems.serve, args=(stop_event, 0.001), daemon=True)
        thread.start()

        # Wait for at least one decision
        for _ in range(1000):
            if ems.get_decision_history():
                break
            time.sleep(0.001)

        stop_event.set()
        thread.join(timeout=5.0)
        self.assertFalse(thread.is_alive())
        self.assertGreater(len(ems.get_decision_history()), 0)


if __name__ == "__main__":
    unittest.main()
