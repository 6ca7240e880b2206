"""
Unit tests for the seeded series generator.

Tests verify:
1. Bit-for-bit determinism for a fixed seed and tick sequence
2. Clamping of every emitted value to [min, max]
3. History back-fill and buffer bounds
4. Start/stop lifecycle and live parameter updates
5. Fault overlay contribution (isolated against an unfaulted twin)
"""

import numpy as np
import pytest

from robot_telemetry_sim.core.faults.fault_effects import FaultEffect
from robot_telemetry_sim.core.telemetry.series_generator import (
    SeededGaussian,
    SeriesConfig,
    SeriesGenerator,
)
from robot_telemetry_sim.core.telemetry.tick_scheduler import ManualTickScheduler

T0 = 1_700_000_000.0


def temperature_config(**overrides):
    params = dict(metric='temperature', start_value=40.0, min_value=20.0, max_value=90.0,
                  noise=0.5, trend=0.05, period=300.0, interval_s=1.0, max_points=120,
                  seed=42)
    params.update(overrides)
    return SeriesConfig(**params)


def values(gen):
    return [p.value for p in gen.get_series()]


class NoLoopScheduler(ManualTickScheduler):
    """Virtual clock whose timer registration always fails."""

    def call_every(self, interval, callback):
        raise RuntimeError("no running event loop")


@pytest.fixture
def ticks():
    return ManualTickScheduler(start_time=T0)


class TestSeededGaussian:
    """Test the Box-Muller noise source."""

    def test_deterministic(self):
        a, b = SeededGaussian(7), SeededGaussian(7)
        assert [a.gaussian() for _ in range(50)] == [b.gaussian() for _ in range(50)]

    def test_standard_normal_moments(self):
        rng = SeededGaussian(123)
        samples = np.array([rng.gaussian() for _ in range(20000)])

        assert abs(samples.mean()) < 0.05
        assert abs(samples.std() - 1.0) < 0.05
        assert np.all(np.isfinite(samples))

    def test_uniform_range(self):
        rng = SeededGaussian(1)
        samples = [rng.uniform() for _ in range(1000)]
        assert all(0.0 <= u < 1.0 for u in samples)


class TestSeriesConfig:
    """Test configuration validation."""

    def test_inverted_bounds_rejected(self, ticks):
        with pytest.raises(ValueError):
            SeriesGenerator(temperature_config(min_value=50.0, max_value=10.0), ticks)

    def test_non_positive_interval_rejected(self, ticks):
        with pytest.raises(ValueError):
            SeriesGenerator(temperature_config(interval_s=0.0), ticks)

    def test_dict_round_trip(self):
        config = temperature_config()
        assert SeriesConfig.from_dict(config.to_dict()) == config


class TestDeterminism:
    """Test reproducibility."""

    def test_same_seed_same_series(self):
        """Two generators with the same seed and tick instants agree exactly."""
        runs = []
        for _ in range(2):
            ticks = ManualTickScheduler(start_time=T0)
            gen = SeriesGenerator(temperature_config(), ticks)
            gen.start()
            ticks.advance(30.0)
            runs.append(gen.get_series())

        assert runs[0] == runs[1]

    def test_different_seed_differs(self, ticks):
        a = SeriesGenerator(temperature_config(seed=1), ticks)
        b = SeriesGenerator(temperature_config(seed=2), ticks)
        a.start()
        b.start()

        assert values(a) != values(b)

    def test_reset_replays_from_start(self, ticks):
        """reset() restores level, RNG and buffer."""
        gen = SeriesGenerator(temperature_config(), ticks)
        first = [gen.tick(T0 + i).value for i in range(1, 6)]

        gen.reset(origin=T0)
        again = [gen.tick(T0 + i).value for i in range(1, 6)]

        assert first == again
        assert len(gen.get_series()) == 5

    def test_rounding(self, ticks):
        gen = SeriesGenerator(temperature_config(decimals=2), ticks)
        gen.start()
        assert all(round(v, 2) == v for v in values(gen))


class TestClamping:
    """Test that emitted values stay within bounds."""

    def test_large_positive_overlay_clamped(self, ticks):
        effect = FaultEffect('CUSTOM', T0 - 1000, T0 + 1000, {'temperatureDelta': 1000})
        gen = SeriesGenerator(temperature_config(), ticks, fault_effects=[effect])

        gen.start()
        ticks.advance(10.0)

        assert set(values(gen)) == {90.0}

    def test_large_negative_overlay_clamped(self, ticks):
        effect = FaultEffect('CUSTOM', T0 - 1000, T0 + 1000, {'temperatureDelta': -1000})
        gen = SeriesGenerator(temperature_config(), ticks, fault_effects=[effect])

        gen.start()

        assert set(values(gen)) == {20.0}

    def test_noise_clamped(self, ticks):
        """Heavy noise never escapes the bounds."""
        gen = SeriesGenerator(temperature_config(noise=50.0, max_points=500), ticks)
        for i in range(500):
            gen.tick(T0 + i)

        series = np.array(values(gen))
        assert series.min() >= 20.0
        assert series.max() <= 90.0

    def test_overlay_not_fed_back(self, ticks):
        """Removing a saturating fault returns output to the base level."""
        effect = FaultEffect('CUSTOM', T0 - 1000, T0 + 1000, {'temperatureDelta': 1000})
        gen = SeriesGenerator(temperature_config(), ticks, fault_effects=[effect])
        gen.start()

        gen.set_fault_effects([])
        point = gen.tick()

        assert point.value < 90.0
        assert gen.value < 90.0


class TestBackfill:
    """Test history synthesis on start."""

    def test_full_window(self, ticks):
        gen = SeriesGenerator(temperature_config(), ticks)

        gen.start()

        series = gen.get_series()
        assert len(series) == 120
        assert series[0].timestamp == T0 - 120
        assert series[-1].timestamp == T0 - 1

    def test_limited_by_max_points(self, ticks):
        gen = SeriesGenerator(temperature_config(max_points=50), ticks)

        gen.start()

        series = gen.get_series()
        assert len(series) == 50
        assert series[0].timestamp == T0 - 50
        assert series[-1].timestamp == T0 - 1

    def test_limited_by_interval(self, ticks):
        gen = SeriesGenerator(temperature_config(interval_s=2.0), ticks)

        gen.start()

        series = gen.get_series()
        assert len(series) == 60
        assert np.allclose(np.diff([p.timestamp for p in series]), 2.0)
        assert gen.backfill_count() == 60

    def test_buffer_stays_bounded(self, ticks):
        gen = SeriesGenerator(temperature_config(max_points=50), ticks)
        gen.start()

        ticks.advance(25.0)

        series = gen.get_series()
        assert len(series) == 50
        assert series[-1].timestamp == T0 + 25

    def test_start_time_is_origin(self, ticks):
        ticks.advance(7.0)
        gen = SeriesGenerator(temperature_config(), ticks)
        ticks.advance(3.0)

        gen.start()

        assert gen.start_time == T0 + 10


class TestLifecycle:
    """Test start/stop semantics."""

    def test_start_is_idempotent(self, ticks):
        gen = SeriesGenerator(temperature_config(), ticks)
        gen.start()
        ticks.advance(3.0)
        before = gen.get_series()

        gen.start()

        assert gen.get_series() == before
        assert ticks.pending_timers == 1

    def test_start_without_timer_leaves_buffer_empty(self):
        """If the timer cannot be registered, start() fails before back-filling."""
        gen = SeriesGenerator(temperature_config(), NoLoopScheduler(start_time=T0))

        with pytest.raises(RuntimeError):
            gen.start()

        assert gen.get_series() == ()
        assert not gen.is_running

    def test_default_scheduler_outside_loop(self):
        gen = SeriesGenerator(temperature_config())

        with pytest.raises(RuntimeError):
            gen.start()

        assert gen.get_series() == ()
        assert not gen.is_running

    def test_ticks_once_per_interval(self, ticks):
        gen = SeriesGenerator(temperature_config(interval_s=0.5, max_points=1000), ticks)
        gen.start()
        n = len(gen.get_series())

        ticks.advance(5.0)

        assert len(gen.get_series()) == n + 10

    def test_stop_halts_ticks(self, ticks):
        gen = SeriesGenerator(temperature_config(), ticks)
        gen.start()
        ticks.advance(2.0)

        gen.stop()
        gen.stop()
        frozen = gen.get_series()
        ticks.advance(10.0)

        assert not gen.is_running
        assert gen.get_series() == frozen
        assert ticks.pending_timers == 0

    def test_restart_rebuilds_history(self, ticks):
        gen = SeriesGenerator(temperature_config(), ticks)
        gen.start()
        gen.stop()
        ticks.advance(500.0)

        gen.start()

        assert gen.get_series()[-1].timestamp == T0 + 499

    def test_get_series_is_snapshot(self, ticks):
        gen = SeriesGenerator(temperature_config(), ticks)
        gen.start()
        snapshot = gen.get_series()

        ticks.advance(1.0)

        assert isinstance(snapshot, tuple)
        assert snapshot[-1].timestamp == T0 - 1
        assert gen.get_series()[-1].timestamp == T0 + 1

    def test_series_array(self, ticks):
        gen = SeriesGenerator(temperature_config(), ticks)
        assert gen.get_series_array().shape == (0, 2)

        gen.start()

        arr = gen.get_series_array()
        assert arr.shape == (120, 2)
        assert arr[-1, 0] == T0 - 1

    def test_reentrant_tick_ignored(self, ticks):
        """A tick triggered from inside a tick is dropped."""
        gen = SeriesGenerator(temperature_config(), ticks)
        nested = []

        class Probe:
            def to_effect(self):
                nested.append(gen.tick())
                return FaultEffect('CUSTOM', 0.0, 1.0)

        gen.set_fault_effects([Probe()])
        gen.tick(T0)

        assert nested == [None]
        assert len(gen.get_series()) == 1


class TestLiveUpdates:
    """Test seed, parameter and fault effect updates."""

    def test_set_seed_keeps_level_and_buffer(self, ticks):
        """After a reseed, twins with equal history and seed stay equal."""
        a = SeriesGenerator(temperature_config(), ticks)
        b = SeriesGenerator(temperature_config(), ticks)
        for i in range(3):
            a.tick(T0 + i)
            b.tick(T0 + i)
        level = a.value

        a.set_seed(7)
        b.set_seed(7)

        assert a.value == level
        assert len(a.get_series()) == 3
        assert a.config.seed == 7
        assert [a.tick(T0 + 10 + i).value for i in range(5)] == \
            [b.tick(T0 + 10 + i).value for i in range(5)]

    def test_set_seed_changes_sequence(self, ticks):
        a = SeriesGenerator(temperature_config(), ticks)
        b = SeriesGenerator(temperature_config(), ticks)

        a.set_seed(1234)

        assert [a.tick(T0 + i).value for i in range(5)] != \
            [b.tick(T0 + i).value for i in range(5)]

    def test_update_params_merges(self, ticks):
        gen = SeriesGenerator(temperature_config(), ticks)

        gen.update_params({'noise': 0.1}, max_value=80.0)

        assert gen.config.noise == 0.1
        assert gen.config.max_value == 80.0
        assert gen.config.min_value == 20.0

    def test_update_params_invalid_keeps_config(self, ticks):
        gen = SeriesGenerator(temperature_config(), ticks)
        before = gen.config

        with pytest.raises(ValueError):
            gen.update_params(min_value=100.0)
        with pytest.raises(ValueError):
            gen.update_params({'colour': 'red'})

        assert gen.config == before

    def test_update_params_applies_next_tick(self, ticks):
        """Tightened bounds clamp the very next point."""
        gen = SeriesGenerator(temperature_config(), ticks)
        gen.start()

        gen.update_params(min_value=70.0)
        ticks.advance(1.0)

        assert gen.get_series()[-1].value >= 70.0

    def test_set_fault_effects_replaces(self, ticks):
        gen = SeriesGenerator(temperature_config(), ticks)
        first = FaultEffect('SENSOR_DRIFT', T0, T0 + 10)
        second = FaultEffect('OVERHEAT', T0, T0 + 10)

        gen.set_fault_effects([first])
        gen.set_fault_effects([second])

        assert gen.fault_effects == (second,)


class TestFaultOverlay:
    """Test fault contribution isolated against an unfaulted twin."""

    def test_overheat_contribution_after_ramp(self, ticks):
        """OVERHEAT deltaC=25, rampSeconds=20 adds 23.76 after 20 s."""
        overheat = FaultEffect('OVERHEAT', T0, T0 + 120, {'deltaC': 25, 'rampSeconds': 20})
        faulted = SeriesGenerator(temperature_config(), ticks, fault_effects=[overheat])
        clean = SeriesGenerator(temperature_config(), ticks)
        faulted.start()
        clean.start()

        ticks.advance(20.0)

        diff = faulted.get_series()[-1].value - clean.get_series()[-1].value
        assert faulted.get_series()[-1].timestamp == T0 + 20
        assert diff == pytest.approx(25 * (1 - np.exp(-3)), abs=2e-4)
        assert round(diff, 2) == 23.76

    def test_backfill_precedes_fault(self, ticks):
        """History before the window start carries no overlay."""
        overheat = FaultEffect('OVERHEAT', T0, T0 + 120, {'deltaC': 25, 'rampSeconds': 20})
        faulted = SeriesGenerator(temperature_config(), ticks, fault_effects=[overheat])
        clean = SeriesGenerator(temperature_config(), ticks)

        faulted.start()
        clean.start()

        assert faulted.get_series() == clean.get_series()

    def test_contribution_vanishes_after_window(self, ticks):
        vib = FaultEffect('HIGH_VIBRATION', T0, T0 + 5, {'rmsDelta': 0.8})
        config = dict(metric='vibration', start_value=0.1, min_value=0.0, max_value=5.0,
                      noise=0.01, trend=0.1)
        faulted = SeriesGenerator(SeriesConfig(**config), ticks, fault_effects=[vib])
        clean = SeriesGenerator(SeriesConfig(**config), ticks)
        faulted.start()
        clean.start()

        ticks.advance(10.0)

        f, c = values(faulted), values(clean)
        assert f[-10] - c[-10] == pytest.approx(0.8, abs=2e-4)
        assert f[-1] == c[-1]

    def test_simultaneous_faults_add(self, ticks):
        """Overlay equals the sum of the isolated contributions."""
        config = dict(metric='current', start_value=2.5, min_value=0.0, max_value=15.0,
                      noise=0.05, trend=0.05)
        heat = FaultEffect('OVERHEAT', T0, T0 + 120, {'deltaC': 25, 'rampSeconds': 20})
        spike = FaultEffect('CURRENT_SPIKE', T0, T0 + 60, {'amplitude': 2, 'widthSeconds': 8})

        gens = {
            name: SeriesGenerator(SeriesConfig(**config), ticks, fault_effects=effects)
            for name, effects in (('clean', []), ('heat', [heat]), ('spike', [spike]),
                                  ('both', [heat, spike]))
        }
        for gen in gens.values():
            gen.start()
        ticks.advance(12.0)

        last = {name: gen.get_series()[-1].value for name, gen in gens.items()}
        expected = last['clean'] + (last['heat'] - last['clean']) + (last['spike'] - last['clean'])
        assert last['both'] == pytest.approx(expected, abs=3e-4)
