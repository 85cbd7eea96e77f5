"""Tests for pops_sim.model: engine state machine and end-to-end scenarios."""

import numpy as np
import pandas as pd
import pytest

from pops_sim.config import default_config, validate_config
from pops_sim.date import Date
from pops_sim.gridio import MemoryGridStore
from pops_sim.model import EngineState, SimulationEngine, run_simulation, series_name
from pops_sim.spread_rate import write_spread_rate
from pops_sim.steering import SteeringCommand


# ─── Helpers ──────────────────────────────────────────────────────────

SHAPE = (10, 10)
HOSTS = 100


def _store(extra=None):
    host = np.full(SHAPE, HOSTS, dtype=np.int64)
    infected = np.zeros(SHAPE, dtype=np.int64)
    infected[5, 5] = 1
    grids = {'host': host, 'total_plants': host.copy(), 'infected': infected}
    grids.update(extra or {})
    return MemoryGridStore(grids)


def _config(runs=1, **output):
    config = default_config()
    config.simulation.start_year = 2016
    config.simulation.end_year = 2018
    config.simulation.step = 'month'
    config.simulation.season = [1, 12]
    config.simulation.runs = runs
    config.simulation.seed = 42
    config.dispersal.natural_kernel = 'exponential'
    config.dispersal.natural_scale = 2.0
    config.dispersal.reproductive_rate = 0.3
    config.steering.idle_interval = 0.0
    for key, value in output.items():
        setattr(config.output, key, value)
    validate_config(config)
    return config


def _paused_engine(config, store=None):
    """Engine paused at the start date, as under steering."""
    engine = SimulationEngine(config, store or _store())
    engine.handle_command(SteeringCommand.pause())
    assert not engine.advancing
    return engine


def _step_year(engine):
    engine.handle_command(SteeringCommand.step_forward())
    engine.advance()


def _grids(engine):
    return [(run.susceptible.copy(), run.infected.copy(), run.cohorts.copy())
            for run in engine.runner.runs]


def _assert_same(a, b):
    assert len(a) == len(b)
    for left, right in zip(a, b):
        for x, y in zip(left, right):
            np.testing.assert_array_equal(x, y)


class FakeChannel:
    """In-process stand-in for SteeringChannel."""

    def __init__(self, commands):
        self.commands = list(commands)
        self.sent = []
        self.started = False
        self.closed = False

    def start(self):
        self.started = True

    def poll(self):
        return self.commands.pop(0) if self.commands else None

    def send(self, text):
        self.sent.append(text)
        if text.startswith("info:last:"):
            self.commands.append(SteeringCommand.stop())

    def close(self):
        self.closed = True


# ─── Basic scenario ───────────────────────────────────────────────────

class TestBasicScenario:
    def test_spreads_within_host_bounds(self):
        result = run_simulation(_config(), _store())
        assert result.infected[0].sum() > 0
        total = result.infected[0] + result.susceptible[0]
        assert (total <= HOSTS).all()
        assert (result.infected[0] >= 0).all()
        assert (result.susceptible[0] >= 0).all()

    def test_same_seed_same_result(self):
        a = run_simulation(_config(runs=2), _store())
        b = run_simulation(_config(runs=2), _store())
        for x, y in zip(a.infected, b.infected):
            np.testing.assert_array_equal(x, y)

    def test_runs_to_end(self):
        result = run_simulation(_config(), _store())
        assert not result.all_infected
        assert result.years_completed == 3
        assert result.steps == 36
        assert result.final_date == Date(2018, 12, 31)

    def test_mass_never_created_at_checkpoints(self):
        engine = SimulationEngine(_config(runs=2), _store())
        engine.advance()
        for index in range(engine.checkpoints.last_index + 1):
            checkpoint = engine.checkpoints.load(index)
            for s, i in zip(checkpoint.susceptible, checkpoint.infected):
                assert (s + i <= HOSTS).all()

    def test_generated_seed(self):
        config = _config()
        config.simulation.seed = None
        config.simulation.generate_seed = True
        engine = SimulationEngine(config, _store())
        assert 0 <= engine.seed < 2 ** 32
        assert engine.runner.runs[0].seed == engine.seed

    def test_grid_shape_mismatch(self):
        store = _store({'infected': np.zeros((3, 3), dtype=np.int64)})
        with pytest.raises(ValueError, match="shape"):
            SimulationEngine(_config(), store)


class TestOutputs:
    def test_series_and_final_outputs(self):
        store = _store()
        config = _config(runs=2, output_series='inf', probability_series='prob',
                         stddev_series='sd', probability='prob_final', stddev='sd_final')
        result = run_simulation(config, store)
        assert not result.all_infected
        for year in (2016, 2017, 2018):
            assert f'inf_{year}_12_31' in store.written
            assert f'prob_{year}_12_31' in store.written
            assert f'sd_{year}_12_31' in store.written
        assert 'infected_average' in store.written
        assert 'prob_final' in store.written
        title, date = store.metadata['inf_2017_12_31']
        assert date == Date(2017, 12, 31)
        assert 'Average' in title
        prob = store.grids['prob_final']
        assert prob.min() >= 0 and prob.max() <= 100

    def test_series_name(self):
        assert series_name('inf', Date(2016, 3, 7)) == 'inf_2016_03_07'

    def test_weekly_series_dated_in_their_own_year(self):
        store = _store()
        config = _config(output_series='inf')
        config.simulation.step = 'week'
        config.simulation.end_year = 2017
        config.dispersal.reproductive_rate = 0.05
        result = run_simulation(config, store)
        assert not result.all_infected
        # the last week of each year starts in late December and is cut at Dec 31
        series = [name for name in store.written if name.startswith('inf_')]
        assert series == ['inf_2016_12_31', 'inf_2017_12_31']
        assert store.metadata['inf_2017_12_31'][1] == Date(2017, 12, 31)
        assert result.final_date == Date(2017, 12, 31)

    def test_outside_events_written(self):
        store = _store()
        config = _config(outside_spores='outside')
        config.dispersal.natural_kernel = 'cauchy'
        config.dispersal.natural_scale = 50.0
        result = run_simulation(config, store)
        assert store.points['outside'] == result.outside_events
        assert len(result.outside_events) > 0
        assert all(run == 1 for run, _, _ in result.outside_events)

    def test_single_run_series(self):
        store = _store()
        config = _config(runs=3, output_series='inf', series_as_single_run=True)
        engine = SimulationEngine(config, store)
        engine.advance()
        assert not engine.all_infected
        np.testing.assert_array_equal(store.grids['inf_2018_12_31'],
                                      engine.runner.runs[0].infected)

    def test_weather_zero_stops_spread(self):
        extra = {'zero': np.zeros(SHAPE)}
        config = _config()
        config.weather.weather_coefficients = ['zero'] * 36
        result = run_simulation(config, _store(extra))
        assert result.infected[0].sum() == 1

    def test_moisture_times_temperature(self):
        extra = {'wet': np.ones(SHAPE), 'cold': np.zeros(SHAPE)}
        config = _config()
        config.weather.moisture_coefficients = ['wet'] * 36
        config.weather.temperature_coefficients = ['cold'] * 36
        result = run_simulation(config, _store(extra))
        assert result.infected[0].sum() == 1

    def test_no_weather_reads_no_coefficients(self):
        engine = SimulationEngine(_config(), _store())
        assert not engine.config.weather.use_weather
        assert engine._weather_coefficient(0) is None

    def test_missing_weather_coefficient(self):
        config = _config()
        config.weather.weather_coefficients = ['one'] * 5
        with pytest.raises(RuntimeError, match="weather coefficient"):
            run_simulation(config, _store({'one': np.ones(SHAPE)}))

    def test_not_enough_temperatures(self):
        config = _config()
        config.weather.temperatures = ['t2016']
        config.weather.lethal_temperature = -30.0
        config.weather.lethal_month = 1
        engine = SimulationEngine(config, _store({'t2016': np.zeros(SHAPE)}))
        with pytest.raises(RuntimeError, match="Not enough temperatures"):
            engine.advance()
        assert engine.checkpoints.last_index == 1


# ─── Treatments & mortality ───────────────────────────────────────────

class TestTreatments:
    def test_all_infected_in_cell_in_year_two(self):
        treated = np.zeros(SHAPE)
        treated[:, :5] = 1.0
        config = _config()
        config.simulation.season = [1, 11]
        config.treatments.grids = ['treatment']
        config.treatments.years = [2017]
        config.treatments.month = 12
        config.treatments.application = 'all_infected_in_cell'
        engine = SimulationEngine(config, _store({'treatment': treated}))
        engine.advance()
        after_year_two = engine.checkpoints.load(2)
        assert after_year_two.infected[0][:, :5].sum() == 0
        assert after_year_two.infected[0][:, 5:].sum() > 0

    def test_load_data_replaces_future_treatments(self):
        engine = _paused_engine(_config(), _store({'t': np.ones(SHAPE), 'u': np.zeros(SHAPE)}))
        engine.treatments.add_treatment(2018, np.ones(SHAPE))
        engine.handle_command(SteeringCommand.load_data(2017, 't'))
        assert engine.treatments.years() == [2017]
        engine.handle_command(SteeringCommand.load_data(2016, 'u'))
        assert engine.treatments.years() == [2016]


class TestMortality:
    def test_disabled_cohorts_never_decrease(self):
        engine = _paused_engine(_config(runs=2))
        previous = None
        for _ in range(3):
            _step_year(engine)
            assert not engine.all_infected
            for run in engine.runner.runs:
                assert run.cohorts.sum() == run.infected.sum() - 1
            current = [run.cohorts.copy() for run in engine.runner.runs]
            if previous is not None:
                for before, after in zip(previous, current):
                    assert (after >= before).all()
            previous = current
        assert engine.accumulated_dead is None

    def test_enabled_removes_hosts(self):
        store = _store()
        config = _config(output_series='inf', mortality_series='dead',
                         series_as_single_run=True)
        config.dispersal.reproductive_rate = 2.0
        config.mortality.enabled = True
        config.mortality.rate = 0.5
        config.mortality.time_lag = 1
        validate_config(config)
        result = run_simulation(config, store)
        assert result.accumulated_dead.sum() > 0
        assert 'dead_2016_12_31' in store.written
        # dead hosts leave both pools
        total = result.infected[0] + result.susceptible[0]
        assert total.sum() == HOSTS * 100 - result.accumulated_dead.sum()


# ─── Steering state machine ───────────────────────────────────────────

class TestStateMachine:
    def test_steered_engine_starts_paused(self):
        engine = SimulationEngine(_config(), _store(), channel=FakeChannel([]))
        assert engine.advance_until == engine.start
        assert not engine.advancing

    def test_step_forward_resolves_one_year(self):
        engine = _paused_engine(_config())
        _step_year(engine)
        assert engine.checkpoints.last_index == 1
        assert engine.current == Date(2017, 1, 1)
        assert engine.current_step == 12
        assert not engine.advancing

    def test_step_back_then_replay_is_identical(self):
        engine = _paused_engine(_config(runs=2))
        _step_year(engine)
        _step_year(engine)
        after_two = _grids(engine)

        engine.handle_command(SteeringCommand.step_back())
        assert engine.checkpoints.last_index == 1
        assert engine.after_restore
        engine.advance()
        assert engine.current == Date(2017, 1, 1)
        assert engine.checkpoints.last_index == 1

        _step_year(engine)
        assert engine.checkpoints.last_index == 2
        _assert_same(_grids(engine), after_two)

    def test_step_back_at_start_is_noop(self):
        engine = _paused_engine(_config())
        engine.handle_command(SteeringCommand.step_back())
        assert engine.current == engine.start
        assert engine.checkpoints.last_index == 0

    def test_step_back_to_initial_state(self):
        engine = _paused_engine(_config())
        initial = _grids(engine)
        _step_year(engine)
        engine.handle_command(SteeringCommand.step_back())
        assert engine.current == engine.start
        assert engine.current_step == 0
        _assert_same(_grids(engine), initial)
        assert not engine.advancing

    def test_goto_backward_restores_checkpoint(self):
        engine = _paused_engine(_config(runs=2))
        _step_year(engine)
        after_one = _grids(engine)
        _step_year(engine)
        engine.handle_command(SteeringCommand.goto(1))
        _assert_same(_grids(engine), after_one)
        assert engine.current == Date(2016, 12, 1)
        assert engine.checkpoints.last_index == 1

    def test_goto_forward_equals_stepping(self):
        jumped = _paused_engine(_config(runs=2))
        jumped.handle_command(SteeringCommand.goto(2))
        assert jumped.advance_until == Date(2017, 12, 31)
        jumped.advance()

        stepped = _paused_engine(_config(runs=2))
        _step_year(stepped)
        _step_year(stepped)

        assert jumped.current == stepped.current == Date(2018, 1, 1)
        _assert_same(_grids(jumped), _grids(stepped))

    def test_goto_out_of_range_is_noop(self):
        engine = _paused_engine(_config())
        engine.handle_command(SteeringCommand.goto(10))
        engine.handle_command(SteeringCommand.goto(-1))
        assert engine.advance_until == engine.start
        assert engine.current == engine.start

    def test_play_and_pause(self):
        engine = _paused_engine(_config())
        engine.handle_command(SteeringCommand.play())
        assert engine.advance_until == engine.end
        engine.handle_command(SteeringCommand.pause())
        assert engine.advance_until == engine.current

    def test_change_name(self):
        store = _store()
        engine = _paused_engine(_config(output_series='inf'), store)
        engine.handle_command(SteeringCommand.change_name('scenario'))
        _step_year(engine)
        assert 'scenario_2016_12_31' in store.written
        assert 'inf_2016_12_31' not in store.written

    def test_stop(self):
        engine = _paused_engine(_config())
        engine.handle_command(SteeringCommand.stop())
        assert engine.state is EngineState.STOPPED
        assert engine.stopped

    def test_sync_runs(self, tmp_path):
        csv = tmp_path / 'rates.csv'
        engine = _paused_engine(_config(runs=3, spread_rate_output=str(csv)))
        engine.handle_command(SteeringCommand.sync_runs())
        assert engine.sync_pending
        _step_year(engine)
        assert not engine.sync_pending

        first = engine.runner.runs[0]
        for run in engine.runner.runs[1:]:
            np.testing.assert_array_equal(run.infected, first.infected)
            np.testing.assert_array_equal(run.susceptible, first.susceptible)
        checkpoint = engine.checkpoints.load(1)
        for grid in checkpoint.infected[1:]:
            np.testing.assert_array_equal(grid, checkpoint.infected[0])

        expected = tmp_path / 'expected.csv'
        write_spread_rate(expected, engine.spread_rates[0], 1, 2016)
        assert csv.read_text() == expected.read_text()

    def test_spread_rate_csv_grows_each_year(self, tmp_path):
        csv = tmp_path / 'rates.csv'
        result = run_simulation(_config(runs=2, spread_rate_output=str(csv)), _store())
        table = pd.read_csv(csv)
        assert list(table.columns) == ['year', 'N', 'S', 'E', 'W']
        assert list(table['year']) == list(range(2016, 2016 + result.years_completed))

    def test_all_infected_stops_immediately(self):
        host = np.full(SHAPE, 2, dtype=np.int64)
        store = MemoryGridStore({'host': host, 'total_plants': host, 'infected': host.copy()})
        result = run_simulation(_config(), store)
        assert result.all_infected
        assert result.years_completed == 0
        assert result.steps == 0


class TestSteeredRun:
    def test_notifications_and_end(self):
        store = _store()
        channel = FakeChannel([SteeringCommand.play()])
        result = run_simulation(_config(output_series='inf', probability_series='prob'),
                                store, channel)
        assert not result.all_infected
        assert channel.started and channel.closed
        assert 'output:inf_2016_12_31|' in channel.sent
        assert 'output:prob_2018_12_31|' in channel.sent
        assert channel.sent[-1] == 'info:last:inf_2018_12_31'
        assert 'infected_average' in store.written

    def test_stop_before_play(self):
        channel = FakeChannel([SteeringCommand.stop()])
        result = run_simulation(_config(), _store(), channel)
        assert result.steps == 0
        assert result.years_completed == 0
        assert channel.closed
