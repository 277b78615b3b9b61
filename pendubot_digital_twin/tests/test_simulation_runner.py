"""
Unit Tests for the Closed-Loop Simulation Runner

This module tests the complete pendubot simulation loop including:
- Configuration validation and setup-time errors
- Loop timing, termination and cancellation
- Sensor delay as seen by the controller
- Controller, reference and logging fault recovery
- Reproducibility and persistence
"""

import time
import warnings

import numpy as np
import pytest
from scipy.io import loadmat

from pendubot_digital_twin import simulate
from pendubot_digital_twin.core.contracts import MechanismState
from pendubot_digital_twin.core.controllers.base import BaseController, FunctionController
from pendubot_digital_twin.core.controllers.library import StateFeedbackController
from pendubot_digital_twin.core.dynamics.eom_source import LinkGeometry, load_or_build_eom
from pendubot_digital_twin.core.simulation.cancellation import CancellationToken
from pendubot_digital_twin.core.simulation.exceptions import (
    ControllerFaultWarning,
    ControllerNotFoundError,
    ReferenceFaultWarning,
    SimulationSetupError,
    SingularMassMatrixError,
)
from pendubot_digital_twin.core.simulation.integrator import integrate_step
from pendubot_digital_twin.core.simulation.simulation_runner import (
    PendubotSimulationRunner,
    SimulationConfig,
)
from pendubot_digital_twin.core.visualization.renderer import BaseRenderer, FrameRecorder


class ConstantTorque(BaseController):
    """Commands a fixed torque and counts its calls."""

    def __init__(self, tau1=1.0, fail_on_call=None, i_delay=None):
        super().__init__(name='constant', i_delay=i_delay)
        self.tau1 = tau1
        self.fail_on_call = fail_on_call
        self.calls = 0

    def init(self, parameters, data):
        data['seen_q2'] = []
        data['tau1'] = self.tau1
        return data

    def run(self, sensors, references, parameters, data):
        self.calls += 1
        if self.calls == self.fail_on_call:
            raise RuntimeError(f"failure on call {self.calls}")
        data['seen_q2'].append(sensors.q2)
        data['reference'] = references.q2
        return {'tau1': data['tau1']}, data


class QuittingRenderer(BaseRenderer):
    """Renderer that requests a quit after a number of frames."""

    def __init__(self, quit_after):
        self.quit_after = quit_after
        self.updates = 0
        self.closed = False

    def update(self, state, controller):
        self.updates += 1
        if self.updates >= self.quit_after:
            self.request_quit()

    def capture_frame(self):
        return np.zeros((3, 3))

    def save_snapshot(self, path):
        pass

    def close(self):
        self.closed = True


@pytest.fixture
def base_config():
    """Short deterministic run configuration."""
    return dict(t_step=0.02, t_stop=0.2, initial=[0.3, 0.2, 0.0, 0.5], seed=42)


class TestConfiguration:
    """Test configuration validation."""

    def test_defaults(self):
        config = SimulationConfig()

        assert config.t_step == pytest.approx(0.02)
        assert config.tau_max == 10.0
        assert config.t_stop == 30.0
        assert config.display is False
        assert config.sensor_fields == ('t', 'q1', 'q2', 'v1', 'v2')

    @pytest.mark.parametrize("options", [
        dict(t_step=0.0),
        dict(t_step=-0.01),
        dict(tau_max=0.0),
        dict(t_stop=-1.0),
        dict(t_stop=float('nan')),
        dict(initial=[0.1, 0.2, 0.3]),
        dict(initial=[0.1, 0.2, 0.3, float('inf')]),
        dict(reference=5.0),
        dict(datafile='run.txt'),
        dict(sensor_fields=['q3']),
        dict(moviefile='movie.mp4'),
        dict(snapshotfile='snap.pdf'),
        dict(disturbance=True, disturbance_torque='big'),
    ])
    def test_invalid(self, options):
        with pytest.raises(SimulationSetupError):
            SimulationConfig(**options)

    def test_movie_requires_display_message(self):
        with pytest.raises(SimulationSetupError, match="display turned off"):
            SimulationConfig(moviefile='movie.mp4', display=False)

    def test_from_dict_legacy_names(self):
        config = SimulationConfig.from_dict({
            'tStop': 5, 'tauMax': 3.0, 'controllerdatatolog': ['y'], 'iDelay': 2.6,
        })

        assert config.t_stop == 5
        assert config.tau_max == 3.0
        assert config.controller_data_to_log == ['y']
        assert config.i_delay == 2

    def test_from_dict_unknown_option(self):
        with pytest.raises(SimulationSetupError, match="Unknown simulation option"):
            SimulationConfig.from_dict({'tstop': 5})


class TestSetup:
    """Test runner setup and setup-time errors."""

    def test_unknown_controller(self, base_config):
        with pytest.raises(ControllerNotFoundError):
            PendubotSimulationRunner(SimulationConfig(**base_config), 'no_such_controller')

    def test_movie_requires_renderer(self, base_config, tmp_path):
        config = SimulationConfig(display=True, moviefile=tmp_path / 'movie.npy', **base_config)

        with pytest.raises(SimulationSetupError, match="renderer"):
            PendubotSimulationRunner(config, 'zero')

    def test_movie_requires_capable_renderer(self, base_config, tmp_path):
        config = SimulationConfig(display=True, moviefile=tmp_path / 'movie.npy', **base_config)

        with pytest.raises(SimulationSetupError, match="cannot write movie"):
            PendubotSimulationRunner(config, 'zero', renderer=QuittingRenderer(100))

    def test_first_command_before_loop(self, base_config):
        controller = ConstantTorque(tau1=2.0)
        runner = PendubotSimulationRunner(SimulationConfig(**base_config), controller)

        assert controller.calls == 1
        assert runner.sandbox.actuators.tau1 == 2.0
        assert runner.state.t == 0.0

    def test_seeded_initial_state(self):
        a = PendubotSimulationRunner(SimulationConfig(seed=5, t_stop=0.1), 'zero')
        b = PendubotSimulationRunner(SimulationConfig(seed=5, t_stop=0.1), 'zero')

        assert a.state == b.state
        assert abs(a.state.q1) > 0.0

    def test_controller_delay_used(self, base_config):
        runner = PendubotSimulationRunner(SimulationConfig(**base_config), ConstantTorque(i_delay=2.5))

        assert runner.i_delay == 2
        assert len(runner.sensor_buffer) == 3

    def test_config_delay_overrides_controller(self, base_config):
        config = SimulationConfig(i_delay=1, **base_config)
        runner = PendubotSimulationRunner(config, ConstantTorque(i_delay=4))

        assert runner.i_delay == 1


class TestLoop:
    """Test loop timing and termination."""

    def test_frame_count_and_times(self, base_config):
        runner = PendubotSimulationRunner(SimulationConfig(**base_config), 'zero')
        results = runner.run_simulation()

        t = results['log']['processdata']['t']
        assert results['n_samples'] == 11
        assert results['iterations'] == 10
        assert t[0] == 0.0
        assert t[-1] == pytest.approx(0.2)
        assert np.allclose(np.diff(t), 0.02)

    def test_time_recomputed_from_iteration(self, base_config):
        runner = PendubotSimulationRunner(SimulationConfig(**base_config), 'zero')
        for _ in range(7):
            runner.run_single_step()

        assert runner.state.t == 7 * 0.02

    def test_single_step_from_past_upright(self):
        """One unforced step from q1 = 1.09 pi follows the unforced dynamics."""
        config = SimulationConfig(t_step=0.02, t_stop=0.02, tau_max=10.0,
                                  initial=[1.09 * np.pi, 0.0, 0.0, 0.0])
        runner = PendubotSimulationRunner(config, 'zero')
        start = runner.state

        results = runner.run_simulation()
        final = results['final_state']

        expected = integrate_step(runner.dynamics, start, np.zeros(2), 0.02)
        assert final.q1 == expected.q1 and final.q2 == expected.q2

        a = runner.dynamics.compute_forward_dynamics(
            np.array([start.q1, start.q2]), np.zeros(2), np.zeros(2))
        assert a[0] > 0.0
        assert final.q1 - start.q1 == pytest.approx(0.5 * a[0] * 0.02**2, rel=1e-2)
        assert final.q2 - start.q2 == pytest.approx(0.5 * a[1] * 0.02**2, rel=1e-2)
        assert results['n_samples'] == 2

    def test_torque_clamped(self, base_config):
        config = SimulationConfig(tau_max=10.0, **base_config)
        runner = PendubotSimulationRunner(config, ConstantTorque(tau1=100.0))
        results = runner.run_simulation()

        assert runner.last_input[0] == 10.0
        # The log keeps the commanded value
        assert np.all(results['log']['controllerdata']['actuators']['tau1'] == 100.0)

    def test_disturbance_fixed(self, base_config):
        config = SimulationConfig(disturbance=True, disturbance_torque=1.5, **base_config)
        runner = PendubotSimulationRunner(config, 'zero')
        runner.run_single_step()

        assert runner.last_input[1] == 1.5
        assert runner.sandbox.runtime.sensors.as_dict().keys() == {'t', 'q1', 'q2', 'v1', 'v2'}

    def test_disturbance_sampled(self, base_config):
        config = SimulationConfig(disturbance=True, **base_config)
        runner = PendubotSimulationRunner(config, 'zero')

        assert 1.0 < abs(runner.disturbance_torque) <= 2.0

    def test_no_disturbance_by_default(self, base_config):
        runner = PendubotSimulationRunner(SimulationConfig(**base_config), 'zero')
        runner.run_single_step()

        assert runner.disturbance_torque is None
        assert runner.last_input[1] == 0.0


class TestSensorDelay:
    """Test what the controller observes."""

    def test_delay_of_three_steps(self, base_config):
        """With i_delay = 3 the sensed q2 at step 10 is the true q2 at step 7."""
        config = SimulationConfig(**dict(base_config, t_stop=0.4))
        controller = ConstantTorque(tau1=0.5, i_delay=3)
        runner = PendubotSimulationRunner(config, controller)
        results = runner.run_simulation()

        true_q2 = results['log']['processdata']['q2']
        sensed_q2 = results['log']['controllerdata']['sensors']['q2']

        assert np.all(np.diff(true_q2) != 0.0)
        assert sensed_q2[10] == true_q2[7]
        for n in range(len(true_q2)):
            assert sensed_q2[n] == true_q2[max(n - 3, 0)]

    def test_controller_sees_only_exposed_fields(self, base_config):
        seen = []

        def run(sensors, references, parameters, data):
            seen.append(sensors.as_dict())
            return {'tau1': 0.0}, data

        config = SimulationConfig(sensor_fields=('q2',), **base_config)
        runner = PendubotSimulationRunner(config, FunctionController('probe', lambda p, d: d, run))
        runner.run_simulation()

        assert all(set(reading) == {'t', 'q2'} for reading in seen)


class TestFaultRecovery:
    """Controller, reference and logging faults never stop the run."""

    def test_run_fails_on_fifth_call(self, base_config):
        controller = ConstantTorque(tau1=1.0, fail_on_call=5)
        runner = PendubotSimulationRunner(SimulationConfig(**base_config), controller)

        with warnings.catch_warnings(record=True) as caught:
            warnings.simplefilter("always")
            results = runner.run_simulation()

        tau1 = results['log']['controllerdata']['actuators']['tau1']
        assert np.all(tau1[:4] == 1.0)
        assert np.all(tau1[4:] == 0.0)
        assert controller.calls == 5
        assert len([w for w in caught if issubclass(w.category, ControllerFaultWarning)]) == 1
        assert results['controller_running'] is False
        assert results['n_samples'] == 11

    def test_init_fault_runs_unforced(self, base_config):
        def init(parameters, data):
            raise ValueError("bad gains")

        controller = FunctionController('broken', init, lambda *args: ({'tau1': 5.0}, {}))

        with pytest.warns(ControllerFaultWarning, match="broken"):
            runner = PendubotSimulationRunner(SimulationConfig(**base_config), controller)
        results = runner.run_simulation()

        assert np.all(results['log']['controllerdata']['actuators']['tau1'] == 0.0)
        assert results['n_samples'] == 11

    def test_reference_fault_gives_neutral_reference(self, base_config):
        def reference(t):
            if t > 0.05:
                raise ValueError("reference undefined")
            return 0.25

        controller = ConstantTorque()
        config = SimulationConfig(reference=reference, **base_config)

        with pytest.warns(ReferenceFaultWarning):
            runner = PendubotSimulationRunner(config, controller)
            results = runner.run_simulation()

        assert results['controller_running'] is True
        assert runner.references.q2 == 0.0
        assert runner.sandbox.runtime.data['reference'] == 0.0

    def test_logging_fault_stops_controller(self, base_config, tmp_path):
        config = SimulationConfig(controller_data_to_log=['seen_q2', 'missing'],
                                  datafile=tmp_path / 'run.npz', **base_config)
        runner = PendubotSimulationRunner(config, ConstantTorque(tau1=3.0))

        with pytest.warns(ControllerFaultWarning, match="missing"):
            results = runner.run_simulation()

        assert results['controller_running'] is False
        assert np.all(results['log']['controllerdata']['actuators']['tau1'] == 0.0)
        assert results['n_samples'] == 11

    def test_requested_data_ignored_without_datafile(self, base_config):
        config = SimulationConfig(controller_data_to_log=['missing'], **base_config)
        runner = PendubotSimulationRunner(config, ConstantTorque(tau1=3.0))

        with warnings.catch_warnings():
            warnings.simplefilter("error", ControllerFaultWarning)
            results = runner.run_simulation()

        assert results['controller_running'] is True
        assert results['log']['controllerdata']['data'] == {}
        assert np.all(results['log']['controllerdata']['actuators']['tau1'] == 3.0)

    def test_unloggable_value_stops_controller(self, base_config, tmp_path):
        def run(sensors, references, parameters, data):
            data['big'] = 10**400
            return {'tau1': 1.0}, data

        config = SimulationConfig(controller_data_to_log=['big'],
                                  datafile=tmp_path / 'run.json', **base_config)
        runner = PendubotSimulationRunner(config, FunctionController('huge', lambda p, d: d, run))

        with pytest.warns(ControllerFaultWarning, match="big"):
            results = runner.run_simulation()

        assert results['controller_running'] is False
        assert results['n_samples'] == 11

    def test_unconvertible_torque_stops_controller(self, base_config):
        controller = FunctionController(
            'huge', lambda p, d: d, lambda s, r, p, d: ({'tau1': 10**400}, d))
        runner = PendubotSimulationRunner(SimulationConfig(**base_config), controller)

        with pytest.warns(ControllerFaultWarning, match="right\nformat"):
            results = runner.run_simulation()

        assert results['controller_running'] is False
        assert np.all(results['log']['controllerdata']['actuators']['tau1'] == 0.0)
        assert results['n_samples'] == 11

    def test_renderer_sees_frame_before_logging_fault(self, base_config, tmp_path):
        recorder = FrameRecorder(load_or_build_eom())
        config = SimulationConfig(**dict(base_config, t_stop=0.04), display=True,
                                  controller_data_to_log=['missing'],
                                  datafile=tmp_path / 'run.mat')
        runner = PendubotSimulationRunner(config, ConstantTorque(tau1=3.0), renderer=recorder)

        with pytest.warns(ControllerFaultWarning):
            results = runner.run_simulation()

        # The first frame is drawn before the logger stops the controller
        assert recorder.views[0].running
        assert recorder.views[0].actuators.tau1 == 3.0
        assert not results['log']['controllerdata']['running'][0]
        assert not recorder.views[1].running

    def test_singular_mass_matrix_is_fatal(self, base_config, tmp_path):
        datafile = tmp_path / 'run.mat'
        config = SimulationConfig(geometry=LinkGeometry(rho2=0.0), datafile=datafile, **base_config)
        runner = PendubotSimulationRunner(config, 'zero')

        with pytest.raises(SingularMassMatrixError):
            runner.run_simulation()

        assert not datafile.exists()


class TestReproducibility:
    """Identical inputs give bit-identical trajectories."""

    def _run(self, base_config):
        config = SimulationConfig(disturbance=True, disturbance_torque=-1.3, **base_config)
        controller = StateFeedbackController(K=[5.0, 1.0, 2.0, 0.5], k_ref=1.0)
        return PendubotSimulationRunner(config, controller).run_simulation()

    def test_bit_identical_reruns(self, base_config):
        a = self._run(base_config)['log']
        b = self._run(base_config)['log']

        for name in ('t', 'q1', 'q2', 'v1', 'v2'):
            assert np.array_equal(a['processdata'][name], b['processdata'][name])
        assert np.array_equal(a['controllerdata']['actuators']['tau1'],
                              b['controllerdata']['actuators']['tau1'])

    def test_reset_reproduces_run(self, base_config):
        runner = PendubotSimulationRunner(SimulationConfig(**base_config), ConstantTorque(tau1=0.7))
        first = runner.run_simulation()['log']['processdata']['q1']

        runner.reset()
        second = runner.run_simulation()['log']['processdata']['q1']

        assert np.array_equal(first, second)


class TestCancellationAndPacing:
    """Test the quit signal and real-time pacing."""

    def test_renderer_quit(self, base_config):
        renderer = QuittingRenderer(quit_after=3)
        config = SimulationConfig(display=True, **base_config)
        results = PendubotSimulationRunner(config, 'zero', renderer=renderer).run_simulation()

        assert results['n_samples'] == 3
        assert results['cancelled'] is True
        assert renderer.closed

    def test_reset_clears_quit_request(self, base_config):
        renderer = QuittingRenderer(quit_after=3)
        config = SimulationConfig(display=True, **base_config)
        runner = PendubotSimulationRunner(config, 'zero', renderer=renderer)
        assert runner.run_simulation()['n_samples'] == 3

        renderer.quit_after = 1000
        runner.reset()
        results = runner.run_simulation()

        assert results['n_samples'] == 11
        assert results['cancelled'] is False

    def test_pre_cancelled_token(self, base_config):
        token = CancellationToken()
        token.cancel()
        runner = PendubotSimulationRunner(SimulationConfig(**base_config), 'zero', cancel_token=token)
        results = runner.run_simulation()

        assert results['n_samples'] == 1
        assert results['iterations'] == 0

    def test_display_paces_to_wall_clock(self, base_config):
        config = SimulationConfig(display=True, **base_config)
        start = time.perf_counter()
        results = PendubotSimulationRunner(config, 'zero').run_simulation()
        elapsed = time.perf_counter() - start

        assert elapsed >= 0.2
        assert results['wall_time'] >= 0.2

    def test_renderer_idle_without_display(self, base_config):
        renderer = QuittingRenderer(quit_after=1)
        results = PendubotSimulationRunner(
            SimulationConfig(**base_config), 'zero', renderer=renderer).run_simulation()

        assert renderer.updates == 0
        assert results['n_samples'] == 11


class TestOutputs:
    """Test data, movie and snapshot files."""

    def test_datafile_saved(self, base_config, tmp_path):
        datafile = tmp_path / 'run.mat'
        config = SimulationConfig(datafile=datafile, controller_data_to_log=['tau1'], **base_config)
        PendubotSimulationRunner(config, ConstantTorque(tau1=0.4)).run_simulation()

        mat = loadmat(str(datafile), simplify_cells=True)
        assert np.asarray(mat['processdata']['t']).shape == (11,)
        assert np.allclose(mat['controllerdata']['data']['tau1'], 0.4)

    def test_movie_and_snapshot(self, base_config, tmp_path):
        recorder = FrameRecorder(load_or_build_eom())
        config = SimulationConfig(**dict(base_config, t_stop=0.06), display=True,
                                  moviefile=tmp_path / 'movie.npy',
                                  snapshotfile=tmp_path / 'snap.npy')
        PendubotSimulationRunner(config, 'zero', renderer=recorder).run_simulation()

        movie = np.load(tmp_path / 'movie.npy')
        snapshot = np.load(tmp_path / 'snap.npy')
        assert movie.shape == (4, 3, 3)
        assert np.array_equal(snapshot, movie[-1])
        assert recorder.closed
        assert all(view.name == 'zero' for view in recorder.views)


class TestSimulateFacade:
    """Test the simulate() entry point."""

    def test_legacy_options(self):
        results = simulate('zero', tStop=0.1, initial=[0.0, 0.0, 0.0, 0.0])

        assert results['n_samples'] == 6
        assert isinstance(results['final_state'], MechanismState)
        assert results['final_state'].q1 == 0.0

    def test_setup_error_before_run(self):
        with pytest.raises(SimulationSetupError):
            simulate('zero', tStop=0.1, moviefile='movie.mp4')
