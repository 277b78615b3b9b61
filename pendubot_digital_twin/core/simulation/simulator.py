"""
One-call entry point taking the run options by name:

>>> results = simulate('state_feedback', tStop=10, disturbance=True,
...                    reference=lambda t: 0.1 * np.sin(t),
...                    datafile='data.mat', controllerdatatolog=['x_err'])
"""

from typing import Any, Dict, Optional

from pendubot_digital_twin.core.simulation.cancellation import CancellationToken
from pendubot_digital_twin.core.simulation.simulation_runner import (
    PendubotSimulationRunner,
    SimulationConfig,
)
from pendubot_digital_twin.core.visualization.renderer import BaseRenderer


def simulate(
    controller: Any,
    renderer: Optional[BaseRenderer] = None,
    cancel_token: Optional[CancellationToken] = None,
    **options
) -> Dict:
    """
    Set up and run one closed-loop simulation.

    Parameters
    ----------
    controller : BaseController, str, type or mapping
        Controller specification (see load_controller)
    renderer : BaseRenderer, optional
        Renderer used when display is enabled
    cancel_token : CancellationToken, optional
        External quit signal
    **options
        SimulationConfig fields or their legacy names (tStop, tauMax,
        controllerdatatolog, ...)

    Returns
    -------
    Dict
        Run summary from PendubotSimulationRunner.run_simulation

    Raises
    ------
    SimulationSetupError
        On misconfiguration, before anything runs
    """
    config = SimulationConfig.from_dict(options)
    runner = PendubotSimulationRunner(config, controller, renderer=renderer,
                                      cancel_token=cancel_token)
    return runner.run_simulation()
