#!/usr/bin/env python3
"""
Integration tests for the power transition state machine.

capmc and scontrol are replaced with mocks; the PowerController and
ConvergencePoller are mocked where a test only cares about sequencing.
"""

from unittest.mock import MagicMock, Mock

from capmc import (
    CommandResult,
    ConvergencePoller,
    FatalControlPlaneError,
    PowerController,
)
from capmc_resume import CapmcSettings, PowerTransition, TransitionState
from slurm_api import JOB_RECONFIG_FAIL, POWER_DOWN_FORCE, SlurmClient

CAPMC = "/opt/cray/capmc/default/bin/capmc"


def fatal(operation="node_reinit"):
    return FatalControlPlaneError(
        operation,
        [CAPMC, operation, "-n", "12-15"],
        CommandResult(exit_status=1, output=b"Invalid nid"),
    )


def make_transition(features=None, environ=None, controller=None, poller=None):
    slurm = Mock(spec=SlurmClient)
    slurm.requeue_job.return_value = True
    slurm.set_node_state.return_value = True
    slurm.set_active_features.return_value = True

    transition = PowerTransition(
        hostlist="nid000[12-15]",
        features=features,
        settings=CapmcSettings(poll_freq=30, retries=2),
        slurm=slurm,
        controller=controller or Mock(spec=PowerController),
        poller=poller or Mock(spec=ConvergencePoller),
        environ=environ if environ is not None else {},
    )
    return transition, slurm


def test_successful_transition():
    controller = Mock(spec=PowerController)
    poller = Mock(spec=ConvergencePoller)
    poller.wait_for_all_on.return_value = True
    transition, slurm = make_transition(
        features="quad,cache", controller=controller, poller=poller
    )

    assert transition.run()

    assert transition.state == TransitionState.DONE
    assert set(transition.nodes) == {12, 13, 14, 15}

    config = controller.configure.call_args[0][1]
    assert config.numa_mode == "quad"
    assert config.mcdram_mode == "cache"
    policy = controller.configure.call_args[0][2]
    assert policy.max_retries == 2
    controller.reboot.assert_called_once()

    poller.wait_for_all_on.assert_called_once_with(transition.nodes, 30)
    slurm.set_active_features.assert_called_once_with("nid000[12-15]", "quad,cache")
    slurm.requeue_job.assert_not_called()
    slurm.set_node_state.assert_not_called()


def test_no_features_skips_feature_update():
    transition, slurm = make_transition()

    assert transition.run()
    slurm.set_active_features.assert_not_called()


def test_convergence_timeout_is_not_a_failure():
    poller = Mock(spec=ConvergencePoller)
    poller.wait_for_all_on.return_value = False
    transition, slurm = make_transition(features="flat", poller=poller)

    assert transition.run()
    assert transition.state == TransitionState.DONE
    slurm.set_active_features.assert_called_once()


def test_fatal_reboot_compensates():
    """A fatal reboot requeues the job once, reverts the nodes once and never polls."""
    controller = Mock(spec=PowerController)
    controller.reboot.side_effect = fatal()
    poller = Mock(spec=ConvergencePoller)
    transition, slurm = make_transition(
        features="quad",
        environ={"SLURM_JOB_ID": "4242"},
        controller=controller,
        poller=poller,
    )

    states = []
    original_enter = transition._enter

    def record(state):
        states.append(state)
        original_enter(state)

    transition._enter = record

    assert not transition.run()

    assert states == [
        TransitionState.CONFIGURING,
        TransitionState.REBOOTING,
        TransitionState.COMPENSATING,
        TransitionState.FAILED,
    ]
    slurm.requeue_job.assert_called_once_with(4242, JOB_RECONFIG_FAIL)
    slurm.set_node_state.assert_called_once_with("nid000[12-15]", POWER_DOWN_FORCE)
    slurm.set_active_features.assert_not_called()
    poller.wait_for_all_on.assert_not_called()


def test_fatal_configure_skips_reboot():
    controller = Mock(spec=PowerController)
    controller.configure.side_effect = fatal("set_mcdram_cfg")
    transition, slurm = make_transition(features="cache", controller=controller)

    assert not transition.run()

    assert transition.state == TransitionState.FAILED
    controller.reboot.assert_not_called()
    slurm.set_node_state.assert_called_once()


def test_compensation_without_job_id():
    controller = Mock(spec=PowerController)
    controller.reboot.side_effect = fatal()

    for environ in ({}, {"SLURM_JOB_ID": ""}, {"SLURM_JOB_ID": "0"}, {"SLURM_JOB_ID": "abc"}):
        transition, slurm = make_transition(environ=environ, controller=controller)
        assert not transition.run()
        slurm.requeue_job.assert_not_called()
        slurm.set_node_state.assert_called_once()


def test_compensation_failures_do_not_change_outcome():
    controller = Mock(spec=PowerController)
    controller.reboot.side_effect = fatal()
    transition, slurm = make_transition(
        environ={"SLURM_JOB_ID": "17"}, controller=controller
    )
    slurm.requeue_job.return_value = False
    slurm.set_node_state.return_value = False

    assert not transition.run()
    assert transition.state == TransitionState.FAILED
    slurm.set_node_state.assert_called_once()


def test_job_id_parsing():
    transition, _ = make_transition(environ={"SLURM_JOB_ID": "123"})
    assert transition.job_id() == 123

    transition, _ = make_transition(environ={"SLURM_JOB_ID": "77_3"})
    assert transition.job_id() == 77


def test_end_to_end_with_scripted_capmc():
    """Real controller and poller driven by a scripted capmc."""
    responses = {
        "set_numa_cfg": [CommandResult(exit_status=0)],
        "node_reinit": [
            CommandResult(exit_status=1, output=b"Could not lookup nid"),
            CommandResult(exit_status=0),
        ],
        "node_status": [
            CommandResult(exit_status=0, output=b'{"on": [12, 13]}'),
            CommandResult(exit_status=0, output=b'{"on": [14, 15]}'),
        ],
    }
    calls = []

    def run(argv, timeout_ms):
        calls.append(argv[1])
        return responses[argv[1]].pop(0)

    runner = MagicMock()
    runner.run.side_effect = run
    settings = CapmcSettings(capmc_path=CAPMC, poll_freq=0, retries=3)
    controller = PowerController(CAPMC, runner, settings.timeout_ms, sleep=lambda s: None)
    poller = ConvergencePoller(CAPMC, runner, settings.timeout_ms, sleep=lambda s: None)
    slurm = Mock(spec=SlurmClient)

    transition = PowerTransition(
        hostlist="nid000[12-15]",
        features="a2a",
        settings=settings,
        slurm=slurm,
        controller=controller,
        poller=poller,
        environ={"SLURM_JOB_ID": "9"},
    )

    assert transition.run()
    assert calls == [
        "set_numa_cfg",
        "node_reinit",
        "node_reinit",
        "node_status",
        "node_status",
    ]
    assert len(transition.nodes) == 0
    slurm.requeue_job.assert_not_called()
    slurm.set_active_features.assert_called_once_with("nid000[12-15]", "a2a")
