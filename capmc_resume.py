#!/usr/bin/env python3.9
"""
Cray KNL Node Resume

Powers up Slurm compute nodes on a Cray system, optionally switching their KNL
MCDRAM and NUMA modes first. The requested modes are applied with capmc, the
nodes are re-initialized, and the script waits until capmc reports every node
as "on" before updating the nodes' active features in Slurm.

If the nodes can not be reconfigured, the job that asked for them is requeued
and the nodes are returned to the idle power-saving pool.

Usage: capmc_resume.py <hostlist> [features]
"""

import os
import re
import sys
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Mapping, Optional

import click
import pendulum
from loguru import logger

from capmc import (
    CapmcError,
    CommandRunner,
    ConvergencePoller,
    FatalControlPlaneError,
    PowerConfig,
    PowerController,
    RetryPolicy,
)
from nodeset import NodeSet, decode_hostlist
from slurm_api import JOB_RECONFIG_FAIL, POWER_DOWN_FORCE, SlurmClient

LOG_FORMAT = (
    "<cyan>{time:YYYY-MM-DDTHH:mm:ss}</cyan> | <level>{level: <8}</level> | "
    "{extra[prog]} | <level>{message}</level>"
)


# ==================== Configuration ====================

DEFAULT_CAPMC_PATH = "/opt/cray/capmc/default/bin/capmc"
DEFAULT_CAPMC_POLL_FREQ = 45  # seconds
DEFAULT_CAPMC_RETRIES = 4
DEFAULT_CAPMC_TIMEOUT = 60000  # msec
MIN_CAPMC_TIMEOUT = 1000  # msec

# Key=Value, with optional spaces around "=" and optionally double-quoted values
_CONFIG_PAIR_RE = re.compile(r'(\w+)\s*=\s*(?:"([^"]*)"|(\S+))')


class ConfigError(CapmcError):
    """knl_cray.conf holds a value that can not be used."""


@dataclass(frozen=True)
class CapmcSettings:
    """Settings read from knl_cray.conf, with logging defaults from slurm.conf."""

    capmc_path: str = DEFAULT_CAPMC_PATH
    poll_freq: int = DEFAULT_CAPMC_POLL_FREQ
    retries: int = DEFAULT_CAPMC_RETRIES
    timeout_ms: int = DEFAULT_CAPMC_TIMEOUT
    log_file: Optional[str] = None
    log_level: str = "ERROR"

    @property
    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(max_retries=self.retries)


def slurm_conf_path() -> str:
    return os.environ.get("SLURM_CONF", "/etc/slurm/slurm.conf")


def default_config_path() -> str:
    """knl_cray.conf lives in the same directory as slurm.conf."""
    return os.path.join(os.path.dirname(slurm_conf_path()), "knl_cray.conf")


def parse_config_text(text: str) -> Dict[str, str]:
    """
    Parse Slurm style Key=Value configuration text.

    Args:
        text: Contents of the configuration file

    Returns:
        Dictionary mapping lower-cased keys to values, quotes removed. Later keys win.
    """
    values = {}
    for line in text.splitlines():
        line = line.split("#", 1)[0].strip()
        if not line:
            continue
        for match in _CONFIG_PAIR_RE.finditer(line):
            key, quoted, bare = match.groups()
            values[key.lower()] = quoted if quoted is not None else bare
    return values


def _read_config_file(path: str) -> Dict[str, str]:
    try:
        with open(path, "r") as f:
            values = parse_config_text(f.read())
        logger.debug(f"Read {len(values)} settings from {path}")
        return values
    except FileNotFoundError:
        logger.debug(f"No config file found at {path}, using defaults")
        return {}
    except OSError as e:
        raise ConfigError(f"Can not read {path}: {e}") from e


def _get_int(values: Dict[str, str], key: str, default: int, path: str) -> int:
    value = values.get(key.lower())
    if value is None:
        return default
    try:
        number = int(value)
    except ValueError as e:
        raise ConfigError(f"Invalid value '{value}' for {key} in {path}") from e
    if number < 0:
        raise ConfigError(f"{key} must not be negative in {path}, got {number}")
    return number


def load_settings(
    path: Optional[str] = None, slurm_conf: Optional[str] = None
) -> CapmcSettings:
    """
    Load capmc settings from knl_cray.conf.

    A missing file yields the defaults. Keys used only by the node_features
    plugin (AllowMCDRAM, DefaultNUMA, ...) are ignored. Without a LogFile,
    messages go to SlurmctldLogFile from slurm.conf, at DEBUG level when
    DebugFlags includes NodeFeatures and at ERROR level otherwise.

    Args:
        path: knl_cray.conf location (default: next to slurm.conf)
        slurm_conf: slurm.conf location (default: $SLURM_CONF, else /etc/slurm/slurm.conf)

    Raises:
        ConfigError: If a numeric setting is not a non-negative integer, or a
            config file can not be read.
    """
    path = path or default_config_path()
    values = _read_config_file(path)
    slurm_values = _read_config_file(slurm_conf or slurm_conf_path())

    debug_flags = slurm_values.get("debugflags", "").lower().split(",")
    settings = CapmcSettings(
        capmc_path=values.get("capmcpath", DEFAULT_CAPMC_PATH),
        poll_freq=_get_int(values, "CapmcPollFreq", DEFAULT_CAPMC_POLL_FREQ, path),
        retries=_get_int(values, "CapmcRetries", DEFAULT_CAPMC_RETRIES, path),
        timeout_ms=max(
            _get_int(values, "CapmcTimeout", DEFAULT_CAPMC_TIMEOUT, path),
            MIN_CAPMC_TIMEOUT,
        ),
        log_file=values.get("logfile") or slurm_values.get("slurmctldlogfile"),
        log_level="DEBUG" if "nodefeatures" in debug_flags else "ERROR",
    )
    return settings


# ==================== Power Transition ====================


class TransitionState(Enum):
    """States of one power transition."""

    INIT = "init"
    CONFIGURING = "configuring"  # Applying MCDRAM/NUMA modes
    REBOOTING = "rebooting"  # node_reinit issued
    POLLING = "polling"  # Waiting for nodes to report "on"
    COMPENSATING = "compensating"  # Requeueing the job, returning nodes to service
    DONE = "done"
    FAILED = "failed"


class PowerTransition:
    """Drives one set of nodes through reconfiguration, reboot and power-on."""

    def __init__(
        self,
        hostlist: str,
        features: Optional[str],
        settings: CapmcSettings,
        slurm: SlurmClient,
        runner: Optional[CommandRunner] = None,
        controller: Optional[PowerController] = None,
        poller: Optional[ConvergencePoller] = None,
        environ: Optional[Mapping[str, str]] = None,
    ):
        """
        Initialize the power transition.

        Args:
            hostlist: Slurm hostlist of the nodes to power up
            features: Comma separated features requested for the nodes, or None
            settings: capmc settings
            slurm: Client used for job requeue and node updates
            runner: Command runner shared by the default controller and poller
            controller: PowerController to use instead of the default one
            poller: ConvergencePoller to use instead of the default one
            environ: Environment to read SLURM_JOB_ID from (default: os.environ)
        """
        self.hostlist = hostlist
        self.features = features
        self.settings = settings
        self.slurm = slurm
        self.power_config = PowerConfig.from_features(features)

        runner = runner or CommandRunner()
        self.controller = controller or PowerController(
            settings.capmc_path, runner, settings.timeout_ms
        )
        self.poller = poller or ConvergencePoller(
            settings.capmc_path, runner, settings.timeout_ms
        )
        self.environ = os.environ if environ is None else environ

        self.state = TransitionState.INIT
        self.nodes: Optional[NodeSet] = None

    def _enter(self, state: TransitionState) -> None:
        logger.debug(f"Transition {self.state.value} -> {state.value}")
        self.state = state

    def job_id(self) -> Optional[int]:
        """Job that needs the nodes, from SLURM_JOB_ID."""
        value = self.environ.get("SLURM_JOB_ID")
        if not value:
            return None
        match = re.match(r"\s*(\d+)", value)
        if not match or int(match.group(1)) == 0:
            logger.warning(f"Ignoring unusable SLURM_JOB_ID '{value}'")
            return None
        return int(match.group(1))

    def run(self) -> bool:
        """
        Run the transition to completion.

        Returns:
            True if the nodes were reconfigured and rebooted, False if the
            transition failed and compensation was performed.
        """
        start = pendulum.now()
        self.nodes = decode_hostlist(self.hostlist)
        logger.info(
            f"Powering up {self.hostlist} ({len(self.nodes)} nids: {self.nodes}), "
            f"mcdram={self.power_config.mcdram_mode} numa={self.power_config.numa_mode}"
        )

        retry_policy = self.settings.retry_policy
        try:
            self._enter(TransitionState.CONFIGURING)
            self.controller.configure(self.nodes, self.power_config, retry_policy)
            self._enter(TransitionState.REBOOTING)
            self.controller.reboot(self.nodes, retry_policy)
        except FatalControlPlaneError as e:
            logger.error(f"Could not reboot nodes {self.hostlist}: {e}")
            self.compensate()
            self._enter(TransitionState.FAILED)
            return False

        self._enter(TransitionState.POLLING)
        if not self.poller.wait_for_all_on(self.nodes, self.settings.poll_freq):
            logger.warning(f"Nodes {self.nodes} did not report on")

        if self.features:
            self.slurm.set_active_features(self.hostlist, self.features)

        self._enter(TransitionState.DONE)
        logger.info(
            f"Power transition of {self.hostlist} finished in "
            f"{(pendulum.now() - start).in_words()}"
        )
        return True

    def compensate(self) -> None:
        """Requeue the job we were trying to start and return the nodes to service."""
        self._enter(TransitionState.COMPENSATING)

        job_id = self.job_id()
        if job_id:
            if not self.slurm.requeue_job(job_id, JOB_RECONFIG_FAIL):
                logger.error(f"Failed to requeue job {job_id}")
        else:
            logger.debug("No job to requeue")

        self.slurm.set_node_state(self.hostlist, POWER_DOWN_FORCE)


# ==================== CLI ====================


def configure_logging(
    verbose: int, log_file: Optional[str] = None, file_level: str = "DEBUG"
) -> None:
    logger.remove()
    logger.configure(extra={"prog": f"capmc_resume[{os.getpid()}]"})
    # Map verbose count to log level: 0=WARNING, 1=INFO, 2+=DEBUG
    if verbose == 0:
        log_level = "WARNING"
    elif verbose == 1:
        log_level = "INFO"
    else:
        log_level = "DEBUG"

    logger.add(sys.stderr, level=log_level, format=LOG_FORMAT)
    if log_file:
        logger.add(log_file, level=file_level, format=LOG_FORMAT)


@click.command()
@click.argument("hostlist")
@click.argument("features", required=False)
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False),
    default=None,
    help="Path to knl_cray.conf (default: next to $SLURM_CONF, else /etc/slurm)",
)
@click.option(
    "--verbose",
    "-v",
    count=True,
    help="Increase verbosity (can be repeated: -v for INFO, -vv for DEBUG)",
)
def main(
    hostlist: str,
    features: Optional[str],
    config_path: Optional[str],
    verbose: int,
) -> None:
    """
    Power up Cray KNL nodes, optionally changing their MCDRAM/NUMA modes.

    HOSTLIST is a Slurm hostlist such as nid000[12-15]. FEATURES is an
    optional comma separated list of modes: a2a, hemi, quad, snc2, snc4
    (NUMA) and cache, split, equal, flat (MCDRAM). Other features are
    ignored for mode selection but still set as the nodes' active features.

    Examples:

        # Reboot nodes without changing modes
        capmc_resume.py 'nid000[12-15]'

        # Switch nodes to quad/cache and reboot
        capmc_resume.py 'nid000[12-15]' quad,cache
    """
    configure_logging(verbose)

    try:
        settings = load_settings(config_path)
    except ConfigError as e:
        logger.error(str(e))
        sys.exit(1)

    if settings.log_file:
        configure_logging(verbose, settings.log_file, settings.log_level)

    transition = PowerTransition(
        hostlist=hostlist,
        features=features,
        settings=settings,
        slurm=SlurmClient(),
    )
    sys.exit(0 if transition.run() else 1)


if __name__ == "__main__":
    main()
