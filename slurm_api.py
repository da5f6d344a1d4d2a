"""
Slurm Node and Job Updates

Thin wrapper around scontrol for the updates made after a power transition:
requeueing the job that needed the nodes, changing node power state and
setting the nodes' active features.
"""

import subprocess
from typing import List

from loguru import logger

# Requeue reason used when nodes could not be reconfigured
JOB_RECONFIG_FAIL = "JOB_RECONFIG_FAIL"

# Node state that powers nodes down and returns them to the idle power-saving pool
POWER_DOWN_FORCE = "POWER_DOWN_FORCE"


class SlurmClient:
    """Interface to the scontrol updates used by capmc_resume."""

    def __init__(self, scontrol: str = "scontrol"):
        self.scontrol = scontrol

    def _run(self, args: List[str]) -> bool:
        cmd = [self.scontrol] + args
        logger.debug(f"Running command: {' '.join(cmd)}")
        try:
            subprocess.run(cmd, capture_output=True, text=True, check=True)
            return True
        except subprocess.CalledProcessError as e:
            logger.error(f"{' '.join(cmd)} failed: {e.stderr.strip()}")
            return False
        except OSError as e:
            logger.error(f"Failed to run {self.scontrol}: {e}")
            return False

    def requeue_job(self, job_id: int, reason: str = JOB_RECONFIG_FAIL) -> bool:
        """
        Requeue a job.

        Args:
            job_id: Slurm job ID
            reason: Why the job is requeued; scontrol takes no reason, so it is only logged

        Returns:
            True if scontrol accepted the request.
        """
        logger.info(f"Requeueing job {job_id} ({reason})")
        return self._run(["requeue", str(job_id)])

    def set_node_state(self, hostlist: str, state: str) -> bool:
        logger.info(f"Setting state of nodes {hostlist} to {state}")
        ok = self._run(["update", f"NodeName={hostlist}", f"State={state}"])
        if not ok:
            logger.error(f"slurm_update_node('{hostlist}', '{state}') failed")
        return ok

    def set_active_features(self, hostlist: str, features: str) -> bool:
        logger.info(f"Setting active features of nodes {hostlist} to {features}")
        ok = self._run(["update", f"NodeName={hostlist}", f"ActiveFeatures={features}"])
        if not ok:
            logger.error(f"slurm_update_node('{hostlist}', '{features}') failed")
        return ok
