"""
Command runners - spawn step commands on the host or on Kubernetes.
"""

import logging
import os
import shlex
import signal
import subprocess
from typing import Dict, List, Optional, Protocol, Union

from pydantic import BaseModel

from controller.src.config import Settings

logger = logging.getLogger(__name__)

class CommandInvocation(BaseModel):
    command: Union[str, List[str]]
    args: List[str] = []
    working_dir: str
    env: Dict[str, str] = {}
    timeout: float
    image: Optional[str] = None
    labels: Dict[str, str] = {}

    def argv(self) -> List[str]:
        """Shell strings run under /bin/sh -c, lists are executed directly."""
        if isinstance(self.command, str):
            script = self.command
            if self.args:
                script = " ".join([script] + [shlex.quote(a) for a in self.args])
            return ["/bin/sh", "-c", script]
        return list(self.command) + list(self.args)

class CommandOutcome(BaseModel):
    exit_code: Optional[int] = None
    stdout: bytes = b""
    stderr: bytes = b""
    timed_out: bool = False

class CommandRunner(Protocol):
    def run(self, invocation: CommandInvocation) -> CommandOutcome:
        """Run the invocation to completion or timeout."""

class LocalProcessRunner:
    """Run commands as local subprocesses, each in its own process group."""

    def __init__(self, kill_grace_period: float = 5.0):
        self.kill_grace_period = kill_grace_period

    def run(self, invocation: CommandInvocation) -> CommandOutcome:
        argv = invocation.argv()
        logger.debug(f"Spawning {argv} in {invocation.working_dir}")

        proc = subprocess.Popen(
            argv,
            cwd=invocation.working_dir,
            env=invocation.env,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            start_new_session=True,
        )

        try:
            stdout, stderr = proc.communicate(timeout=invocation.timeout)
            return CommandOutcome(
                exit_code=proc.returncode,
                stdout=stdout,
                stderr=stderr,
            )
        except subprocess.TimeoutExpired:
            logger.warning(
                f"Command timed out after {invocation.timeout}s, "
                f"terminating process group {proc.pid}"
            )
            self._terminate_group(proc)
            stdout, stderr = proc.communicate()
            return CommandOutcome(
                exit_code=proc.returncode,
                stdout=stdout or b"",
                stderr=stderr or b"",
                timed_out=True,
            )

    def _terminate_group(self, proc: subprocess.Popen):
        """SIGTERM the group, then SIGKILL whatever is left after the grace period."""
        self._signal_group(proc.pid, signal.SIGTERM)
        try:
            proc.wait(timeout=self.kill_grace_period)
        except subprocess.TimeoutExpired:
            pass
        # Children may outlive the group leader and keep the pipes open
        self._signal_group(proc.pid, signal.SIGKILL)
        proc.wait()

    @staticmethod
    def _signal_group(pgid: int, sig: int):
        try:
            os.killpg(pgid, sig)
        except ProcessLookupError:
            pass

def build_runner(settings: Settings) -> CommandRunner:
    """Create the command runner selected by settings."""
    if settings.executor_backend == "kubernetes":
        from controller.src.k8s.runner import KubernetesJobRunner
        return KubernetesJobRunner(
            namespace=settings.k8s_namespace,
            default_image=settings.default_image,
        )
    return LocalProcessRunner(kill_grace_period=settings.kill_grace_period)
