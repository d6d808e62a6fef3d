"""Ansible-backed Provisioner.

``wait_for_ready`` polls the TCP liveness probe until the machine accepts
SSH connections. ``run_configuration`` writes a one-host inventory plus an
extra-vars file and runs ``ansible-playbook`` once per job in bundle order,
stopping at the first failure.
"""

from __future__ import annotations

import asyncio
import json
import logging
import tempfile
from pathlib import Path
from typing import Awaitable, Callable, Sequence

from ..protocols import LivenessProbe
from ..providers.probe import TcpLivenessProbe
from .config_resolver import ConfigBundle
from .errors import ProvisioningError, ReadinessTimeout

logger = logging.getLogger(__name__)

_OUTPUT_TAIL_CHARS = 2000
_SSH_COMMON_ARGS = '-o StrictHostKeyChecking=no -o UserKnownHostsFile=/dev/null'


def build_inventory(address: str, *, ssh_username: str, private_key_file: str | None) -> str:
    host_vars = [f'ansible_user={ssh_username}', f"ansible_ssh_common_args='{_SSH_COMMON_ARGS}'"]
    if private_key_file:
        host_vars.append(f'ansible_ssh_private_key_file={private_key_file}')
    return f"[training]\n{address} {' '.join(host_vars)}\n"


def build_extra_vars(session_id: str, scenario: str, bundle: ConfigBundle) -> dict[str, object]:
    return {
        **dict(bundle.variables),
        'session_name': session_id,
        'scenario': scenario,
        'packages': list(bundle.packages),
        'requirements': list(bundle.requirements),
    }


def build_command(
    ansible_bin: str,
    inventory_path: Path,
    playbook_path: Path,
    vars_path: Path,
) -> list[str]:
    return [
        ansible_bin,
        '-i',
        str(inventory_path),
        str(playbook_path),
        '-e',
        f'@{vars_path}',
    ]


async def _kill(process: asyncio.subprocess.Process) -> None:
    if process.returncode is None:
        try:
            process.kill()
        except ProcessLookupError:
            pass
    await process.wait()


class AnsibleProvisioner:
    """Runs configuration playbooks against a single machine over SSH."""

    def __init__(
        self,
        *,
        playbook_dir: str | Path = 'playbooks',
        private_key_file: str | None = None,
        ansible_bin: str = 'ansible-playbook',
        probe: LivenessProbe | None = None,
        poll_interval_seconds: float = 5.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self._playbook_dir = Path(playbook_dir)
        self._private_key_file = private_key_file
        self._ansible_bin = ansible_bin
        self._probe = probe or TcpLivenessProbe(connect_timeout_seconds=5.0)
        self._poll_interval = poll_interval_seconds
        self._sleep = sleep
        self._clock = clock

    def _now(self) -> float:
        if self._clock is not None:
            return self._clock()
        return asyncio.get_running_loop().time()

    async def wait_for_ready(self, address: str, timeout_seconds: float) -> None:
        deadline = self._now() + timeout_seconds
        while True:
            if await self._probe.check(address):
                return
            if self._now() + self._poll_interval > deadline:
                raise ReadinessTimeout(address, timeout_seconds)
            await self._sleep(self._poll_interval)

    async def run_configuration(
        self,
        address: str,
        session_id: str,
        scenario: str,
        bundle: ConfigBundle,
        *,
        ssh_username: str,
    ) -> None:
        with tempfile.TemporaryDirectory(prefix='provision-') as workdir:
            inventory_path = Path(workdir) / 'inventory.ini'
            vars_path = Path(workdir) / 'vars.json'
            inventory_path.write_text(
                build_inventory(
                    address,
                    ssh_username=ssh_username,
                    private_key_file=self._private_key_file,
                ),
                encoding='utf-8',
            )
            vars_path.write_text(
                json.dumps(build_extra_vars(session_id, scenario, bundle)),
                encoding='utf-8',
            )

            for job in bundle.jobs:
                command = build_command(
                    self._ansible_bin,
                    inventory_path,
                    self._playbook_dir / job,
                    vars_path,
                )
                await self._run_job(job, command, address=address, session_id=session_id)

    async def _run_job(
        self,
        job: str,
        command: Sequence[str],
        *,
        address: str,
        session_id: str,
    ) -> None:
        logger.info(
            'Running configuration job',
            extra={'job': job, 'address': address, 'session_id': session_id},
        )
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except OSError as e:
            raise ProvisioningError(f'could not start {command[0]}: {e}', job=job) from e

        try:
            stdout, _ = await process.communicate()
        except asyncio.CancelledError:
            logger.warning(
                'Configuration job cancelled, stopping ansible',
                extra={'job': job, 'address': address, 'pid': process.pid},
            )
            await _kill(process)
            raise
        output = (stdout or b'').decode('utf-8', errors='replace')
        if process.returncode != 0:
            raise ProvisioningError(
                f'job {job} failed with exit code {process.returncode}',
                job=job,
                exit_code=process.returncode,
                output_tail=output[-_OUTPUT_TAIL_CHARS:],
            )
        logger.info('Configuration job succeeded', extra={'job': job, 'address': address})
