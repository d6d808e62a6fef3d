"""Ansible provisioner tests.

Validates:
  - inventory and extra-vars rendering
  - readiness polling succeeds once the probe answers
  - readiness gives up with ReadinessTimeout after the window
  - jobs run in bundle order and the first failure stops the run
  - a cancelled run kills and reaps the ansible child
"""

from __future__ import annotations

import asyncio
import shutil
from pathlib import Path
from types import MappingProxyType

import pytest

from training_provisioner.app.inmemory import StaticLivenessProbe
from training_provisioner.app.provisioning import ansible_runner
from training_provisioner.app.provisioning.ansible_runner import (
    AnsibleProvisioner,
    build_command,
    build_extra_vars,
    build_inventory,
)
from training_provisioner.app.provisioning.config_resolver import ConfigBundle
from training_provisioner.app.provisioning.errors import ProvisioningError, ReadinessTimeout


class _FakeTime:
    """Clock and sleep pair; sleeping advances the clock."""

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def clock(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


BUNDLE = ConfigBundle(
    jobs=('base.yaml', 'python.yaml'),
    packages=('python3',),
    variables=MappingProxyType({'python_version': '3'}),
)


# =====================================================================
# 1. Rendering
# =====================================================================


class TestRendering:
    def test_inventory_with_key(self):
        text = build_inventory('10.0.0.5', ssh_username='ubuntu', private_key_file='/keys/id')
        assert text.startswith('[training]\n10.0.0.5 ansible_user=ubuntu ')
        assert 'ansible_ssh_private_key_file=/keys/id' in text
        assert 'StrictHostKeyChecking=no' in text

    def test_inventory_without_key(self):
        text = build_inventory('10.0.0.5', ssh_username='kube', private_key_file=None)
        assert 'ansible_ssh_private_key_file' not in text

    def test_extra_vars(self):
        extra = build_extra_vars('session-1', 'intro', BUNDLE)
        assert extra == {
            'python_version': '3',
            'session_name': 'session-1',
            'scenario': 'intro',
            'packages': ['python3'],
            'requirements': [],
        }

    def test_command(self):
        command = build_command('ansible-playbook', Path('/w/inv'), Path('/p/base.yaml'), Path('/w/vars.json'))
        assert command == ['ansible-playbook', '-i', '/w/inv', '/p/base.yaml', '-e', '@/w/vars.json']


# =====================================================================
# 2. Readiness
# =====================================================================


class TestWaitForReady:
    @pytest.mark.asyncio
    async def test_ready_immediately(self):
        fake = _FakeTime()
        probe = StaticLivenessProbe(['10.0.0.5'])
        provisioner = AnsibleProvisioner(probe=probe, sleep=fake.sleep, clock=fake.clock)

        await provisioner.wait_for_ready('10.0.0.5', 60)

        assert fake.sleeps == []
        assert probe.calls == ['10.0.0.5']

    @pytest.mark.asyncio
    async def test_ready_after_polling(self):
        fake = _FakeTime()
        probe = StaticLivenessProbe()
        provisioner = AnsibleProvisioner(
            probe=probe, poll_interval_seconds=5, sleep=fake.sleep, clock=fake.clock,
        )

        async def come_up(seconds: float) -> None:
            await fake.sleep(seconds)
            if len(fake.sleeps) == 2:
                probe.reachable.add('10.0.0.5')

        provisioner._sleep = come_up
        await provisioner.wait_for_ready('10.0.0.5', 60)

        assert fake.sleeps == [5, 5]
        assert len(probe.calls) == 3

    @pytest.mark.asyncio
    async def test_times_out(self):
        fake = _FakeTime()
        provisioner = AnsibleProvisioner(
            probe=StaticLivenessProbe(), poll_interval_seconds=5, sleep=fake.sleep, clock=fake.clock,
        )

        with pytest.raises(ReadinessTimeout) as exc_info:
            await provisioner.wait_for_ready('10.0.0.5', 12)

        assert exc_info.value.address == '10.0.0.5'
        assert fake.sleeps == [5, 5]


# =====================================================================
# 3. Job execution
# =====================================================================


class TestRunConfiguration:
    @pytest.mark.asyncio
    async def test_missing_binary(self, tmp_path):
        provisioner = AnsibleProvisioner(
            playbook_dir=tmp_path, ansible_bin=str(tmp_path / 'no-such-ansible'),
        )

        with pytest.raises(ProvisioningError) as exc_info:
            await provisioner.run_configuration('10.0.0.5', 's-1', 'intro', BUNDLE, ssh_username='kube')

        assert exc_info.value.job == 'base.yaml'

    @pytest.mark.asyncio
    @pytest.mark.skipif(shutil.which('true') is None, reason='needs coreutils')
    async def test_successful_jobs(self, tmp_path):
        provisioner = AnsibleProvisioner(playbook_dir=tmp_path, ansible_bin=shutil.which('true'))

        await provisioner.run_configuration('10.0.0.5', 's-1', 'intro', BUNDLE, ssh_username='kube')

    @pytest.mark.asyncio
    @pytest.mark.skipif(shutil.which('false') is None, reason='needs coreutils')
    async def test_first_failure_stops(self, tmp_path):
        provisioner = AnsibleProvisioner(playbook_dir=tmp_path, ansible_bin=shutil.which('false'))

        with pytest.raises(ProvisioningError) as exc_info:
            await provisioner.run_configuration('10.0.0.5', 's-1', 'intro', BUNDLE, ssh_username='kube')

        assert exc_info.value.job == 'base.yaml'
        assert exc_info.value.exit_code == 1


# =====================================================================
# 4. Cancellation
# =====================================================================


class _HangingProcess:
    """Subprocess stand-in whose output never arrives until it is killed."""

    pid = 4242

    def __init__(self) -> None:
        self.returncode: int | None = None
        self.killed = False
        self.waited = False
        self.started = asyncio.Event()
        self._exited = asyncio.Event()

    async def communicate(self):
        self.started.set()
        await self._exited.wait()
        return b'', None

    def kill(self) -> None:
        self.killed = True
        self.returncode = -9
        self._exited.set()

    async def wait(self) -> int:
        await self._exited.wait()
        self.waited = True
        return self.returncode


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancelled_run_kills_child(self, tmp_path, monkeypatch):
        process = _HangingProcess()

        async def fake_exec(*args, **kwargs):
            return process

        monkeypatch.setattr(ansible_runner.asyncio, 'create_subprocess_exec', fake_exec)
        provisioner = AnsibleProvisioner(playbook_dir=tmp_path)

        task = asyncio.create_task(
            provisioner.run_configuration('10.0.0.5', 's-1', 'intro', BUNDLE, ssh_username='kube'),
        )
        await process.started.wait()
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task

        assert process.killed
        assert process.waited

    @pytest.mark.asyncio
    async def test_already_exited_child_is_only_reaped(self):
        process = _HangingProcess()
        process.kill()
        process.killed = False

        await ansible_runner._kill(process)

        assert not process.killed
        assert process.waited
