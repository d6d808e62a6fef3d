"""Errors raised by Provisioner implementations."""

from __future__ import annotations


class ReadinessTimeout(Exception):
    """The machine never accepted connections within the readiness window."""

    def __init__(self, address: str, timeout_seconds: float) -> None:
        self.address = address
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f'{address} not ready after {timeout_seconds:.0f}s'
        )


class ProvisioningError(Exception):
    """A configuration job exited unsuccessfully."""

    def __init__(
        self,
        message: str,
        *,
        job: str = '',
        exit_code: int | None = None,
        output_tail: str = '',
    ) -> None:
        self.job = job
        self.exit_code = exit_code
        self.output_tail = output_tail
        super().__init__(message)
