"""
Cooperative runtime helpers for the async entry points.

Long operations are coroutines that yield to the event loop between stages,
report progress through an optional callback, and poll an :class:`AbortSignal`
at stage boundaries. Cancellation surfaces as :class:`OperationCancelled`.

Author: Olivier Vitrac, PhD, HDR
        Generative Simulation Initiative
        olivier.vitrac@gmail.com
"""

from __future__ import annotations

import asyncio
from typing import Callable

ProgressCallback = Callable[[float, str], None]
BatchProgressCallback = Callable[[float, int, str], None]


class OperationCancelled(Exception):
    """Raised when an operation observes an aborted signal."""

    def __init__(self, stage: str = ""):
        self.stage = stage
        message = "Operation cancelled"
        if stage:
            message += f" at stage '{stage}'"
        super().__init__(message)


class AbortSignal:
    """
    Flag shared between a caller and a running operation.

    The caller calls :meth:`abort`; the operation calls
    :meth:`raise_if_aborted` at its stage boundaries.
    """

    def __init__(self) -> None:
        self._aborted = False

    @property
    def aborted(self) -> bool:
        return self._aborted

    def abort(self) -> None:
        self._aborted = True

    def raise_if_aborted(self, stage: str = "") -> None:
        if self._aborted:
            raise OperationCancelled(stage)


def check_abort(signal: AbortSignal | None, stage: str = "") -> None:
    """Raise :class:`OperationCancelled` if ``signal`` is set."""
    if signal is not None:
        signal.raise_if_aborted(stage)


def report_progress(
    on_progress: ProgressCallback | None,
    progress: float,
    stage: str,
) -> None:
    """Forward ``progress`` clamped to [0, 1] to the callback, if any."""
    if on_progress is not None:
        on_progress(max(0.0, min(1.0, float(progress))), stage)


async def yield_control() -> None:
    """Give the event loop a chance to run other tasks."""
    await asyncio.sleep(0)
