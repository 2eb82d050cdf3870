from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict

from studyquiz.errors import OperationCancelled


@dataclass
class CancellationToken:
    """Cooperative cancellation flag polled at loop boundaries.

    ``stage`` and ``epoch`` identify which run of a long-running stage the token
    belongs to, so a stale run can tell it has been superseded.
    """

    stage: str = ""
    epoch: int = 0
    _cancelled: bool = field(default=False, repr=False)

    def cancel(self) -> None:
        self._cancelled = True

    def is_cancelled(self) -> bool:
        return self._cancelled

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise OperationCancelled(f"{self.stage or 'operation'} cancelled")


class OperationEpochs:
    """Hands out one active token per stage and answers "is this run still current"."""

    def __init__(self) -> None:
        self._counters: Dict[str, int] = {}
        self._active: Dict[str, CancellationToken] = {}

    def begin(self, stage: str) -> CancellationToken:
        # Starting a new run invalidates the previous token without aborting it.
        epoch = self._counters.get(stage, 0) + 1
        self._counters[stage] = epoch
        token = CancellationToken(stage=stage, epoch=epoch)
        self._active[stage] = token
        return token

    def active(self, stage: str) -> CancellationToken | None:
        return self._active.get(stage)

    def is_latest(self, token: CancellationToken) -> bool:
        """True while no newer run of the stage has started, even if ``token`` was cancelled."""
        return self._counters.get(token.stage) == token.epoch

    def is_current(self, token: CancellationToken) -> bool:
        return self.is_latest(token) and not token.is_cancelled()

    def cancel(self, stage: str) -> bool:
        token = self._active.get(stage)
        if token is None or token.is_cancelled():
            return False
        token.cancel()
        return True

    def invalidate(self, stage: str) -> None:
        """Bump the epoch so any in-flight run of ``stage`` can no longer commit."""
        self._counters[stage] = self._counters.get(stage, 0) + 1
        token = self._active.pop(stage, None)
        if token is not None:
            token.cancel()
