from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, List, Optional

logger = logging.getLogger("dashboard.pipeline")


@dataclass
class PipelineStep:
    """One named stage of the widget pipeline."""
    name: str
    fn: Callable[[Any], None]
    skip_if: Optional[Callable[[Any], bool]] = None
    always_run: bool = False


class PipelineRunner:
    """Runs steps in order over one mutable request context."""

    def __init__(self, steps: List[PipelineStep]) -> None:
        self._steps = list(steps)

    @property
    def step_names(self) -> List[str]:
        return [step.name for step in self._steps]

    def run(self, context: Any) -> None:
        """Purpose: Execute steps in order, honoring skip_if unless always_run is set.
        Inputs/Outputs: Input is the request context; no return value.
        Side Effects / State: Steps mutate the context; each executed step is recorded
            through ``context.log`` when the context has one.
        Dependencies: PipelineStep callables.
        Failure Modes: A step exception propagates after the steps marked always_run
            have executed, so finalization still happens.
        If Removed: The orchestrator cannot sequence ingest, model, and widget steps.
        Testing Notes: Make a step raise and confirm an always_run step still ran.
        """
        # Once a step fails, only always_run steps execute; the first error is re-raised.
        failure: Optional[BaseException] = None
        for step in self._steps:
            if failure is not None and not step.always_run:
                continue
            if not step.always_run and step.skip_if and step.skip_if(context):
                logger.debug("step=%s skipped", step.name)
                continue
            try:
                step.fn(context)
            except Exception as exc:
                if failure is not None:
                    logger.exception("step=%s failed during cleanup", step.name)
                    continue
                failure = exc
                _record(context, step.name, str(exc), "error")
                continue
            _record(context, step.name, "done")
        if failure is not None:
            raise failure


def _record(context: Any, step: str, detail: str, status: str = "success") -> None:
    log = getattr(context, "log", None)
    if callable(log):
        log(step, detail, status)
