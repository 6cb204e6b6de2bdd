from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, List, Optional

logger = logging.getLogger("chatcart.pipeline")


@dataclass
class PipelineStep:
    """Named step for the request pipeline runner."""
    name: str
    fn: Callable[[Any], None]
    skip_if: Optional[Callable[[Any], bool]] = None
    always_run: bool = False


class StepRunner:
    """Runs pipeline steps in order against one mutable request context."""

    def __init__(self, steps: List[PipelineStep]) -> None:
        names = [step.name for step in steps]
        if len(set(names)) != len(names):
            raise ValueError(f"duplicate step names in {names}")
        self._steps = steps

    @property
    def step_names(self) -> List[str]:
        return [step.name for step in self._steps]

    def run(self, context: Any) -> None:
        """Purpose: Execute steps in order with optional skip/always-run rules.
        Inputs/Outputs: Input is a mutable context object; no return value.
        Side Effects / State: Invokes step functions that may mutate context.
        Dependencies: PipelineStep.fn and PipelineStep.skip_if semantics.
        Failure Modes: Exceptions in step functions propagate to the caller; later
            steps, including always_run ones, do not run.
        If Removed: No request can be processed.
        Testing Notes: Verify skip_if and always_run logic with simple steps.
        """
        session_id = getattr(context, "session_id", "-")
        for step in self._steps:
            if not step.always_run and step.skip_if and step.skip_if(context):
                logger.debug("session=%s step=%s status=skipped", session_id, step.name)
                continue
            started = time.perf_counter()
            step.fn(context)
            logger.debug(
                "session=%s step=%s status=done elapsed_ms=%.1f",
                session_id,
                step.name,
                (time.perf_counter() - started) * 1000,
            )
