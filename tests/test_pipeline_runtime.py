from types import SimpleNamespace

import pytest

from chatcart.pipeline_runtime import PipelineStep, StepRunner


def test_steps_run_in_order_with_skips():
    calls = []
    runner = StepRunner(
        [
            PipelineStep("first", lambda ctx: calls.append("first")),
            PipelineStep("skipped", lambda ctx: calls.append("skipped"), skip_if=lambda ctx: True),
            PipelineStep("last", lambda ctx: calls.append("last"), skip_if=lambda ctx: True, always_run=True),
        ]
    )
    runner.run(SimpleNamespace(session_id="s"))
    assert calls == ["first", "last"]
    assert runner.step_names == ["first", "skipped", "last"]


def test_step_errors_stop_the_run():
    calls = []

    def boom(ctx):
        raise RuntimeError("boom")

    runner = StepRunner([PipelineStep("boom", boom), PipelineStep("after", calls.append, always_run=True)])
    with pytest.raises(RuntimeError):
        runner.run(SimpleNamespace())
    assert calls == []


def test_duplicate_step_names_are_rejected():
    with pytest.raises(ValueError):
        StepRunner([PipelineStep("a", print), PipelineStep("a", print)])
