"""
Tests for the objective oracle: stop reason -> verdict, and replay checks.
"""
import pytest

from guest_abi import SYNC_END_CRASH, SYNC_END_OK, SYNC_INPUT
from harness_types import IterationResult, RunResult, StopReason, Verdict
from objective_oracle import DeterminismViolation, check_replay, classify, describe


def _run(reason, sync_args=(), error=None, pc=0x10000010, executed=7):
    return RunResult(reason=reason, pc=pc, executed=executed, icount=executed, sync_args=sync_args, error=error)


def _iteration(verdict=Verdict.CONTINUE, digest="ab" * 32, executed=10):
    return IterationResult(
        input_name="case",
        input_len=1,
        delivered_len=1,
        verdict=verdict,
        reason=StopReason.EXIT,
        pc=0x7FFF0000,
        executed=executed,
        digest=digest,
        detail="",
    )


@pytest.mark.parametrize(
    "run,expected",
    [
        (_run(StopReason.FAULT, error="undefined instruction"), Verdict.OBJECTIVE),
        (_run(StopReason.HALT), Verdict.OBJECTIVE),
        (_run(StopReason.BUDGET), Verdict.TIMEOUT),
        (_run(StopReason.EXIT), Verdict.CONTINUE),
        (_run(StopReason.BREAKPOINT), Verdict.CONTINUE),
        (_run(StopReason.SYNC_EXIT, sync_args=(SYNC_INPUT, 0x20008000, 0x1000)), Verdict.CONTINUE),
        (_run(StopReason.SYNC_EXIT, sync_args=(SYNC_END_OK, 0, 0)), Verdict.CONTINUE),
        (_run(StopReason.SYNC_EXIT, sync_args=(SYNC_END_CRASH, 0, 0)), Verdict.OBJECTIVE),
        (_run(StopReason.SYNC_EXIT, sync_args=(0x99, 0, 0)), Verdict.OBJECTIVE),
        (_run(StopReason.SYNC_EXIT), Verdict.OBJECTIVE),
    ],
)
def test_classify(run, expected):
    assert classify(run) is expected


def test_describe_fault():
    text = describe(_run(StopReason.FAULT, error="data abort", pc=0x10000020))
    assert text == "guest fault at 0x10000020: data abort"


def test_describe_budget():
    assert "after 7 instructions" in describe(_run(StopReason.BUDGET))


def test_describe_sync_exit():
    assert describe(_run(StopReason.SYNC_EXIT, sync_args=(SYNC_END_OK, 0, 0))).startswith("sync exit (end_ok)")
    assert "reported a crash" in describe(_run(StopReason.SYNC_EXIT, sync_args=(SYNC_END_CRASH, 0, 0)))
    assert "unknown command 153" in describe(_run(StopReason.SYNC_EXIT, sync_args=(153, 0, 0)))


def test_describe_exit():
    assert describe(_run(StopReason.EXIT, pc=0x7FFF0000)) == "exit at 0x7FFF0000"


def test_matching_replay_passes():
    check_replay(_iteration(), _iteration())


@pytest.mark.parametrize(
    "second,field",
    [
        (_iteration(verdict=Verdict.OBJECTIVE), "verdict"),
        (_iteration(digest="cd" * 32), "digest"),
        (_iteration(executed=11), "executed"),
    ],
)
def test_divergent_replay_raises(second, field):
    with pytest.raises(DeterminismViolation) as excinfo:
        check_replay(_iteration(), second)
    assert field in excinfo.value.details
    assert excinfo.value.first.input_name == "case"
    assert "diverged" in str(excinfo.value)
