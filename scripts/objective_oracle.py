"""Objective oracle: map an emulator stop to a fuzzing verdict.

    fault / halt                       -> objective
    sync_exit END_CRASH or unknown cmd -> objective
    budget                             -> timeout
    exit / breakpoint                  -> continue
    sync_exit INPUT or END_OK          -> continue

No guest output is interpreted here; log markers belong to whatever drives
the harness.

Replays are held to the same standard: the same input from the same snapshot
must give the same verdict and the same guest state, otherwise the harness
itself is broken and a DeterminismViolation is raised.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

from guest_abi import SYNC_COMMANDS, SYNC_END_CRASH, SYNC_END_OK, SYNC_INPUT
from harness_types import IterationResult, RunResult, StopReason, Verdict

RESUMABLE_SYNC_COMMANDS = frozenset({SYNC_INPUT, SYNC_END_OK})


class DeterminismViolation(Exception):
    """A replay from the same snapshot diverged from the first run.

    Attributes:
        first: The original IterationResult.
        second: The diverging replay.
        details: Which observations differed.
    """

    def __init__(self, first: IterationResult, second: IterationResult, details: Optional[Dict[str, Any]] = None) -> None:
        self.first = first
        self.second = second
        self.details = details or {}
        super().__init__(
            "replay of {!r} diverged: {}".format(
                first.input_name or "<input>",
                ", ".join("{} {} != {}".format(k, a, b) for k, (a, b) in sorted(self.details.items())),
            )
        )


def classify(result: RunResult) -> Verdict:
    reason = result.reason
    if reason == StopReason.BUDGET:
        return Verdict.TIMEOUT
    if reason in (StopReason.EXIT, StopReason.BREAKPOINT):
        return Verdict.CONTINUE
    if reason == StopReason.SYNC_EXIT:
        command = result.sync_args[0] if result.sync_args else None
        if command in RESUMABLE_SYNC_COMMANDS:
            return Verdict.CONTINUE
        return Verdict.OBJECTIVE
    # FAULT, HALT: the guest terminated abnormally.
    return Verdict.OBJECTIVE


def describe(result: RunResult) -> str:
    """One-line summary of a stop, for reports."""
    where = "0x{:08X}".format(result.pc)
    if result.reason == StopReason.FAULT:
        return "guest fault at {}: {}".format(where, result.error or "unknown")
    if result.reason == StopReason.BUDGET:
        return "instruction budget exhausted at {} after {} instructions".format(where, result.executed)
    if result.reason == StopReason.SYNC_EXIT:
        command = result.sync_args[0] if result.sync_args else None
        label = SYNC_COMMANDS.get(command, "unknown command {}".format(command))
        if command == SYNC_END_CRASH:
            return "guest reported a crash via sync exit at {}".format(where)
        return "sync exit ({}) at {}".format(label, where)
    if result.reason == StopReason.HALT:
        return "emulator halted at {}".format(where)
    return "{} at {}".format(result.reason.value, where)


def check_replay(first: IterationResult, second: IterationResult) -> None:
    """Raise DeterminismViolation if two runs of one input disagree."""
    details: Dict[str, Any] = {}
    if first.verdict != second.verdict:
        details["verdict"] = (first.verdict.value, second.verdict.value)
    if first.digest != second.digest:
        details["digest"] = (first.digest[:16], second.digest[:16])
    if first.executed != second.executed:
        details["executed"] = (first.executed, second.executed)
    if details:
        raise DeterminismViolation(first, second, details)
