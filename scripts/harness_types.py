#!/usr/bin/env python3
"""Shared harness data structures and helpers."""

from __future__ import annotations

import dataclasses
import enum
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple


class SetupError(Exception):
    """Fatal problem building the emulation session (before any iteration)."""


class StopReason(enum.Enum):
    EXIT = "exit"              # returned into the host exit trampoline
    BREAKPOINT = "breakpoint"
    SYNC_EXIT = "sync_exit"
    FAULT = "fault"
    BUDGET = "budget"
    HALT = "halt"              # emulator stopped without any of the above


class Verdict(enum.Enum):
    CONTINUE = "continue"
    OBJECTIVE = "objective"
    TIMEOUT = "timeout"


@dataclasses.dataclass(frozen=True)
class FuzzInput:
    data: bytes
    name: str = ""

    def __len__(self) -> int:
        return len(self.data)

    @classmethod
    def from_file(cls, path: str | Path) -> "FuzzInput":
        path = Path(path)
        return cls(data=path.read_bytes(), name=str(path))

    @classmethod
    def from_hex(cls, text: str) -> "FuzzInput":
        cleaned = text.strip()
        if cleaned.lower().startswith("0x"):
            cleaned = cleaned[2:]
        try:
            data = bytes.fromhex(cleaned)
        except ValueError:
            raise ValueError("invalid hex input: {!r}".format(text)) from None
        return cls(data=data, name="hex:{}".format(cleaned.lower()))


@dataclasses.dataclass
class RunResult:
    """Outcome of a single ``run_until`` call."""

    reason: StopReason
    pc: int
    executed: int  # instructions retired during this run
    icount: int  # session virtual clock at the stop
    interrupt: Optional[int] = None
    sync_args: Tuple[int, ...] = ()
    error: Optional[str] = None


@dataclasses.dataclass
class IterationResult:
    """One fuzz iteration, as handed back to the driving engine."""

    input_name: str
    input_len: int
    delivered_len: int
    verdict: Verdict
    reason: Optional[StopReason]
    pc: Optional[int]
    executed: int
    digest: str
    detail: str
    replays: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "input_name": self.input_name,
            "input_len": self.input_len,
            "delivered_len": self.delivered_len,
            "verdict": self.verdict.value,
            "reason": self.reason.value if self.reason is not None else None,
            "pc": "0x{:08X}".format(self.pc) if self.pc is not None else None,
            "executed": self.executed,
            "digest": self.digest,
            "detail": self.detail,
            "replays": self.replays,
        }


def parse_hex_inputs(values: Iterable[str]) -> List[FuzzInput]:
    return [FuzzInput.from_hex(v) for v in values]


def collect_inputs(paths: Iterable[str | Path]) -> List[FuzzInput]:
    """Expand files and directories into inputs.

    Directories are walked recursively; files within are taken in sorted
    order so that repeated campaigns see the same sequence.
    """
    inputs: List[FuzzInput] = []
    for raw in paths:
        path = Path(raw)
        if path.is_dir():
            for child in sorted(p for p in path.rglob("*") if p.is_file()):
                inputs.append(FuzzInput.from_file(child))
        elif path.is_file():
            inputs.append(FuzzInput.from_file(path))
        else:
            raise FileNotFoundError("input not found: {}".format(path))
    return inputs
