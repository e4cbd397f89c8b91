#!/usr/bin/env python3
"""Host-to-guest input channels.

Each channel moves one fuzz input into guest memory and leaves the session
ready to resume at the Target Entry Point. The channel is picked once from the
profile and never changes during a session.

    direct_call  write buffer + argument registers, jump straight to the entry
                 point with the link register aimed at the exit trampoline.
    breakpoint   let the firmware boot, stop on a host breakpoint at the entry
                 point, then overwrite the buffer and argument registers.
    sync_exit    the firmware asks for input with its supervisor-call trap;
                 the host fills the buffer the guest named and returns the
                 length in the return register.

Register and trap conventions per architecture live in guest_abi.
"""

from __future__ import annotations

import dataclasses
import logging
import struct
from typing import Any, Dict, Optional, Tuple, Type

from emulation_session import EmulationSession
from firmware_image import FirmwareImage
from guest_abi import EXIT_TRAMPOLINE, SYNC_COMMANDS, SYNC_INPUT, ArchSpec
from harness_types import FuzzInput, RunResult, SetupError, StopReason

log = logging.getLogger(__name__)


class DeliveryError(Exception):
    """The input could not be placed; the iteration is reported as a timeout."""


@dataclasses.dataclass(frozen=True)
class ResumePoint:
    address: int
    delivered_len: int


class InputChannel:
    name = ""

    def __init__(self, profile: Any, firmware: FirmwareImage, arch: ArchSpec) -> None:
        self.profile = profile
        self.firmware = firmware
        self.arch = arch
        self.setup_budget = profile.budget.setup

    @property
    def iteration_exits(self) -> Tuple[int, ...]:
        return ()

    def prepare(self, session: EmulationSession) -> None:
        """Bring the guest to the point where the snapshot is taken."""
        raise NotImplementedError

    def deliver(self, session: EmulationSession, fuzz_input: FuzzInput) -> ResumePoint:
        raise NotImplementedError

    # ------------------------------------------------------------------
    # Shared helpers
    # ------------------------------------------------------------------

    def _vector_table(self, session: EmulationSession) -> Optional[Tuple[int, int]]:
        table = self.profile.boot.vector_table
        if table is None:
            return None
        sp, reset = struct.unpack("<II", session.read_memory(table, 8))
        return sp, self.arch.code_address(reset)

    def initial_stack(self, session: EmulationSession) -> Optional[int]:
        if self.profile.boot.stack_top is not None:
            return self.profile.boot.stack_top
        vectors = self._vector_table(session)
        return vectors[0] if vectors else None

    def boot(self, session: EmulationSession) -> None:
        """Point the CPU at the firmware's reset path."""
        vectors = self._vector_table(session)
        if self.profile.boot.entry is not None:
            entry = self.firmware.resolve(self.profile.boot.entry)
        elif vectors is not None:
            entry = vectors[1]
        else:
            entry = self.firmware.entry
        stack = self.initial_stack(session)
        if stack is not None:
            session.write_reg(self.arch.sp_reg, stack)
        session.set_pc(entry)

    def write_input(self, session: EmulationSession, address: int, capacity: int, fuzz_input: FuzzInput) -> int:
        data = fuzz_input.data[:capacity]
        if len(data) < len(fuzz_input):
            log.debug("%s: truncated input from %d to %d bytes", self.name, len(fuzz_input), len(data))
        if data:
            if not session.is_writable(address, len(data)):
                raise DeliveryError(
                    "input buffer 0x{:08X}+{} is not writable guest memory".format(address, len(data))
                )
            session.write_memory(address, data)
        return len(data)

    def check_buffer(self, session: EmulationSession, address: int, capacity: int) -> None:
        if not session.is_writable(address, capacity):
            raise SetupError(
                "{}: input buffer 0x{:08X}+{} is not writable guest memory".format(self.name, address, capacity)
            )

    def _expect(self, result: RunResult, reason: StopReason, what: str) -> None:
        if result.reason != reason:
            raise SetupError(
                "{}: guest did not reach {} within {} instructions (stopped: {} at 0x{:08X}{})".format(
                    self.name,
                    what,
                    self.setup_budget,
                    result.reason.value,
                    result.pc,
                    ", " + result.error if result.error else "",
                )
            )


class DirectCall(InputChannel):
    name = "direct_call"

    def __init__(self, profile: Any, firmware: FirmwareImage, arch: ArchSpec) -> None:
        super().__init__(profile, firmware, arch)
        self.entry = firmware.resolve(profile.target.entry)
        self.buffer = firmware.resolve(profile.input.buffer)
        self.capacity = profile.input.capacity
        self.init = firmware.resolve(profile.boot.init) if profile.boot.init is not None else None
        self.stack_top: Optional[int] = None

    @property
    def iteration_exits(self) -> Tuple[int, ...]:
        return (EXIT_TRAMPOLINE,)

    def _call(self, session: EmulationSession, address: int) -> None:
        session.write_reg(self.arch.sp_reg, self.stack_top)
        session.write_reg(self.arch.link_reg, self.arch.branch_target(EXIT_TRAMPOLINE))
        session.set_pc(address)

    def prepare(self, session: EmulationSession) -> None:
        self.stack_top = self.initial_stack(session)
        if self.stack_top is None:
            raise SetupError("direct_call needs boot.stack_top or boot.vector_table")
        self.check_buffer(session, self.buffer, self.capacity)
        if self.init is None:
            return
        self._call(session, self.init)
        result = session.run_until(self.setup_budget, exits=(EXIT_TRAMPOLINE,))
        self._expect(result, StopReason.EXIT, "the end of init 0x{:08X}".format(self.init))

    def deliver(self, session: EmulationSession, fuzz_input: FuzzInput) -> ResumePoint:
        length = self.write_input(session, self.buffer, self.capacity, fuzz_input)
        session.write_reg(self.arch.arg_regs[0], self.buffer)
        session.write_reg(self.arch.arg_regs[1], length)
        self._call(session, self.entry)
        return ResumePoint(address=self.entry, delivered_len=length)


class BreakpointTrap(InputChannel):
    name = "breakpoint"

    def __init__(self, profile: Any, firmware: FirmwareImage, arch: ArchSpec) -> None:
        super().__init__(profile, firmware, arch)
        self.entry = firmware.resolve(profile.target.entry)
        self.exit = firmware.resolve(profile.target.exit) if profile.target.exit is not None else None
        self.buffer = firmware.resolve(profile.input.buffer)
        self.capacity = profile.input.capacity

    def prepare(self, session: EmulationSession) -> None:
        self.check_buffer(session, self.buffer, self.capacity)
        self.boot(session)
        session.add_breakpoint(self.entry)
        if self.exit is not None:
            session.add_breakpoint(self.exit)
        result = session.run_until(self.setup_budget)
        self._expect(result, StopReason.BREAKPOINT, "the entry breakpoint 0x{:08X}".format(self.entry))
        if result.pc != self.arch.code_address(self.entry):
            raise SetupError(
                "breakpoint: first stop was 0x{:08X}, not the entry point 0x{:08X}".format(result.pc, self.entry)
            )

    def deliver(self, session: EmulationSession, fuzz_input: FuzzInput) -> ResumePoint:
        if session.pc != self.arch.code_address(self.entry):
            raise DeliveryError(
                "guest is suspended at 0x{:08X}, not at the entry point 0x{:08X}".format(session.pc, self.entry)
            )
        length = self.write_input(session, self.buffer, self.capacity, fuzz_input)
        session.write_reg(self.arch.arg_regs[0], self.buffer)
        session.write_reg(self.arch.arg_regs[1], length)
        return ResumePoint(address=self.entry, delivered_len=length)


class SyncExit(InputChannel):
    name = "sync_exit"

    def prepare(self, session: EmulationSession) -> None:
        self.boot(session)
        result = session.run_until(self.setup_budget)
        self._expect(result, StopReason.SYNC_EXIT, "an input request")
        command = result.sync_args[0] if result.sync_args else None
        if command != SYNC_INPUT:
            raise SetupError(
                "sync_exit: first guest request was {!r}, expected input".format(
                    SYNC_COMMANDS.get(command, command)
                )
            )

    def deliver(self, session: EmulationSession, fuzz_input: FuzzInput) -> ResumePoint:
        command_reg, buffer_reg, capacity_reg = self.arch.sync_regs
        command = session.read_reg(command_reg)
        if command != SYNC_INPUT:
            raise DeliveryError("guest is not waiting for input (command {})".format(command))
        buffer = session.read_reg(buffer_reg)
        capacity = session.read_reg(capacity_reg)
        if not session.is_writable(buffer, capacity):
            raise DeliveryError(
                "guest input buffer 0x{:08X}+{} is not writable guest memory".format(buffer, capacity)
            )
        length = self.write_input(session, buffer, capacity, fuzz_input)
        session.write_reg(self.arch.return_reg, length)
        return ResumePoint(address=session.pc, delivered_len=length)


CHANNELS: Dict[str, Type[InputChannel]] = {
    cls.name: cls for cls in (DirectCall, BreakpointTrap, SyncExit)
}


def build_channel(profile: Any, firmware: FirmwareImage, arch: ArchSpec) -> InputChannel:
    try:
        cls = CHANNELS[profile.channel]
    except KeyError:
        raise SetupError("unknown channel '{}'".format(profile.channel)) from None
    return cls(profile, firmware, arch)
