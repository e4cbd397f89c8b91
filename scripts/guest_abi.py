#!/usr/bin/env python3
"""Per-architecture guest calling conventions for the input channels.

Target Entry Point ABI (every architecture)::

    int entry(const uint8_t *buf, size_t len);

``buf`` and ``len`` travel in the first two argument registers and the status
comes back in the return register. Returning is a normal completion; the
crash signal is abnormal termination (undefined instruction, memory fault, or
any guest exception that is not the sync-exit trap).

Sync-exit protocol: the guest executes the architecture's supervisor-call
instruction with a command in the first sync register::

    SYNC_INPUT     (1)  arg1 = buffer, arg2 = capacity; host returns length
    SYNC_END_OK    (2)  iteration finished normally
    SYNC_END_CRASH (3)  guest reports a failure it detected itself

    arch     trap      command  arg1  arg2  return
    armv7m   svc #n    r0       r1    r2    r0
    riscv32  ecall     a0       a1    a2    a0
"""

from __future__ import annotations

import dataclasses
from typing import Dict, FrozenSet, Tuple

import unicorn
from unicorn import arm_const as arm
from unicorn import riscv_const as rv

SYNC_INPUT = 1
SYNC_END_OK = 2
SYNC_END_CRASH = 3

SYNC_COMMANDS = {
    SYNC_INPUT: "input",
    SYNC_END_OK: "end_ok",
    SYNC_END_CRASH: "end_crash",
}

# One page of host-owned code; returning here ends a direct call.
EXIT_TRAMPOLINE = 0x7FFF0000
PAGE_SIZE = 0x1000

# QEMU exception numbers as reported through UC_HOOK_INTR.
ARM_EXCP_UDEF = 1
ARM_EXCP_SWI = 2
ARM_EXCP_PREFETCH_ABORT = 3
ARM_EXCP_DATA_ABORT = 4
ARM_EXCP_BKPT = 7

RISCV_EXCP_ILLEGAL_INST = 2
RISCV_EXCP_BREAKPOINT = 3
RISCV_EXCP_U_ECALL = 8
RISCV_EXCP_S_ECALL = 9
RISCV_EXCP_M_ECALL = 11


@dataclasses.dataclass(frozen=True)
class ArchSpec:
    name: str
    uc_arch: int
    uc_mode: int
    thumb: bool
    word_size: int
    pc_reg: int
    sp_reg: int
    link_reg: int
    return_reg: int
    arg_regs: Tuple[int, ...]
    sync_regs: Tuple[int, int, int]
    sync_exit_interrupts: FrozenSet[int]
    idle_loop: bytes  # branch-to-self, fills the exit trampoline
    digest_regs: Tuple[int, ...]
    exception_names: Dict[int, str] = dataclasses.field(default_factory=dict)

    def code_address(self, address: int) -> int:
        """Address as the emulator reports it (Thumb bit cleared)."""
        return address & ~1 if self.thumb else address

    def branch_target(self, address: int) -> int:
        """Address suitable for PC/link registers and emu_start."""
        return address | 1 if self.thumb else address

    def describe_exception(self, intno: int) -> str:
        return self.exception_names.get(intno, "exception {}".format(intno))


ARMV7M = ArchSpec(
    name="armv7m",
    uc_arch=unicorn.UC_ARCH_ARM,
    uc_mode=unicorn.UC_MODE_THUMB | unicorn.UC_MODE_MCLASS,
    thumb=True,
    word_size=4,
    pc_reg=arm.UC_ARM_REG_PC,
    sp_reg=arm.UC_ARM_REG_SP,
    link_reg=arm.UC_ARM_REG_LR,
    return_reg=arm.UC_ARM_REG_R0,
    arg_regs=(arm.UC_ARM_REG_R0, arm.UC_ARM_REG_R1, arm.UC_ARM_REG_R2, arm.UC_ARM_REG_R3),
    sync_regs=(arm.UC_ARM_REG_R0, arm.UC_ARM_REG_R1, arm.UC_ARM_REG_R2),
    sync_exit_interrupts=frozenset({ARM_EXCP_SWI}),
    idle_loop=b"\xfe\xe7",  # b .
    digest_regs=(
        arm.UC_ARM_REG_R0, arm.UC_ARM_REG_R1, arm.UC_ARM_REG_R2, arm.UC_ARM_REG_R3,
        arm.UC_ARM_REG_R4, arm.UC_ARM_REG_R5, arm.UC_ARM_REG_R6, arm.UC_ARM_REG_R7,
        arm.UC_ARM_REG_R8, arm.UC_ARM_REG_R9, arm.UC_ARM_REG_R10, arm.UC_ARM_REG_R11,
        arm.UC_ARM_REG_R12, arm.UC_ARM_REG_SP, arm.UC_ARM_REG_LR, arm.UC_ARM_REG_PC,
        arm.UC_ARM_REG_XPSR,
    ),
    exception_names={
        ARM_EXCP_UDEF: "undefined instruction",
        ARM_EXCP_SWI: "svc",
        ARM_EXCP_PREFETCH_ABORT: "prefetch abort",
        ARM_EXCP_DATA_ABORT: "data abort",
        ARM_EXCP_BKPT: "bkpt",
    },
)

RISCV32 = ArchSpec(
    name="riscv32",
    uc_arch=unicorn.UC_ARCH_RISCV,
    uc_mode=unicorn.UC_MODE_RISCV32,
    thumb=False,
    word_size=4,
    pc_reg=rv.UC_RISCV_REG_PC,
    sp_reg=rv.UC_RISCV_REG_SP,
    link_reg=rv.UC_RISCV_REG_RA,
    return_reg=rv.UC_RISCV_REG_A0,
    arg_regs=(rv.UC_RISCV_REG_A0, rv.UC_RISCV_REG_A1, rv.UC_RISCV_REG_A2, rv.UC_RISCV_REG_A3),
    sync_regs=(rv.UC_RISCV_REG_A0, rv.UC_RISCV_REG_A1, rv.UC_RISCV_REG_A2),
    # QEMU raises U_ECALL and remaps by privilege level inside do_interrupt,
    # which the interrupt hook runs ahead of; accept every ecall cause.
    sync_exit_interrupts=frozenset({RISCV_EXCP_U_ECALL, RISCV_EXCP_S_ECALL, RISCV_EXCP_M_ECALL}),
    idle_loop=b"\x6f\x00\x00\x00",  # jal x0, 0
    digest_regs=tuple(getattr(rv, "UC_RISCV_REG_X{}".format(i)) for i in range(1, 32)) + (
        rv.UC_RISCV_REG_PC,
        rv.UC_RISCV_REG_MSTATUS,
        rv.UC_RISCV_REG_MEPC,
        rv.UC_RISCV_REG_MCAUSE,
    ),
    exception_names={
        RISCV_EXCP_ILLEGAL_INST: "illegal instruction",
        RISCV_EXCP_BREAKPOINT: "ebreak",
        RISCV_EXCP_U_ECALL: "ecall",
        RISCV_EXCP_S_ECALL: "ecall",
        RISCV_EXCP_M_ECALL: "ecall",
    },
)

ARCHITECTURES: Dict[str, ArchSpec] = {spec.name: spec for spec in (ARMV7M, RISCV32)}


def lookup_arch(name: str) -> ArchSpec:
    try:
        return ARCHITECTURES[name]
    except KeyError:
        raise KeyError(
            "unsupported arch '{}'. Supported: {}".format(name, sorted(ARCHITECTURES))
        ) from None
