#!/usr/bin/env python3
"""Deterministic, snapshot-restorable emulation session (Unicorn backend).

Time inside the guest is the instruction count: a code hook retires one tick
per executed instruction, so a timer read, a budget expiry or a breakpoint hit
lands on the same instruction on every replay. Nothing here reads the host
clock.

Usage as library::

    from emulation_session import EmulationSession

    with EmulationSession(arch, regions, firmware) as session:
        session.set_pc(firmware.entry)
        result = session.run_until(budget=100000)
        snap = session.snapshot()
        ...
        session.restore(snap)
"""

from __future__ import annotations

import dataclasses
import hashlib
import logging
import struct
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Set, Tuple

from unicorn import (
    UC_HOOK_CODE,
    UC_HOOK_INTR,
    UC_PROT_EXEC,
    UC_PROT_READ,
    UC_PROT_WRITE,
    Uc,
    UcError,
)

from firmware_image import FirmwareImage
from guest_abi import EXIT_TRAMPOLINE, PAGE_SIZE, ArchSpec
from harness_types import RunResult, SetupError, StopReason

log = logging.getLogger(__name__)

# emu_start needs an end address; no 32-bit instruction can sit here.
NO_UNTIL = 0xFFFFFFFF


def align_down(value: int) -> int:
    return value & ~(PAGE_SIZE - 1)


def align_up(value: int) -> int:
    return (value + PAGE_SIZE - 1) & ~(PAGE_SIZE - 1)


def uc_perms(perms: str) -> int:
    prot = 0
    if "r" in perms:
        prot |= UC_PROT_READ
    if "w" in perms:
        prot |= UC_PROT_WRITE
    if "x" in perms:
        prot |= UC_PROT_EXEC
    return prot


@dataclasses.dataclass
class MappedRegion:
    name: str
    base: int
    size: int
    perms: str
    mmio: bool = False

    @property
    def end(self) -> int:
        return self.base + self.size

    def contains(self, address: int, size: int) -> bool:
        return self.base <= address and address + size <= self.end


class Snapshot:
    """Opaque checkpoint of guest state; only EmulationSession looks inside."""

    __slots__ = ("_context", "_memory", "_icount", "_skip_once")

    def __init__(self, context: Any, memory: Dict[int, bytes], icount: int, skip_once: Optional[int]) -> None:
        self._context = context
        self._memory = memory
        self._icount = icount
        self._skip_once = skip_once

    @property
    def icount(self) -> int:
        return self._icount


class EmulationSession:
    """One guest machine, exclusively owned by one fuzz worker."""

    def __init__(
        self,
        arch: ArchSpec,
        regions: Iterable[Any],
        firmware: FirmwareImage,
        timer_address: Optional[int] = None,
        timer_shift: int = 0,
        console_address: Optional[int] = None,
        storage_address: Optional[int] = None,
        storage_data: Optional[bytes] = None,
    ) -> None:
        self.arch = arch
        self.icount = 0
        self.timer_shift = timer_shift
        self._uc: Optional[Uc] = None
        self._hooks: List[int] = []
        self._regions: List[MappedRegion] = []
        self._breakpoints: Set[int] = set()
        self._exits: FrozenSet[int] = frozenset()
        self._skip_once: Optional[int] = None
        self._budget = 0
        self._executed = 0
        self._stop: Optional[Tuple[StopReason, int, Dict[str, Any]]] = None
        self._resume_pc: Optional[int] = None
        self._last_pc: Optional[int] = None
        self._last_size = 0

        try:
            self._uc = Uc(arch.uc_arch, arch.uc_mode)
            for region in regions:
                self._map(str(region.name), region.base, region.size, region.perms)

            self._map("exit_trampoline", EXIT_TRAMPOLINE, PAGE_SIZE, "rx")
            loop = arch.idle_loop
            self._uc.mem_write(EXIT_TRAMPOLINE, loop * (PAGE_SIZE // len(loop)))

            self._load_segments(firmware)

            if timer_address is not None:
                self._map_mmio("timer", timer_address, self._timer_read, self._ignore_write)
            if console_address is not None:
                # Console disabled: writes vanish, reads see zero.
                self._map_mmio("console", console_address, self._zero_read, self._ignore_write)
            if storage_data is not None:
                if storage_address is None:
                    raise SetupError("storage image attached without an address")
                size = align_up(max(len(storage_data), 1))
                self._map("storage", storage_address, size, "rw")
                self._uc.mem_write(storage_address, storage_data)

            self._hooks.append(self._uc.hook_add(UC_HOOK_CODE, self._on_code))
            self._hooks.append(self._uc.hook_add(UC_HOOK_INTR, self._on_interrupt))
        except UcError as exc:
            self.close()
            raise SetupError("emulator setup failed: {}".format(exc)) from exc
        except SetupError:
            self.close()
            raise

        log.debug(
            "session ready: arch=%s regions=%s",
            arch.name,
            ", ".join("{}@0x{:08X}+0x{:X}".format(r.name, r.base, r.size) for r in self._regions),
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def __enter__(self) -> "EmulationSession":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    @property
    def closed(self) -> bool:
        return self._uc is None

    def close(self) -> None:
        uc = self._uc
        if uc is None:
            return
        self._uc = None
        for handle in self._hooks:
            uc.hook_del(handle)
        self._hooks = []
        for region in reversed(self._regions):
            uc.mem_unmap(region.base, region.size)
        self._regions = []
        self._breakpoints.clear()

    def _require_uc(self) -> Uc:
        if self._uc is None:
            raise RuntimeError("emulation session is closed")
        return self._uc

    # ------------------------------------------------------------------
    # Memory map
    # ------------------------------------------------------------------

    def _check_free(self, name: str, base: int, size: int) -> None:
        if base % PAGE_SIZE or size % PAGE_SIZE or size <= 0:
            raise SetupError(
                "region '{}' (0x{:08X}+0x{:X}) is not page aligned".format(name, base, size)
            )
        for region in self._regions:
            if base < region.end and region.base < base + size:
                raise SetupError(
                    "region '{}' overlaps '{}' at 0x{:08X}".format(name, region.name, region.base)
                )

    def _map(self, name: str, base: int, size: int, perms: str) -> None:
        self._check_free(name, base, size)
        self._require_uc().mem_map(base, size, uc_perms(perms))
        self._regions.append(MappedRegion(name=name, base=base, size=size, perms=perms))

    def _map_mmio(self, name: str, base: int, read_cb: Any, write_cb: Any) -> None:
        self._check_free(name, base, PAGE_SIZE)
        self._require_uc().mmio_map(base, PAGE_SIZE, read_cb, None, write_cb, None)
        self._regions.append(MappedRegion(name=name, base=base, size=PAGE_SIZE, perms="rw", mmio=True))

    def _region_for(self, address: int, size: int = 1) -> Optional[MappedRegion]:
        for region in self._regions:
            if region.contains(address, size):
                return region
        return None

    def _load_segments(self, firmware: FirmwareImage) -> None:
        uc = self._require_uc()
        for seg in firmware.segments:
            span = max(seg.mem_size, len(seg.data))
            # Map whatever pages of the segment the memory map leaves uncovered.
            run_start: Optional[int] = None
            page = align_down(seg.address)
            top = align_up(seg.address + span)
            while page <= top:
                covered = page == top or self._region_for(page, PAGE_SIZE) is not None
                if not covered and run_start is None:
                    run_start = page
                elif covered and run_start is not None:
                    self._map("segment@0x{:08X}".format(run_start), run_start, page - run_start, seg.perms or "rwx")
                    run_start = None
                page += PAGE_SIZE
            if seg.data:
                uc.mem_write(seg.address, seg.data)

    def is_writable(self, address: int, size: int) -> bool:
        region = self._region_for(address, max(size, 1))
        return region is not None and not region.mmio and "w" in region.perms

    def read_memory(self, address: int, size: int) -> bytes:
        return bytes(self._require_uc().mem_read(address, size))

    def write_memory(self, address: int, data: bytes) -> None:
        self._require_uc().mem_write(address, data)

    # ------------------------------------------------------------------
    # Registers
    # ------------------------------------------------------------------

    def read_reg(self, reg: int) -> int:
        return self._require_uc().reg_read(reg)

    def write_reg(self, reg: int, value: int) -> None:
        self._require_uc().reg_write(reg, value)

    @property
    def pc(self) -> int:
        return self.arch.code_address(self.read_reg(self.arch.pc_reg))

    def set_pc(self, address: int) -> None:
        self.write_reg(self.arch.pc_reg, self.arch.branch_target(address))

    # ------------------------------------------------------------------
    # Devices
    # ------------------------------------------------------------------

    def _timer_read(self, uc: Uc, offset: int, size: int, user_data: Any) -> int:
        return (self.icount >> self.timer_shift) & ((1 << (size * 8)) - 1)

    def _zero_read(self, uc: Uc, offset: int, size: int, user_data: Any) -> int:
        return 0

    def _ignore_write(self, uc: Uc, offset: int, size: int, value: int, user_data: Any) -> None:
        return None

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def add_breakpoint(self, address: int) -> None:
        self._breakpoints.add(self.arch.code_address(address))

    def remove_breakpoint(self, address: int) -> None:
        self._breakpoints.discard(self.arch.code_address(address))

    def _halt(self, reason: StopReason, pc: int, **extra: Any) -> None:
        if self._stop is None:
            self._stop = (reason, pc, extra)
        self._require_uc().emu_stop()

    def _on_code(self, uc: Uc, address: int, size: int, user_data: Any) -> None:
        if address == self._skip_once:
            self._skip_once = None
        elif address in self._exits:
            self._halt(StopReason.EXIT, address)
            return
        elif address in self._breakpoints:
            self._skip_once = address
            self._halt(StopReason.BREAKPOINT, address)
            return
        if self._executed >= self._budget:
            self._halt(StopReason.BUDGET, address)
            return
        self._executed += 1
        self.icount += 1
        self._last_pc = address
        self._last_size = size

    def _on_interrupt(self, uc: Uc, intno: int, user_data: Any) -> None:
        pc = self._last_pc if self._last_pc is not None else self.pc
        if intno in self.arch.sync_exit_interrupts:
            args = tuple(uc.reg_read(reg) for reg in self.arch.sync_regs)
            # Some targets report the trap PC, some the next one; resume after it either way.
            self._resume_pc = pc + self._last_size
            self._halt(StopReason.SYNC_EXIT, pc, interrupt=intno, sync_args=args)
        else:
            self._halt(StopReason.FAULT, pc, interrupt=intno, error=self.arch.describe_exception(intno))

    def run_until(self, budget: int, exits: Iterable[int] = ()) -> RunResult:
        """Run from the current PC until an exit, trap, fault, or the budget.

        Guest faults are reported in the result, never raised.
        """
        uc = self._require_uc()
        self._exits = frozenset(self.arch.code_address(a) for a in exits)
        self._budget = budget
        self._executed = 0
        self._stop = None
        self._resume_pc = None
        self._last_pc = None
        self._last_size = 0
        start = self.pc
        if self._skip_once != start:
            # A breakpoint is only stepped over when resuming from it.
            self._skip_once = None

        try:
            uc.emu_start(self.arch.branch_target(start), NO_UNTIL)
        except UcError as exc:
            if self._stop is None:
                pc = self._last_pc if self._last_pc is not None else start
                self._stop = (StopReason.FAULT, pc, {"error": str(exc)})

        if self._stop is None:
            self._stop = (StopReason.HALT, self.pc, {})
        if self._resume_pc is not None:
            self.set_pc(self._resume_pc)

        reason, pc, extra = self._stop
        result = RunResult(
            reason=reason,
            pc=pc,
            executed=self._executed,
            icount=self.icount,
            interrupt=extra.get("interrupt"),
            sync_args=extra.get("sync_args", ()),
            error=extra.get("error"),
        )
        log.debug(
            "run_until: start=0x%08X stop=%s pc=0x%08X executed=%d",
            start, result.reason.value, result.pc, result.executed,
        )
        return result

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------

    def _writable_regions(self) -> List[MappedRegion]:
        return [r for r in self._regions if "w" in r.perms and not r.mmio]

    def snapshot(self) -> Snapshot:
        uc = self._require_uc()
        memory = {r.base: bytes(uc.mem_read(r.base, r.size)) for r in self._writable_regions()}
        return Snapshot(uc.context_save(), memory, self.icount, self._skip_once)

    def restore(self, snap: Snapshot) -> None:
        uc = self._require_uc()
        uc.context_restore(snap._context)
        for base, data in snap._memory.items():
            uc.mem_write(base, data)
        self.icount = snap._icount
        self._skip_once = snap._skip_once

    def state_digest(self) -> str:
        """SHA-256 over registers, writable memory and the virtual clock."""
        uc = self._require_uc()
        h = hashlib.sha256()
        for reg in self.arch.digest_regs:
            h.update(struct.pack("<Q", uc.reg_read(reg) & 0xFFFFFFFFFFFFFFFF))
        for region in self._writable_regions():
            h.update(struct.pack("<QQ", region.base, region.size))
            h.update(bytes(uc.mem_read(region.base, region.size)))
        h.update(struct.pack("<Q", self.icount))
        return h.hexdigest()
