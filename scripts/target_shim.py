#!/usr/bin/env python3
"""Reference guest images for every architecture and input channel.

No cross toolchain needed: a handful of RV32I and Thumb encoders build the
code directly, the same way the slot image generators hand-encode their
Cortex-M stubs.

Every image exposes the same Target Entry Point::

    int fuzz_entry(const uint8_t *buf, size_t len)
    {
        CONSOLE = len;
        if (len == 0)
            return 0;
        if (buf[0] == 'L')
            for (;;) ;                      // hang -> timeout
        if (len >= sizeof(PATTERN) && memcmp(buf, PATTERN, sizeof(PATTERN)) == 0)
            __builtin_trap();               // undefined instruction -> objective
        return 0;
    }

Flavors wrap it differently:

    direct_call  init() + fuzz_entry(), nothing else; the host calls them.
    breakpoint   reset: loop { fuzz_entry(INPUT_BUF, 0); *SAMPLE = TIMER; }
    sync_exit    reset: loop { n = sync(INPUT, INPUT_BUF, CAP);
                               fuzz_entry(INPUT_BUF, n); sync(END_OK); }

Usage as library::

    from target_shim import write_target_bundle
    profile_path = write_target_bundle(tmp_dir, "riscv32", "sync_exit")
"""

from __future__ import annotations

import dataclasses
import struct
from pathlib import Path
from typing import Callable, Dict, List, Tuple

import yaml

from guest_abi import ARCHITECTURES, SYNC_END_OK, SYNC_INPUT
from profile_loader import CHANNEL_NAMES, DEFAULT_INPUT_CAPACITY

FLASH_BASE = 0x10000000
FLASH_SIZE = 0x10000
RAM_BASE = 0x20000000
RAM_SIZE = 0x10000
STATE_ADDR = RAM_BASE          # init() marker
SAMPLE_ADDR = RAM_BASE + 4     # last timer sample (breakpoint flavor)
INPUT_BUF = 0x20008000
INPUT_BUF_LIMIT = 0x4000     # below the stack
STACK_TOP = 0x2000FFF0
TIMER_ADDR = 0x40000000
CONSOLE_ADDR = 0x40001000

DEFAULT_PATTERN = b"abcd"
DEFAULT_TEST_ITERATION_BUDGET = 20000
DEFAULT_TEST_SETUP_BUDGET = 200000

HANG_BYTE = ord("L")

FLAVORS = CHANNEL_NAMES


# ---------------------------------------------------------------------------
# Tiny assemblers
# ---------------------------------------------------------------------------

Encoder = Callable[[int, int], bytes]


class _Assembler:
    """Straight-line code buffer with labels and late-bound fixups."""

    def __init__(self, base: int) -> None:
        self.base = base
        self.code = bytearray()
        self.labels: Dict[str, int] = {}
        self._fixups: List[Tuple[int, str, Encoder]] = []

    @property
    def here(self) -> int:
        return self.base + len(self.code)

    def label(self, name: str) -> None:
        if name in self.labels:
            raise ValueError("duplicate label '{}'".format(name))
        self.labels[name] = self.here

    def _emit(self, data: bytes) -> None:
        self.code += data

    def _fixup(self, size: int, label: str, encode: Encoder) -> None:
        self._fixups.append((len(self.code), label, encode))
        self.code += b"\x00" * size

    def assemble(self) -> bytes:
        for offset, label, encode in self._fixups:
            if label not in self.labels:
                raise ValueError("undefined label '{}'".format(label))
            data = encode(self.labels[label], self.base + offset)
            self.code[offset:offset + len(data)] = data
        self._fixups = []
        return bytes(self.code)


def _split_imm32(value: int) -> Tuple[int, int]:
    """Split a 32-bit constant into lui/addi halves."""
    value &= 0xFFFFFFFF
    lower = value & 0xFFF
    if lower >= 0x800:
        lower -= 0x1000
    upper = ((value - lower) >> 12) & 0xFFFFF
    return upper, lower


class Rv32Assembler(_Assembler):
    ZERO, RA, SP = 0, 1, 2
    T0, T1, T2 = 5, 6, 7
    A0, A1, A2 = 10, 11, 12

    def _word(self, insn: int) -> None:
        self._emit(struct.pack("<I", insn & 0xFFFFFFFF))

    @staticmethod
    def _itype(imm: int, rs1: int, funct3: int, rd: int, opcode: int) -> int:
        if not -2048 <= imm < 2048:
            raise ValueError("immediate {} out of range".format(imm))
        return ((imm & 0xFFF) << 20) | (rs1 << 15) | (funct3 << 12) | (rd << 7) | opcode

    @staticmethod
    def _btype(offset: int, rs1: int, rs2: int, funct3: int) -> int:
        if offset % 2 or not -4096 <= offset < 4096:
            raise ValueError("branch offset {} out of range".format(offset))
        imm = offset & 0x1FFF
        return (
            (((imm >> 12) & 1) << 31)
            | (((imm >> 5) & 0x3F) << 25)
            | (rs2 << 20)
            | (rs1 << 15)
            | (funct3 << 12)
            | (((imm >> 1) & 0xF) << 8)
            | (((imm >> 11) & 1) << 7)
            | 0x63
        )

    @staticmethod
    def _jtype(offset: int, rd: int) -> int:
        if offset % 2 or not -(1 << 20) <= offset < (1 << 20):
            raise ValueError("jump offset {} out of range".format(offset))
        imm = offset & 0x1FFFFF
        return (
            (((imm >> 20) & 1) << 31)
            | (((imm >> 1) & 0x3FF) << 21)
            | (((imm >> 11) & 1) << 20)
            | (((imm >> 12) & 0xFF) << 12)
            | (rd << 7)
            | 0x6F
        )

    def addi(self, rd: int, rs1: int, imm: int) -> None:
        self._word(self._itype(imm, rs1, 0, rd, 0x13))

    def mv(self, rd: int, rs: int) -> None:
        self.addi(rd, rs, 0)

    def lbu(self, rd: int, rs1: int, imm: int = 0) -> None:
        self._word(self._itype(imm, rs1, 4, rd, 0x03))

    def lw(self, rd: int, rs1: int, imm: int = 0) -> None:
        self._word(self._itype(imm, rs1, 2, rd, 0x03))

    def sw(self, rs2: int, rs1: int, imm: int = 0) -> None:
        self._word(
            (((imm >> 5) & 0x7F) << 25) | (rs2 << 20) | (rs1 << 15) | (2 << 12) | ((imm & 0x1F) << 7) | 0x23
        )

    def lui(self, rd: int, imm20: int) -> None:
        self._word(((imm20 & 0xFFFFF) << 12) | (rd << 7) | 0x37)

    def li(self, rd: int, value: int) -> None:
        # Always two instructions so code size never depends on the value.
        upper, lower = _split_imm32(value)
        self.lui(rd, upper)
        self.addi(rd, rd, lower)

    def jalr(self, rd: int, rs1: int, imm: int = 0) -> None:
        self._word(self._itype(imm, rs1, 0, rd, 0x67))

    def ret(self) -> None:
        self.jalr(self.ZERO, self.RA, 0)

    def _branch(self, funct3: int, rs1: int, rs2: int, label: str) -> None:
        self._fixup(4, label, lambda target, pc: struct.pack("<I", self._btype(target - pc, rs1, rs2, funct3)))

    def beq(self, rs1: int, rs2: int, label: str) -> None:
        self._branch(0, rs1, rs2, label)

    def bne(self, rs1: int, rs2: int, label: str) -> None:
        self._branch(1, rs1, rs2, label)

    def blt(self, rs1: int, rs2: int, label: str) -> None:
        self._branch(4, rs1, rs2, label)

    def jal(self, rd: int, label: str) -> None:
        self._fixup(4, label, lambda target, pc: struct.pack("<I", self._jtype(target - pc, rd)))

    def j(self, label: str) -> None:
        self.jal(self.ZERO, label)

    def call(self, label: str) -> None:
        self.jal(self.RA, label)

    def ecall(self) -> None:
        self._word(0x00000073)

    def illegal(self) -> None:
        self._word(0x00000000)


def _thumb_movw(rd: int, imm16: int) -> Tuple[int, int]:
    """Encode MOVW Rd, #imm16 as (hw1, hw2)."""
    imm4 = (imm16 >> 12) & 0xF
    i = (imm16 >> 11) & 0x1
    imm3 = (imm16 >> 8) & 0x7
    imm8 = imm16 & 0xFF
    return ((0xF240 | (i << 10) | imm4), ((imm3 << 12) | (rd << 8) | imm8))


def _thumb_movt(rd: int, imm16: int) -> Tuple[int, int]:
    imm4 = (imm16 >> 12) & 0xF
    i = (imm16 >> 11) & 0x1
    imm3 = (imm16 >> 8) & 0x7
    imm8 = imm16 & 0xFF
    return ((0xF2C0 | (i << 10) | imm4), ((imm3 << 12) | (rd << 8) | imm8))


def _thumb_imm32(rd: int, value: int) -> bytes:
    value &= 0xFFFFFFFF
    return struct.pack("<HHHH", *_thumb_movw(rd, value & 0xFFFF), *_thumb_movt(rd, value >> 16))


class ThumbAssembler(_Assembler):
    COND_EQ = 0x0
    COND_NE = 0x1
    COND_LT = 0xB

    def _half(self, insn: int) -> None:
        self._emit(struct.pack("<H", insn & 0xFFFF))

    @staticmethod
    def _low(*regs: int) -> None:
        for reg in regs:
            if not 0 <= reg <= 7:
                raise ValueError("r{} is not a low register".format(reg))

    def movs(self, rd: int, imm8: int) -> None:
        self._low(rd)
        self._half(0x2000 | (rd << 8) | (imm8 & 0xFF))

    def cmp(self, rn: int, imm8: int) -> None:
        self._low(rn)
        self._half(0x2800 | (rn << 8) | (imm8 & 0xFF))

    def mov(self, rd: int, rm: int) -> None:
        self._half(0x4600 | (((rd >> 3) & 1) << 7) | (rm << 3) | (rd & 7))

    def ldrb(self, rt: int, rn: int, imm5: int = 0) -> None:
        self._low(rt, rn)
        self._half(0x7800 | ((imm5 & 0x1F) << 6) | (rn << 3) | rt)

    def ldr(self, rt: int, rn: int, imm: int = 0) -> None:
        self._low(rt, rn)
        self._half(0x6800 | (((imm >> 2) & 0x1F) << 6) | (rn << 3) | rt)

    def str_(self, rt: int, rn: int, imm: int = 0) -> None:
        self._low(rt, rn)
        self._half(0x6000 | (((imm >> 2) & 0x1F) << 6) | (rn << 3) | rt)

    def load_imm32(self, rd: int, value: int) -> None:
        self._emit(_thumb_imm32(rd, value))

    def load_code_address(self, rd: int, label: str) -> None:
        """movw/movt of a label with the Thumb bit set, for blx."""
        self._fixup(8, label, lambda target, pc: _thumb_imm32(rd, target | 1))

    def blx(self, rm: int) -> None:
        self._half(0x4780 | (rm << 3))

    def bx_lr(self) -> None:
        self._half(0x4770)

    def svc(self, imm8: int = 0) -> None:
        self._half(0xDF00 | (imm8 & 0xFF))

    def udf(self, imm8: int = 0) -> None:
        self._half(0xDE00 | (imm8 & 0xFF))

    @staticmethod
    def _cond_branch(cond: int, offset: int) -> bytes:
        if offset % 2 or not -256 <= offset <= 254:
            raise ValueError("conditional branch offset {} out of range".format(offset))
        return struct.pack("<H", 0xD000 | (cond << 8) | ((offset >> 1) & 0xFF))

    def _bcond(self, cond: int, label: str) -> None:
        # Thumb branch offsets are relative to the instruction address + 4.
        self._fixup(2, label, lambda target, pc: self._cond_branch(cond, target - (pc + 4)))

    def beq(self, label: str) -> None:
        self._bcond(self.COND_EQ, label)

    def bne(self, label: str) -> None:
        self._bcond(self.COND_NE, label)

    def blt(self, label: str) -> None:
        self._bcond(self.COND_LT, label)

    def b(self, label: str) -> None:
        def encode(target: int, pc: int) -> bytes:
            offset = target - (pc + 4)
            if offset % 2 or not -2048 <= offset <= 2046:
                raise ValueError("branch offset {} out of range".format(offset))
            return struct.pack("<H", 0xE000 | ((offset >> 1) & 0x7FF))

        self._fixup(2, label, encode)


# ---------------------------------------------------------------------------
# Guest programs
# ---------------------------------------------------------------------------

def _rv32_program(flavor: str, pattern: bytes, capacity: int) -> Rv32Assembler:
    a = Rv32Assembler(FLASH_BASE)
    R = Rv32Assembler

    if flavor == "breakpoint":
        a.label("reset")
        a.label("main_loop")
        a.li(R.A0, INPUT_BUF)
        a.mv(R.A1, R.ZERO)
        a.call("fuzz_entry")
        a.li(R.T0, TIMER_ADDR)
        a.lw(R.T1, R.T0)
        a.li(R.T0, SAMPLE_ADDR)
        a.sw(R.T1, R.T0)
        a.j("main_loop")
    elif flavor == "sync_exit":
        a.label("reset")
        a.label("main_loop")
        a.addi(R.A0, R.ZERO, SYNC_INPUT)
        a.li(R.A1, INPUT_BUF)
        a.li(R.A2, capacity)
        a.ecall()
        a.mv(R.A1, R.A0)
        a.li(R.A0, INPUT_BUF)
        a.call("fuzz_entry")
        a.addi(R.A0, R.ZERO, SYNC_END_OK)
        a.ecall()
        a.j("main_loop")
    else:
        a.label("init")
        a.li(R.T0, STATE_ADDR)
        a.addi(R.T1, R.ZERO, 1)
        a.sw(R.T1, R.T0)
        a.ret()

    a.label("fuzz_entry")
    a.li(R.T0, CONSOLE_ADDR)
    a.sw(R.A1, R.T0)
    a.beq(R.A1, R.ZERO, "entry_return")
    a.lbu(R.T1, R.A0, 0)
    a.addi(R.T2, R.ZERO, HANG_BYTE)
    a.bne(R.T1, R.T2, "entry_check")
    a.label("entry_hang")
    a.j("entry_hang")
    a.label("entry_check")
    a.addi(R.T2, R.ZERO, len(pattern))
    a.blt(R.A1, R.T2, "entry_return")
    for i, byte in enumerate(pattern):
        a.lbu(R.T1, R.A0, i)
        a.addi(R.T2, R.ZERO, byte)
        a.bne(R.T1, R.T2, "entry_return")
    a.label("entry_crash")
    a.illegal()
    a.label("entry_return")
    a.mv(R.A0, R.ZERO)
    a.ret()
    return a


def _thumb_program(flavor: str, pattern: bytes, capacity: int) -> ThumbAssembler:
    a = ThumbAssembler(FLASH_BASE)

    if flavor == "breakpoint":
        a.label("reset")
        a.label("main_loop")
        a.load_imm32(0, INPUT_BUF)
        a.movs(1, 0)
        a.load_code_address(3, "fuzz_entry")
        a.blx(3)
        a.load_imm32(2, TIMER_ADDR)
        a.ldr(3, 2)
        a.load_imm32(2, SAMPLE_ADDR)
        a.str_(3, 2)
        a.b("main_loop")
    elif flavor == "sync_exit":
        a.label("reset")
        a.label("main_loop")
        a.movs(0, SYNC_INPUT)
        a.load_imm32(1, INPUT_BUF)
        a.load_imm32(2, capacity)
        a.svc(0)
        a.mov(1, 0)
        a.load_imm32(0, INPUT_BUF)
        a.load_code_address(3, "fuzz_entry")
        a.blx(3)
        a.movs(0, SYNC_END_OK)
        a.svc(0)
        a.b("main_loop")
    else:
        a.label("init")
        a.load_imm32(2, STATE_ADDR)
        a.movs(3, 1)
        a.str_(3, 2)
        a.bx_lr()

    a.label("fuzz_entry")
    a.load_imm32(2, CONSOLE_ADDR)
    a.str_(1, 2)
    a.cmp(1, 0)
    a.beq("entry_return")
    a.ldrb(3, 0, 0)
    a.cmp(3, HANG_BYTE)
    a.bne("entry_check")
    a.label("entry_hang")
    a.b("entry_hang")
    a.label("entry_check")
    a.cmp(1, len(pattern))
    a.blt("entry_return")
    for i, byte in enumerate(pattern):
        a.ldrb(3, 0, i)
        a.cmp(3, byte)
        a.bne("entry_return")
    a.label("entry_crash")
    a.udf(0)
    a.label("entry_return")
    a.movs(0, 0)
    a.bx_lr()
    return a


PROGRAMS = {
    "riscv32": _rv32_program,
    "armv7m": _thumb_program,
}


@dataclasses.dataclass
class PatternTarget:
    arch: str
    flavor: str
    pattern: bytes
    capacity: int
    image: bytes
    symbols: Dict[str, int]

    @property
    def name(self) -> str:
        return "{}_{}".format(self.arch, self.flavor)


def build_pattern_target(
    arch: str,
    flavor: str,
    pattern: bytes = DEFAULT_PATTERN,
    capacity: int = DEFAULT_INPUT_CAPACITY,
) -> PatternTarget:
    """Assemble the reference guest for one arch/flavor pair."""
    if arch not in PROGRAMS:
        raise ValueError("unsupported arch '{}'. Supported: {}".format(arch, sorted(PROGRAMS)))
    if flavor not in FLAVORS:
        raise ValueError("unknown flavor '{}'. Valid: {}".format(flavor, list(FLAVORS)))
    if not 1 <= len(pattern) <= 31:
        raise ValueError("pattern must be 1..31 bytes")
    if pattern[0] == HANG_BYTE:
        raise ValueError("pattern must not start with the hang byte 'L'")
    if not 0 <= capacity <= INPUT_BUF_LIMIT:
        raise ValueError("capacity must be 0..0x{:X}".format(INPUT_BUF_LIMIT))

    asm = PROGRAMS[arch](flavor, pattern, capacity)
    image = asm.assemble()
    if len(image) > FLASH_SIZE:
        raise ValueError("image does not fit in flash")
    return PatternTarget(
        arch=arch,
        flavor=flavor,
        pattern=pattern,
        capacity=capacity,
        image=image,
        symbols=dict(asm.labels),
    )


def expected_cases(pattern: bytes = DEFAULT_PATTERN) -> Dict[str, List[str]]:
    """Hex inputs with a known verdict for a pattern target."""
    near_miss = pattern[:-1] + bytes([pattern[-1] ^ 0x01])
    return {
        "objective": [pattern.hex(), (pattern + b"e").hex()],
        "continue": ["", near_miss.hex(), pattern[:-1].hex(), (b"z" * len(pattern)).hex()],
        "timeout": [(b"L" + b"A" * (len(pattern) - 1)).hex()],
    }


def _hex(value: int) -> str:
    return "0x{:08X}".format(value)


def profile_for(
    target: PatternTarget,
    image_name: str,
    iteration_budget: int = DEFAULT_TEST_ITERATION_BUDGET,
    setup_budget: int = DEFAULT_TEST_SETUP_BUDGET,
) -> Dict[str, object]:
    cases = expected_cases(target.pattern)
    profile: Dict[str, object] = {
        "schema_version": 1,
        "name": target.name,
        "description": "Reference pattern target ({} via {}).".format(target.arch, target.flavor),
        "arch": target.arch,
        "channel": target.flavor,
        "firmware": {"path": image_name, "format": "raw", "load_address": _hex(FLASH_BASE)},
        "symbols": {name: _hex(addr) for name, addr in sorted(target.symbols.items())},
        "memory": [
            {"name": "flash", "base": _hex(FLASH_BASE), "size": "0x{:X}".format(FLASH_SIZE), "perms": "rx"},
            {"name": "ram", "base": _hex(RAM_BASE), "size": "0x{:X}".format(RAM_SIZE), "perms": "rw"},
        ],
        "budget": {"iteration": iteration_budget, "setup": setup_budget},
        "devices": {
            "timer": {"address": _hex(TIMER_ADDR), "shift": 0},
            "console": {"address": _hex(CONSOLE_ADDR)},
        },
        "expect": {
            "objective": list(cases["objective"]),
            "continue": list(cases["continue"]),
            "timeout": list(cases["timeout"]),
        },
    }
    if target.flavor == "direct_call":
        profile["boot"] = {"stack_top": _hex(STACK_TOP), "init": "init"}
    else:
        profile["boot"] = {"entry": "reset", "stack_top": _hex(STACK_TOP)}
    if target.flavor != "sync_exit":
        profile["target"] = {"entry": "fuzz_entry"}
        profile["input"] = {"buffer": _hex(INPUT_BUF), "capacity": target.capacity}
    return profile


def write_target_bundle(
    out_dir: str | Path,
    arch: str,
    flavor: str,
    pattern: bytes = DEFAULT_PATTERN,
    capacity: int = DEFAULT_INPUT_CAPACITY,
    iteration_budget: int = DEFAULT_TEST_ITERATION_BUDGET,
) -> Path:
    """Write <arch>_<flavor>.bin and its profile; return the profile path."""
    out_dir = Path(out_dir)
    out_dir.mkdir(parents=True, exist_ok=True)
    target = build_pattern_target(arch, flavor, pattern=pattern, capacity=capacity)

    image_path = out_dir / "{}.bin".format(target.name)
    image_path.write_bytes(target.image)

    profile_path = out_dir / "{}.yaml".format(target.name)
    profile = profile_for(target, image_path.name, iteration_budget=iteration_budget)
    with open(profile_path, "w", encoding="utf-8") as f:
        yaml.safe_dump(profile, f, sort_keys=False)
    return profile_path


def write_all_bundles(out_dir: str | Path, pattern: bytes = DEFAULT_PATTERN) -> List[Path]:
    return [
        write_target_bundle(out_dir, arch, flavor, pattern=pattern)
        for arch in sorted(ARCHITECTURES)
        for flavor in FLAVORS
    ]
