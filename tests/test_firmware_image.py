"""
Tests for firmware image loading.

Tests cover:
- Raw images (single rx segment at the load address)
- ELF images (PT_LOAD at the physical address, .symtab, Thumb bit handling)
- Symbol resolution and profile-supplied symbol overrides
- Missing / empty / malformed images
- Retry policy: transient OSError retried, FileNotFoundError never
"""
import struct
from pathlib import Path

import pytest

import firmware_image
from firmware_image import FirmwareError, load_firmware, read_image_bytes
from harness_types import SetupError

EM_ARM = 40
EM_RISCV = 243


def make_elf32(code, vaddr, paddr, entry, symbols, machine=EM_RISCV):
    """Minimal little-endian ELF32: one PT_LOAD, .text, .symtab, .strtab, .shstrtab.

    symbols: list of (name, value, type) with type 1=OBJECT, 2=FUNC.
    """
    ehsize, phentsize, shentsize = 52, 32, 40
    text_off = ehsize + phentsize

    strtab = b"\x00"
    syms = [struct.pack("<IIIBBH", 0, 0, 0, 0, 0, 0)]
    for name, value, sym_type in symbols:
        syms.append(struct.pack("<IIIBBH", len(strtab), value, 4, (1 << 4) | sym_type, 0, 1))
        strtab += name.encode() + b"\x00"
    symtab = b"".join(syms)

    shstrtab = b"\x00.text\x00.symtab\x00.strtab\x00.shstrtab\x00"
    names = {n: shstrtab.index(n.encode()) for n in (".text", ".symtab", ".strtab", ".shstrtab")}

    symtab_off = text_off + len(code)
    strtab_off = symtab_off + len(symtab)
    shstrtab_off = strtab_off + len(strtab)
    shoff = shstrtab_off + len(shstrtab)
    shoff += (-shoff) % 4

    ident = b"\x7fELF" + bytes([1, 1, 1, 0]) + b"\x00" * 8
    header = ident + struct.pack(
        "<HHIIIIIHHHHHH", 2, machine, 1, entry, ehsize, shoff, 0, ehsize, phentsize, 1, shentsize, 5, 4
    )
    phdr = struct.pack("<IIIIIIII", 1, text_off, vaddr, paddr, len(code), len(code), 0x5, 4)

    body = header + phdr + code + symtab + strtab + shstrtab
    body += b"\x00" * (shoff - len(body))

    def shdr(name, sh_type, flags, addr, off, size, link=0, info=0, align=1, entsize=0):
        return struct.pack("<IIIIIIIIII", name, sh_type, flags, addr, off, size, link, info, align, entsize)

    sections = [
        shdr(0, 0, 0, 0, 0, 0),
        shdr(names[".text"], 1, 0x6, vaddr, text_off, len(code), align=4),
        shdr(names[".symtab"], 2, 0, 0, symtab_off, len(symtab), link=3, info=1, align=4, entsize=16),
        shdr(names[".strtab"], 3, 0, 0, strtab_off, len(strtab)),
        shdr(names[".shstrtab"], 3, 0, 0, shstrtab_off, len(shstrtab)),
    ]
    return body + b"".join(sections)


def test_raw_image(tmp_path):
    path = tmp_path / "fw.bin"
    path.write_bytes(b"\x13\x00\x00\x00" * 4)

    image = load_firmware(path, load_address=0x10000000)

    assert image.fmt == "raw"
    assert image.entry == 0x10000000
    assert len(image.segments) == 1
    seg = image.segments[0]
    assert (seg.address, seg.mem_size, seg.perms) == (0x10000000, 16, "rx")
    assert image.symbols == {}


def test_raw_needs_load_address(tmp_path):
    path = tmp_path / "fw.bin"
    path.write_bytes(b"\x00" * 4)
    with pytest.raises(FirmwareError, match="load_address"):
        load_firmware(path)


def test_empty_raw_rejected(tmp_path):
    path = tmp_path / "fw.bin"
    path.write_bytes(b"")
    with pytest.raises(FirmwareError, match="empty"):
        load_firmware(path, load_address=0x10000000)


def test_unknown_format(tmp_path):
    path = tmp_path / "fw.bin"
    path.write_bytes(b"\x00" * 4)
    with pytest.raises(FirmwareError, match="unknown firmware format"):
        load_firmware(path, fmt="ihex", load_address=0)


def test_elf_loads_at_physical_address(tmp_path):
    path = tmp_path / "fw.elf"
    code = b"\x13\x00\x00\x00" * 8
    path.write_bytes(
        make_elf32(code, vaddr=0x00000000, paddr=0x10000000, entry=0x10000000,
                   symbols=[("fuzz_entry", 0x10000010, 2), ("input_buf", 0x20008000, 1)])
    )

    image = load_firmware(path)

    assert image.fmt == "elf"
    assert image.entry == 0x10000000
    assert [(s.address, s.data, s.perms) for s in image.segments] == [(0x10000000, code, "rx")]
    assert image.resolve("fuzz_entry") == 0x10000010
    assert image.resolve("input_buf") == 0x20008000
    assert image.resolve(0x1234) == 0x1234


def test_elf_thumb_bit_stripped_from_functions_only(tmp_path):
    path = tmp_path / "fw.axf"
    path.write_bytes(
        make_elf32(b"\x00\xbf" * 8, vaddr=0x10000000, paddr=0x10000000, entry=0x10000001,
                   symbols=[("reset", 0x10000001, 2), ("table", 0x10000009, 1)], machine=EM_ARM)
    )

    image = load_firmware(path, thumb=True)

    assert image.entry == 0x10000000
    assert image.symbols["reset"] == 0x10000000
    assert image.symbols["table"] == 0x10000009


def test_profile_symbols_override_elf(tmp_path):
    path = tmp_path / "fw.elf"
    path.write_bytes(
        make_elf32(b"\x13\x00\x00\x00", 0x10000000, 0x10000000, 0x10000000,
                   symbols=[("fuzz_entry", 0x10000000, 2)])
    )
    image = load_firmware(path, symbols={"fuzz_entry": 0x10000004, "extra": 0x20000000})
    assert image.resolve("fuzz_entry") == 0x10000004
    assert image.resolve("extra") == 0x20000000


def test_unknown_symbol(tmp_path):
    path = tmp_path / "fw.bin"
    path.write_bytes(b"\x00" * 4)
    image = load_firmware(path, load_address=0)
    with pytest.raises(FirmwareError, match="symbol 'missing' not found"):
        image.resolve("missing")


def test_malformed_elf(tmp_path):
    path = tmp_path / "fw.elf"
    path.write_bytes(b"not an elf at all, just some bytes")
    with pytest.raises(FirmwareError, match="not a valid ELF"):
        load_firmware(path)


def test_missing_image_not_retried(tmp_path, monkeypatch):
    sleeps = []
    monkeypatch.setattr(firmware_image.time, "sleep", sleeps.append)
    with pytest.raises(FirmwareError, match="not found"):
        read_image_bytes(tmp_path / "absent.bin", retries=3, retry_delay=0.5)
    assert sleeps == []


def test_transient_read_error_retried(tmp_path, monkeypatch):
    path = tmp_path / "fw.bin"
    path.write_bytes(b"\xaa\xbb")
    real_read = Path.read_bytes
    calls = []

    def flaky(self):
        calls.append(self)
        if len(calls) < 3:
            raise OSError(5, "Input/output error")
        return real_read(self)

    sleeps = []
    monkeypatch.setattr(Path, "read_bytes", flaky)
    monkeypatch.setattr(firmware_image.time, "sleep", sleeps.append)

    assert read_image_bytes(path, retries=2, retry_delay=0.1) == b"\xaa\xbb"
    assert len(calls) == 3
    assert sleeps == [0.1, 0.1]


def test_retries_exhausted(tmp_path, monkeypatch):
    path = tmp_path / "fw.bin"
    path.write_bytes(b"\x00")

    def broken(self):
        raise OSError(5, "Input/output error")

    monkeypatch.setattr(Path, "read_bytes", broken)
    monkeypatch.setattr(firmware_image.time, "sleep", lambda _: None)

    with pytest.raises(FirmwareError, match="after 2 attempt"):
        read_image_bytes(path, retries=1)


def test_firmware_error_is_setup_error():
    assert issubclass(FirmwareError, SetupError)
