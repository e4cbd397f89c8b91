#!/usr/bin/env python3
"""Firmware image loading (ELF via pyelftools, or raw binaries)."""

from __future__ import annotations

import dataclasses
import io
import time
from pathlib import Path
from typing import Dict, List, Optional, Union

from elftools.common.exceptions import ELFError
from elftools.elf.elffile import ELFFile
from elftools.elf.sections import SymbolTableSection

from harness_types import SetupError

PF_X = 0x1
PF_W = 0x2
PF_R = 0x4

FORMATS = ("elf", "raw")


class FirmwareError(SetupError):
    """Missing, unreadable, or malformed firmware image."""


@dataclasses.dataclass
class Segment:
    address: int
    data: bytes
    mem_size: int
    perms: str  # subset of "rwx"


@dataclasses.dataclass
class FirmwareImage:
    path: Path
    fmt: str
    entry: int
    segments: List[Segment]
    symbols: Dict[str, int]

    def resolve(self, value: Union[int, str]) -> int:
        """Resolve an address or symbol name to an address."""
        if isinstance(value, int):
            return value
        if value in self.symbols:
            return self.symbols[value]
        raise FirmwareError("symbol '{}' not found in {}".format(value, self.path))


def read_image_bytes(path: Path, retries: int = 0, retry_delay: float = 0.0) -> bytes:
    """Read an image file, retrying transient host I/O failures.

    A missing file is never retried.
    """
    attempt = 0
    while True:
        try:
            return path.read_bytes()
        except FileNotFoundError:
            raise FirmwareError("image not found: {}".format(path)) from None
        except OSError as exc:
            if attempt >= retries:
                raise FirmwareError(
                    "failed to read {} after {} attempt(s): {}".format(path, attempt + 1, exc)
                ) from exc
            attempt += 1
            time.sleep(retry_delay)


def _perms_from_flags(flags: int) -> str:
    perms = ""
    if flags & PF_R:
        perms += "r"
    if flags & PF_W:
        perms += "w"
    if flags & PF_X:
        perms += "x"
    return perms


def _parse_elf(path: Path, blob: bytes, thumb: bool) -> FirmwareImage:
    try:
        elf = ELFFile(io.BytesIO(blob))
        segments: List[Segment] = []
        for seg in elf.iter_segments():
            if seg["p_type"] != "PT_LOAD" or seg["p_memsz"] == 0:
                continue
            segments.append(
                Segment(
                    address=seg["p_paddr"],  # load address, as QEMU -kernel does
                    data=seg.data(),
                    mem_size=seg["p_memsz"],
                    perms=_perms_from_flags(seg["p_flags"]),
                )
            )

        symbols: Dict[str, int] = {}
        symtab = elf.get_section_by_name(".symtab")
        if isinstance(symtab, SymbolTableSection):
            for sym in symtab.iter_symbols():
                if not sym.name or sym["st_shndx"] == "SHN_UNDEF":
                    continue
                value = sym["st_value"]
                if thumb and sym["st_info"]["type"] == "STT_FUNC":
                    value &= ~1
                symbols[sym.name] = value

        entry = elf.header["e_entry"]
    except ELFError as exc:
        raise FirmwareError("{} is not a valid ELF image: {}".format(path, exc)) from exc

    if thumb:
        entry &= ~1
    if not segments:
        raise FirmwareError("{} has no loadable segments".format(path))
    return FirmwareImage(path=path, fmt="elf", entry=entry, segments=segments, symbols=symbols)


def load_firmware(
    path: str | Path,
    fmt: Optional[str] = None,
    load_address: Optional[int] = None,
    symbols: Optional[Dict[str, int]] = None,
    thumb: bool = False,
    retries: int = 0,
    retry_delay: float = 0.0,
) -> FirmwareImage:
    """Load a firmware image.

    Args:
        path: Image file.
        fmt: "elf" or "raw"; inferred from the suffix when None.
        load_address: Base address for raw images (required for raw).
        symbols: Extra symbols; these override ELF symbols of the same name.
        thumb: Strip the Thumb bit from ELF function symbols and the entry.
        retries: Extra attempts for transient read failures.
        retry_delay: Seconds between attempts.

    Raises:
        FirmwareError: If the image is missing, unreadable, or malformed.
    """
    path = Path(path)
    if fmt is None:
        fmt = "elf" if path.suffix.lower() in (".elf", ".axf", ".out") else "raw"
    if fmt not in FORMATS:
        raise FirmwareError("unknown firmware format '{}'".format(fmt))

    blob = read_image_bytes(path, retries=retries, retry_delay=retry_delay)

    if fmt == "elf":
        image = _parse_elf(path, blob, thumb)
    else:
        if load_address is None:
            raise FirmwareError("raw image {} needs a load_address".format(path))
        if not blob:
            raise FirmwareError("raw image {} is empty".format(path))
        image = FirmwareImage(
            path=path,
            fmt="raw",
            entry=load_address,
            segments=[Segment(address=load_address, data=blob, mem_size=len(blob), perms="rx")],
            symbols={},
        )

    if symbols:
        image.symbols.update(symbols)
    return image
