#!/usr/bin/env python3
"""YAML harness profile loader for bare-metal fuzz targets.

Parses declarative harness profiles, validates against schema_version 1, and
hands the machine description, channel selection and budgets to the harness.

Usage as library::

    from profile_loader import load_profile, ProfileConfig

    profile = load_profile("examples/pattern_target/build/riscv32_sync_exit.yaml")
    print(profile.channel, profile.budget.iteration)

Usage as CLI (for debugging)::

    python3 scripts/profile_loader.py examples/pattern_target/build/riscv32_sync_exit.yaml
"""

from __future__ import annotations

import json
import sys
import warnings
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml

from guest_abi import ARCHITECTURES, PAGE_SIZE
from harness_types import SetupError


SUPPORTED_SCHEMA_VERSIONS = {1}

CHANNEL_NAMES = ("direct_call", "breakpoint", "sync_exit")
FIRMWARE_FORMATS = ("elf", "raw")

DEFAULT_ITERATION_BUDGET = 1000000
DEFAULT_SETUP_BUDGET = 10000000
DEFAULT_INPUT_CAPACITY = 0x1000

KNOWN_KEYS = {
    "schema_version", "name", "description", "arch", "channel", "firmware",
    "symbols", "memory", "boot", "target", "input", "budget", "devices",
    "storage", "setup", "expect",
}

# Either a concrete address or a symbol name resolved against the firmware.
Location = Union[int, str]


class ProfileError(SetupError):
    """Raised when a profile is invalid or unsupported."""


# ---------------------------------------------------------------------------
# Profile data model
# ---------------------------------------------------------------------------

class FirmwareConfig:
    __slots__ = ("path", "fmt", "load_address")

    def __init__(self, path: str, fmt: Optional[str] = None, load_address: Optional[int] = None) -> None:
        self.path = path
        self.fmt = fmt
        self.load_address = load_address


class RegionConfig:
    __slots__ = ("name", "base", "size", "perms")

    def __init__(self, name: str, base: int, size: int, perms: str) -> None:
        self.name = name
        self.base = base
        self.size = size
        self.perms = perms


class BootConfig:
    __slots__ = ("entry", "stack_top", "vector_table", "init")

    def __init__(
        self,
        entry: Optional[Location] = None,
        stack_top: Optional[int] = None,
        vector_table: Optional[int] = None,
        init: Optional[Location] = None,
    ) -> None:
        self.entry = entry
        self.stack_top = stack_top
        self.vector_table = vector_table
        self.init = init


class TargetConfig:
    __slots__ = ("entry", "exit")

    def __init__(self, entry: Optional[Location] = None, exit: Optional[Location] = None) -> None:
        self.entry = entry
        self.exit = exit


class InputConfig:
    __slots__ = ("buffer", "capacity")

    def __init__(self, buffer: Optional[Location] = None, capacity: int = DEFAULT_INPUT_CAPACITY) -> None:
        self.buffer = buffer
        self.capacity = capacity


class BudgetConfig:
    __slots__ = ("iteration", "setup")

    def __init__(self, iteration: int = DEFAULT_ITERATION_BUDGET, setup: int = DEFAULT_SETUP_BUDGET) -> None:
        self.iteration = iteration
        self.setup = setup


class DevicesConfig:
    __slots__ = ("timer_address", "timer_shift", "console_address")

    def __init__(
        self,
        timer_address: Optional[int] = None,
        timer_shift: int = 0,
        console_address: Optional[int] = None,
    ) -> None:
        self.timer_address = timer_address
        self.timer_shift = timer_shift
        self.console_address = console_address


class StorageConfig:
    __slots__ = ("image", "address")

    def __init__(self, image: str, address: int) -> None:
        self.image = image
        self.address = address


class SetupConfig:
    __slots__ = ("retries", "retry_delay")

    def __init__(self, retries: int = 2, retry_delay: float = 0.25) -> None:
        self.retries = retries
        self.retry_delay = retry_delay


class ExpectConfig:
    __slots__ = ("objective", "continue_", "timeout")

    def __init__(
        self,
        objective: Optional[List[str]] = None,
        continue_: Optional[List[str]] = None,
        timeout: Optional[List[str]] = None,
    ) -> None:
        self.objective = objective or []
        self.continue_ = continue_ or []
        self.timeout = timeout or []

    def cases(self) -> List[tuple]:
        """(hex input, expected verdict value) pairs, in file order."""
        out = [(h, "objective") for h in self.objective]
        out += [(h, "continue") for h in self.continue_]
        out += [(h, "timeout") for h in self.timeout]
        return out


class ProfileConfig:
    """Fully-parsed harness profile."""

    def __init__(
        self,
        schema_version: int,
        name: str,
        description: str,
        arch: str,
        channel: str,
        firmware: FirmwareConfig,
        symbols: Dict[str, int],
        memory: List[RegionConfig],
        boot: BootConfig,
        target: TargetConfig,
        input: InputConfig,
        budget: BudgetConfig,
        devices: DevicesConfig,
        storage: Optional[StorageConfig],
        setup: SetupConfig,
        expect: ExpectConfig,
        profile_path: Optional[Path] = None,
    ) -> None:
        self.schema_version = schema_version
        self.name = name
        self.description = description
        self.arch = arch
        self.channel = channel
        self.firmware = firmware
        self.symbols = symbols
        self.memory = memory
        self.boot = boot
        self.target = target
        self.input = input
        self.budget = budget
        self.devices = devices
        self.storage = storage
        self.setup = setup
        self.expect = expect
        self.profile_path = profile_path

    def to_dict(self) -> Dict[str, Any]:
        def loc(value: Optional[Location]) -> Any:
            return "0x{:08X}".format(value) if isinstance(value, int) else value

        return {
            "name": self.name,
            "description": self.description,
            "arch": self.arch,
            "channel": self.channel,
            "firmware": {
                "path": self.firmware.path,
                "format": self.firmware.fmt,
                "load_address": loc(self.firmware.load_address),
            },
            "memory": [
                {"name": r.name, "base": loc(r.base), "size": "0x{:X}".format(r.size), "perms": r.perms}
                for r in self.memory
            ],
            "boot_entry": loc(self.boot.entry),
            "target_entry": loc(self.target.entry),
            "input_buffer": loc(self.input.buffer),
            "input_capacity": self.input.capacity,
            "iteration_budget": self.budget.iteration,
            "setup_budget": self.budget.setup,
            "storage": self.storage.image if self.storage else None,
        }


# ---------------------------------------------------------------------------
# Parsing helpers
# ---------------------------------------------------------------------------

def _parse_int(value: Any, field_name: str) -> int:
    """Parse an integer from YAML (handles hex strings like 0x10000000)."""
    if isinstance(value, bool):
        raise ProfileError("{}: expected integer, got {!r}".format(field_name, value))
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 0)
        except ValueError:
            pass
    raise ProfileError("{}: expected integer, got {!r}".format(field_name, value))


def _parse_location(value: Any, field_name: str) -> Location:
    """Parse an address, or keep a symbol name for later resolution."""
    if isinstance(value, str) and not value.strip()[:1].isdigit():
        return value.strip()
    return _parse_int(value, field_name)


def _optional_location(raw: Dict[str, Any], key: str, field_name: str) -> Optional[Location]:
    if raw.get(key) is None:
        return None
    return _parse_location(raw[key], field_name)


def _optional_int(raw: Dict[str, Any], key: str, field_name: str) -> Optional[int]:
    if raw.get(key) is None:
        return None
    return _parse_int(raw[key], field_name)


def _require(data: Dict[str, Any], key: str, context: str = "") -> Any:
    """Require a key to exist in a dict."""
    if not isinstance(data, dict) or key not in data:
        where = " in {}".format(context) if context else ""
        raise ProfileError("missing required field '{}'{}.".format(key, where))
    return data[key]


def _mapping(raw: Any, context: str) -> Dict[str, Any]:
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ProfileError("{} must be a mapping, got {}".format(context, type(raw).__name__))
    return raw


def _resolve_path(base_dir: Path, value: str) -> str:
    p = Path(value)
    if p.is_absolute():
        return str(p)
    return str((base_dir / p).resolve())


def _parse_firmware(raw: Dict[str, Any], base_dir: Path) -> FirmwareConfig:
    path = _resolve_path(base_dir, str(_require(raw, "path", "firmware")))
    fmt = raw.get("format")
    if fmt is not None:
        fmt = str(fmt)
        if fmt not in FIRMWARE_FORMATS:
            raise ProfileError(
                "firmware.format '{}' invalid. Valid: {}".format(fmt, list(FIRMWARE_FORMATS))
            )
    load_address = _optional_int(raw, "load_address", "firmware.load_address")
    inferred = fmt or ("elf" if Path(path).suffix.lower() in (".elf", ".axf", ".out") else "raw")
    if inferred == "raw" and load_address is None:
        raise ProfileError("firmware.load_address is required for raw images")
    return FirmwareConfig(path=path, fmt=fmt, load_address=load_address)


def _parse_symbols(raw: Any) -> Dict[str, int]:
    symbols: Dict[str, int] = {}
    for name, value in _mapping(raw, "symbols").items():
        symbols[str(name)] = _parse_int(value, "symbols.{}".format(name))
    return symbols


def _parse_memory(raw: Any) -> List[RegionConfig]:
    if not isinstance(raw, list) or not raw:
        raise ProfileError("memory must be a non-empty list of regions")
    regions: List[RegionConfig] = []
    for i, entry in enumerate(raw):
        ctx = "memory[{}]".format(i)
        name = str(entry.get("name", "region{}".format(i))) if isinstance(entry, dict) else ""
        base = _parse_int(_require(entry, "base", ctx), "{}.base".format(ctx))
        size = _parse_int(_require(entry, "size", ctx), "{}.size".format(ctx))
        perms = str(entry.get("perms", "rwx"))
        if not perms or set(perms) - set("rwx"):
            raise ProfileError("{}.perms must be a subset of 'rwx', got {!r}".format(ctx, perms))
        if base % PAGE_SIZE or size % PAGE_SIZE or size <= 0:
            raise ProfileError(
                "{} ({}): base and size must be non-zero multiples of 0x{:X}".format(ctx, name, PAGE_SIZE)
            )
        for other in regions:
            if base < other.base + other.size and other.base < base + size:
                raise ProfileError("{} ({}) overlaps region '{}'".format(ctx, name, other.name))
        regions.append(RegionConfig(name=name, base=base, size=size, perms=perms))
    return regions


def _parse_boot(raw: Any) -> BootConfig:
    raw = _mapping(raw, "boot")
    return BootConfig(
        entry=_optional_location(raw, "entry", "boot.entry"),
        stack_top=_optional_int(raw, "stack_top", "boot.stack_top"),
        vector_table=_optional_int(raw, "vector_table", "boot.vector_table"),
        init=_optional_location(raw, "init", "boot.init"),
    )


def _parse_target(raw: Any) -> TargetConfig:
    raw = _mapping(raw, "target")
    return TargetConfig(
        entry=_optional_location(raw, "entry", "target.entry"),
        exit=_optional_location(raw, "exit", "target.exit"),
    )


def _parse_input(raw: Any) -> InputConfig:
    raw = _mapping(raw, "input")
    capacity = _parse_int(raw.get("capacity", DEFAULT_INPUT_CAPACITY), "input.capacity")
    if capacity < 0:
        raise ProfileError("input.capacity must be >= 0, got {}".format(capacity))
    return InputConfig(buffer=_optional_location(raw, "buffer", "input.buffer"), capacity=capacity)


def _parse_budget(raw: Any) -> BudgetConfig:
    raw = _mapping(raw, "budget")
    iteration = _parse_int(raw.get("iteration", DEFAULT_ITERATION_BUDGET), "budget.iteration")
    setup = _parse_int(raw.get("setup", DEFAULT_SETUP_BUDGET), "budget.setup")
    if iteration <= 0 or setup <= 0:
        raise ProfileError("budget.iteration and budget.setup must be positive")
    return BudgetConfig(iteration=iteration, setup=setup)


def _parse_devices(raw: Any) -> DevicesConfig:
    raw = _mapping(raw, "devices")
    timer = _mapping(raw.get("timer"), "devices.timer")
    console = _mapping(raw.get("console"), "devices.console")
    devices = DevicesConfig(
        timer_address=_optional_int(timer, "address", "devices.timer.address"),
        timer_shift=_parse_int(timer.get("shift", 0), "devices.timer.shift"),
        console_address=_optional_int(console, "address", "devices.console.address"),
    )
    for label, addr in (("timer", devices.timer_address), ("console", devices.console_address)):
        if addr is not None and addr % PAGE_SIZE:
            raise ProfileError("devices.{}.address must be page aligned".format(label))
    return devices


def _parse_storage(raw: Any, base_dir: Path) -> Optional[StorageConfig]:
    if raw is None:
        return None
    raw = _mapping(raw, "storage")
    image = _resolve_path(base_dir, str(_require(raw, "image", "storage")))
    address = _parse_int(_require(raw, "address", "storage"), "storage.address")
    if address % PAGE_SIZE:
        raise ProfileError("storage.address must be page aligned")
    return StorageConfig(image=image, address=address)


def _parse_setup(raw: Any) -> SetupConfig:
    raw = _mapping(raw, "setup")
    retries = _parse_int(raw.get("retries", 2), "setup.retries")
    if retries < 0:
        raise ProfileError("setup.retries must be >= 0")
    return SetupConfig(retries=retries, retry_delay=float(raw.get("retry_delay", 0.25)))


def _parse_expect(raw: Any) -> ExpectConfig:
    raw = _mapping(raw, "expect")

    def hex_list(key: str) -> List[str]:
        values = raw.get(key) or []
        if not isinstance(values, list):
            raise ProfileError("expect.{} must be a list of hex strings".format(key))
        return [str(v) for v in values]

    return ExpectConfig(
        objective=hex_list("objective"),
        continue_=hex_list("continue"),
        timeout=hex_list("timeout"),
    )


# ---------------------------------------------------------------------------
# Main loader
# ---------------------------------------------------------------------------

def parse_profile(data: Any, base_dir: Path, profile_path: Optional[Path] = None) -> ProfileConfig:
    """Validate an already-decoded profile mapping."""
    if not isinstance(data, dict):
        raise ProfileError("Profile must be a YAML mapping, got {}".format(type(data).__name__))

    for key in sorted(set(data) - KNOWN_KEYS):
        warnings.warn("Unknown profile key '{}'; ignoring.".format(key))

    schema_version = _parse_int(_require(data, "schema_version"), "schema_version")
    if schema_version not in SUPPORTED_SCHEMA_VERSIONS:
        raise ProfileError(
            "Unsupported schema_version {}. Supported: {}".format(
                schema_version, sorted(SUPPORTED_SCHEMA_VERSIONS)
            )
        )

    name = str(_require(data, "name"))
    description = str(data.get("description", ""))

    arch = str(_require(data, "arch"))
    if arch not in ARCHITECTURES:
        raise ProfileError("Unsupported arch '{}'. Supported: {}".format(arch, sorted(ARCHITECTURES)))

    channel = str(_require(data, "channel"))
    if channel not in CHANNEL_NAMES:
        raise ProfileError("Invalid channel '{}'. Valid: {}".format(channel, list(CHANNEL_NAMES)))

    firmware = _parse_firmware(_mapping(_require(data, "firmware"), "firmware"), base_dir)
    symbols = _parse_symbols(data.get("symbols"))
    memory = _parse_memory(_require(data, "memory"))
    boot = _parse_boot(data.get("boot"))
    target = _parse_target(data.get("target"))
    input_cfg = _parse_input(data.get("input"))

    if channel in ("direct_call", "breakpoint"):
        if target.entry is None:
            raise ProfileError("target.entry is required for channel '{}'".format(channel))
        if input_cfg.buffer is None:
            raise ProfileError("input.buffer is required for channel '{}'".format(channel))

    return ProfileConfig(
        schema_version=schema_version,
        name=name,
        description=description,
        arch=arch,
        channel=channel,
        firmware=firmware,
        symbols=symbols,
        memory=memory,
        boot=boot,
        target=target,
        input=input_cfg,
        budget=_parse_budget(data.get("budget")),
        devices=_parse_devices(data.get("devices")),
        storage=_parse_storage(data.get("storage"), base_dir),
        setup=_parse_setup(data.get("setup")),
        expect=_parse_expect(data.get("expect")),
        profile_path=profile_path,
    )


def load_profile(path: str | Path) -> ProfileConfig:
    """Load and validate a YAML profile.

    Relative paths inside the profile resolve against the profile's directory.

    Args:
        path: Path to the .yaml profile file.

    Returns:
        A validated ProfileConfig.

    Raises:
        ProfileError: If the profile is invalid.
        FileNotFoundError: If the profile doesn't exist.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError("Profile not found: {}".format(path))

    with open(path, "r", encoding="utf-8") as f:
        try:
            data = yaml.safe_load(f)
        except yaml.YAMLError as exc:
            raise ProfileError("{}: invalid YAML: {}".format(path, exc)) from exc

    return parse_profile(data, base_dir=path.resolve().parent, profile_path=path)


# ---------------------------------------------------------------------------
# CLI for debugging
# ---------------------------------------------------------------------------

def main() -> int:
    if len(sys.argv) < 2:
        print("Usage: python3 scripts/profile_loader.py <profile.yaml>", file=sys.stderr)
        return 1

    profile = load_profile(sys.argv[1])
    print(json.dumps(profile.to_dict(), indent=2, sort_keys=True))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
