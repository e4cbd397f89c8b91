"""
Tests for the YAML harness profile loader.

Tests cover:
- Round trip of a generated reference profile
- Symbol names kept for later resolution, hex strings parsed
- Relative paths resolved against the profile directory
- Schema, arch, channel, memory map and budget validation
- Missing file / invalid YAML
"""
from pathlib import Path

import pytest
import yaml

from profile_loader import (
    DEFAULT_INPUT_CAPACITY,
    ProfileError,
    load_profile,
    parse_profile,
)
from harness_types import SetupError


def _base_profile(**overrides):
    data = {
        "schema_version": 1,
        "name": "unit",
        "arch": "riscv32",
        "channel": "direct_call",
        "firmware": {"path": "fw.bin", "format": "raw", "load_address": "0x10000000"},
        "memory": [
            {"name": "flash", "base": "0x10000000", "size": "0x10000", "perms": "rx"},
            {"name": "ram", "base": 0x20000000, "size": 0x10000, "perms": "rw"},
        ],
        "boot": {"stack_top": "0x2000FFF0"},
        "target": {"entry": "fuzz_entry"},
        "input": {"buffer": "0x20008000"},
    }
    data.update(overrides)
    return data


def test_reference_profile_loads(bundle):
    profile_path = bundle("armv7m", "breakpoint")
    profile = load_profile(profile_path)

    assert profile.name == "armv7m_breakpoint"
    assert profile.arch == "armv7m"
    assert profile.channel == "breakpoint"
    assert profile.firmware.fmt == "raw"
    assert profile.firmware.load_address == 0x10000000
    assert Path(profile.firmware.path) == (profile_path.parent / "armv7m_breakpoint.bin").resolve()
    assert profile.boot.entry == "reset"
    assert profile.target.entry == "fuzz_entry"
    assert profile.input.buffer == 0x20008000
    assert [r.name for r in profile.memory] == ["flash", "ram"]
    assert "fuzz_entry" in profile.symbols
    assert profile.expect.cases()[0] == ("61626364", "objective")


def test_defaults_applied(tmp_path):
    profile = parse_profile(_base_profile(), base_dir=tmp_path)
    assert profile.input.capacity == DEFAULT_INPUT_CAPACITY
    assert profile.budget.iteration > 0
    assert profile.storage is None
    assert profile.setup.retries == 2
    assert profile.devices.timer_address is None


def test_location_keeps_symbol_names(tmp_path):
    profile = parse_profile(_base_profile(target={"entry": "fuzz_entry", "exit": "0x10000100"}), base_dir=tmp_path)
    assert profile.target.entry == "fuzz_entry"
    assert profile.target.exit == 0x10000100


def test_absolute_firmware_path_untouched(tmp_path):
    fw = tmp_path / "abs.bin"
    profile = parse_profile(
        _base_profile(firmware={"path": str(fw), "load_address": 0x10000000}),
        base_dir=Path("/somewhere/else"),
    )
    assert profile.firmware.path == str(fw)


def test_profile_error_is_setup_error():
    assert issubclass(ProfileError, SetupError)


@pytest.mark.parametrize(
    "overrides,message",
    [
        ({"schema_version": 2}, "schema_version"),
        ({"arch": "mips"}, "Unsupported arch"),
        ({"channel": "shared_memory"}, "Invalid channel"),
        ({"memory": []}, "non-empty list"),
        ({"target": {}}, "target.entry is required"),
        ({"input": {}}, "input.buffer is required"),
        ({"firmware": {"path": "fw.bin"}}, "load_address is required"),
        ({"firmware": {"path": "fw.bin", "format": "hex"}}, "firmware.format"),
        ({"budget": {"iteration": 0}}, "must be positive"),
        ({"input": {"buffer": 0x20008000, "capacity": -1}}, "capacity"),
        ({"boot": {"stack_top": True}}, "expected integer"),
        ({"devices": {"timer": {"address": "0x40000010"}}}, "page aligned"),
    ],
)
def test_invalid_profiles_rejected(tmp_path, overrides, message):
    with pytest.raises(ProfileError, match=message):
        parse_profile(_base_profile(**overrides), base_dir=tmp_path)


def test_missing_schema_version(tmp_path):
    data = _base_profile()
    del data["schema_version"]
    with pytest.raises(ProfileError, match="schema_version"):
        parse_profile(data, base_dir=tmp_path)


def test_sync_exit_needs_no_entry_or_buffer(tmp_path):
    data = _base_profile(channel="sync_exit", target=None, input=None)
    profile = parse_profile(data, base_dir=tmp_path)
    assert profile.target.entry is None
    assert profile.input.buffer is None


@pytest.mark.parametrize(
    "memory,message",
    [
        ([{"base": 0x10000800, "size": 0x1000}], "multiples"),
        ([{"base": 0x10000000, "size": 0}], "multiples"),
        ([{"base": 0x10000000, "size": 0x1000, "perms": "rwz"}], "perms"),
        (
            [
                {"name": "a", "base": 0x10000000, "size": 0x2000},
                {"name": "b", "base": 0x10001000, "size": 0x1000},
            ],
            "overlaps region 'a'",
        ),
        ([{"size": 0x1000}], "missing required field 'base'"),
    ],
)
def test_memory_map_validation(tmp_path, memory, message):
    with pytest.raises(ProfileError, match=message):
        parse_profile(_base_profile(memory=memory), base_dir=tmp_path)


def test_unknown_key_warns(tmp_path):
    with pytest.warns(UserWarning, match="coverage"):
        parse_profile(_base_profile(coverage={"enabled": True}), base_dir=tmp_path)


def test_non_mapping_rejected(tmp_path):
    with pytest.raises(ProfileError, match="mapping"):
        parse_profile(["not", "a", "mapping"], base_dir=tmp_path)


def test_missing_profile_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_profile(tmp_path / "nope.yaml")


def test_invalid_yaml(tmp_path):
    path = tmp_path / "broken.yaml"
    path.write_text("name: [unclosed\n", encoding="utf-8")
    with pytest.raises(ProfileError, match="invalid YAML"):
        load_profile(path)


def test_storage_section(tmp_path):
    path = tmp_path / "p.yaml"
    data = _base_profile(storage={"image": "nvm.bin", "address": "0x30000000"})
    path.write_text(yaml.safe_dump(data), encoding="utf-8")
    profile = load_profile(path)
    assert profile.storage.address == 0x30000000
    assert profile.storage.image == str((tmp_path / "nvm.bin").resolve())
