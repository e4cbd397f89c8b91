import sys
from pathlib import Path

import pytest

# Sibling imports, same as the scripts themselves.
sys.path.insert(0, str(Path(__file__).resolve().parent.parent / "scripts"))

from fuzz_harness import FuzzHarness  # noqa: E402
from profile_loader import load_profile  # noqa: E402
from target_shim import write_target_bundle  # noqa: E402

ARCHES = ("armv7m", "riscv32")
FLAVORS = ("direct_call", "breakpoint", "sync_exit")


@pytest.fixture
def bundle(tmp_path):
    """Write a reference target bundle and return its profile path."""

    def _make(arch, flavor, **kwargs):
        return write_target_bundle(tmp_path / "{}_{}".format(arch, flavor), arch, flavor, **kwargs)

    return _make


@pytest.fixture
def open_harness(bundle):
    """Open a FuzzHarness on a reference target; closed at teardown."""
    opened = []

    def _open(arch, flavor, verify_replays=0, tweak=None, **kwargs):
        profile = load_profile(bundle(arch, flavor, **kwargs))
        if tweak is not None:
            tweak(profile)
        harness = FuzzHarness(profile, verify_replays=verify_replays)
        opened.append(harness)
        harness.open()
        return harness

    yield _open
    for harness in opened:
        harness.close()
