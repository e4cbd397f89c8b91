#!/usr/bin/env python3
"""Generate the reference pattern-target images and harness profiles.

One raw image + profile per (arch, channel) pair. Each fuzz_entry traps on
the pattern, hangs on a leading 'L', and returns normally otherwise.

Usage:
    python3 gen_pattern_targets.py --output-dir build
    python3 gen_pattern_targets.py --arch riscv32 --channel sync_exit --pattern 6f7461 --output-dir build
"""

import argparse
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[2] / "scripts"))
from guest_abi import ARCHITECTURES
from target_shim import FLAVORS, build_pattern_target, write_target_bundle


def main():
    parser = argparse.ArgumentParser()
    parser.add_argument("--output-dir", default=str(Path(__file__).resolve().parent / "build"))
    parser.add_argument("--arch", choices=sorted(ARCHITECTURES), action="append")
    parser.add_argument("--channel", choices=list(FLAVORS), action="append")
    parser.add_argument("--pattern", default="61626364", help="Crash pattern as hex (default: 'abcd')")
    args = parser.parse_args()

    pattern = bytes.fromhex(args.pattern)
    for arch in args.arch or sorted(ARCHITECTURES):
        for channel in args.channel or list(FLAVORS):
            profile_path = write_target_bundle(args.output_dir, arch, channel, pattern=pattern)
            target = build_pattern_target(arch, channel, pattern=pattern)
            print("{:24s} {} bytes, fuzz_entry=0x{:08X} -> {}".format(
                target.name, len(target.image), target.symbols["fuzz_entry"], profile_path))


if __name__ == "__main__":
    main()
