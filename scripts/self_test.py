#!/usr/bin/env python3
"""Self-test: validate that the harness classifies known inputs correctly.

Builds the reference pattern target for every arch/channel pair and runs
run_inputs.py against the inputs listed in each profile's ``expect`` section.
Asserts:

  - Every expected verdict (objective / continue / timeout) is reproduced
  - Channel equivalence: for one arch, an input is objective under every
    channel or under none
  - Determinism: every input is replayed (--verify-replays) and must not
    diverge

If the harness can't tell the planted crash from a near miss, or answers
differently depending on how the input was delivered, it's useless for
fuzzing real firmware.

Usage:
    python3 scripts/self_test.py

    # Keep the bundles and reports:
    python3 scripts/self_test.py --output-dir results/self_test

    # Parallel (one run_inputs.py process per profile):
    python3 scripts/self_test.py --parallel
"""

from __future__ import annotations

import argparse
import concurrent.futures
import json
import subprocess
import sys
import tempfile
from pathlib import Path
from typing import Any, Dict, List, Tuple

# Sibling imports.
sys.path.insert(0, str(Path(__file__).resolve().parent))
from profile_loader import load_profile
from target_shim import write_all_bundles


def run_profile(
    repo_root: Path,
    profile_path: Path,
    output_dir: Path,
    replays: int,
) -> Tuple[str, Dict[str, Any]]:
    """Run run_inputs.py for one profile and return (name, report)."""
    profile = load_profile(profile_path)
    cases = profile.expect.cases()
    output_file = output_dir / "{}_report.json".format(profile.name)

    cmd = [
        sys.executable,
        str(repo_root / "scripts" / "run_inputs.py"),
        "--profile", str(profile_path),
        "--output", str(output_file),
        "--verify-replays", str(replays),
    ]
    for hex_input, _ in cases:
        cmd += ["--input-hex", hex_input]

    proc = subprocess.run(
        cmd,
        cwd=str(repo_root),
        capture_output=True,
        text=True,
        check=False,
    )

    if proc.returncode != 0 or not output_file.exists():
        return profile.name, {
            "error": "run_inputs.py exited {}".format(proc.returncode),
            "stdout": proc.stdout[-1000:] if proc.stdout else "",
            "stderr": proc.stderr[-1000:] if proc.stderr else "",
            "returncode": proc.returncode,
        }

    report = json.loads(output_file.read_text(encoding="utf-8"))
    report["cases"] = [
        {"input": hex_input, "expected": expected, "actual": result["verdict"], "detail": result["detail"]}
        for (hex_input, expected), result in zip(cases, report.get("results", []))
    ]
    return profile.name, report


def check_equivalence(reports: Dict[str, Dict[str, Any]]) -> List[str]:
    """Inputs whose objective-ness differs between channels of one arch."""
    by_arch: Dict[str, Dict[str, Dict[str, bool]]] = {}
    for name, report in reports.items():
        if "error" in report:
            continue
        per_input = by_arch.setdefault(report["arch"], {})
        for case in report["cases"]:
            per_input.setdefault(case["input"], {})[report["channel"]] = case["actual"] == "objective"

    problems: List[str] = []
    for arch, per_input in sorted(by_arch.items()):
        for hex_input, channels in sorted(per_input.items()):
            if len(set(channels.values())) > 1:
                problems.append(
                    "{}: input '{}' objective under {} only".format(
                        arch, hex_input, sorted(c for c, hit in channels.items() if hit)
                    )
                )
    return problems


def main() -> int:
    parser = argparse.ArgumentParser(description="Self-test: validate harness verdicts on reference targets")
    parser.add_argument("--parallel", action="store_true", help="Run profiles in parallel")
    parser.add_argument("--output-dir", default="", help="Directory for bundles and reports (default: temp)")
    parser.add_argument("--replays", type=int, default=1, help="Replays per input for the determinism check")
    args = parser.parse_args()

    repo_root = Path(__file__).resolve().parent.parent

    if args.output_dir:
        output_dir = Path(args.output_dir)
        output_dir.mkdir(parents=True, exist_ok=True)
        temp_ctx = None
    else:
        temp_ctx = tempfile.TemporaryDirectory(prefix="self_test_")
        output_dir = Path(temp_ctx.name)

    try:
        profiles = write_all_bundles(output_dir / "bundles")
        results: Dict[str, Dict[str, Any]] = {}
        print("Self-test: running {} reference profiles".format(len(profiles)), file=sys.stderr)

        if args.parallel:
            with concurrent.futures.ProcessPoolExecutor(max_workers=len(profiles)) as executor:
                futures = [
                    executor.submit(run_profile, repo_root, path, output_dir, args.replays)
                    for path in profiles
                ]
                for future in concurrent.futures.as_completed(futures):
                    name, report = future.result()
                    results[name] = report
                    print("  {} done".format(name), file=sys.stderr)
        else:
            for path in profiles:
                print("  Running {}...".format(path.stem), file=sys.stderr, end="", flush=True)
                name, report = run_profile(repo_root, path, output_dir, args.replays)
                results[name] = report
                print(" done", file=sys.stderr)

        print("\n" + "=" * 70, file=sys.stderr)
        print("SELF-TEST RESULTS", file=sys.stderr)
        print("=" * 70, file=sys.stderr)

        passes = 0
        failures = 0
        errors = 0

        for name in sorted(results):
            report = results[name]
            if "error" in report:
                errors += 1
                print("  [ERROR] {:30s} {}".format(name, report["error"]), file=sys.stderr)
                if report.get("stderr"):
                    print("          {}".format(report["stderr"].strip().splitlines()[-1]), file=sys.stderr)
                continue
            for case in report["cases"]:
                label = "{} '{}'".format(name, case["input"])
                if case["actual"] == case["expected"]:
                    status = "PASS"
                    passes += 1
                else:
                    status = "FAIL"
                    failures += 1
                print(
                    "  [{:>5s}] {:40s} expected {}, got {} ({})".format(
                        status, label, case["expected"], case["actual"], case["detail"]
                    ),
                    file=sys.stderr,
                )

        equivalence_problems = check_equivalence(results)
        for problem in equivalence_problems:
            failures += 1
            print("  [ FAIL] channel equivalence: {}".format(problem), file=sys.stderr)

        print("=" * 70, file=sys.stderr)
        print("{} passed, {} failed, {} errors".format(passes, failures, errors), file=sys.stderr)

        summary_file = output_dir / "self_test_summary.json"
        summary_data = {
            "total_profiles": len(profiles),
            "passes": passes,
            "failures": failures,
            "errors": errors,
            "replays": args.replays,
            "equivalence_problems": equivalence_problems,
            "profiles": {
                name: {
                    "cases": report.get("cases", []),
                    "error": report.get("error"),
                }
                for name, report in sorted(results.items())
            },
        }
        summary_file.write_text(json.dumps(summary_data, indent=2, sort_keys=True), encoding="utf-8")
        print("\nDetailed reports in: {}".format(output_dir), file=sys.stderr)

        return 0 if (failures == 0 and errors == 0) else 1

    finally:
        if temp_ctx is not None:
            temp_ctx.cleanup()


if __name__ == "__main__":
    raise SystemExit(main())
