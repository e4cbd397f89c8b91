#!/usr/bin/env python3
"""Run fuzz inputs through a bare-metal harness profile and emit a report.

Usage:
    python3 scripts/run_inputs.py \
        --profile examples/pattern_target/build/riscv32_sync_exit.yaml \
        --input-hex 61626364 --input-hex 61626365 \
        corpus/ crashes/id_000001 \
        --output results/run.json

    # Replay each input twice more and fail hard on any divergence:
    python3 scripts/run_inputs.py --profile target.yaml crashes/ \
        --verify-replays 2 --assert-objective --output /tmp/replay.json
"""

from __future__ import annotations

import argparse
import datetime as dt
import json
import logging
import os
import shlex
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

# Sibling imports.
sys.path.insert(0, str(Path(__file__).resolve().parent))
from fuzz_harness import FuzzHarness
from harness_types import FuzzInput, IterationResult, Verdict, collect_inputs, parse_hex_inputs
from objective_oracle import DeterminismViolation
from profile_loader import ProfileConfig, load_profile

DEFAULT_BUDGET = os.environ.get("BAREMETAL_FUZZ_BUDGET", "")
EXIT_ASSERTION_FAILURE = 1
EXIT_INFRA_FAILURE = 2
EXIT_DETERMINISM_FAILURE = 3


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Bare-metal fuzz input runner (deterministic emulation)")
    parser.add_argument("--profile", required=True, help="Harness profile YAML.")
    parser.add_argument("inputs", nargs="*", help="Input files or directories (walked recursively).")
    parser.add_argument(
        "--input-hex",
        action="append",
        default=[],
        metavar="HEX",
        help="Inline input as hex (repeatable). Example: --input-hex 61626364",
    )
    parser.add_argument(
        "--budget",
        type=int,
        default=int(DEFAULT_BUDGET) if DEFAULT_BUDGET else None,
        help="Override the per-iteration instruction budget (env: BAREMETAL_FUZZ_BUDGET).",
    )
    parser.add_argument(
        "--verify-replays",
        type=int,
        default=0,
        metavar="N",
        help="Replay every input N more times from fresh restores; divergence is fatal.",
    )
    parser.add_argument("--output", required=True)
    parser.add_argument(
        "--assert-objective",
        action="store_true",
        help="Exit 1 unless every input is classified as objective.",
    )
    parser.add_argument(
        "--assert-no-objective",
        action="store_true",
        help="Exit 1 if any input is classified as objective.",
    )
    parser.add_argument("--verbose", action="store_true", help="Debug logging to stderr.")
    return parser.parse_args(argv)


def setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.WARNING
    logging.basicConfig(format="[%(levelname)s] %(name)s: %(message)s", level=level)


def run_campaign(harness: FuzzHarness, inputs: List[FuzzInput], progress: bool = True) -> List[IterationResult]:
    results: List[IterationResult] = []
    for idx, fuzz_input in enumerate(inputs):
        result = harness.run_one(fuzz_input)
        results.append(result)
        if progress:
            print(
                "  [{}/{}] {:10s} {} ({} bytes)".format(
                    idx + 1, len(inputs), result.verdict.value, fuzz_input.name or "<input>", len(fuzz_input)
                ),
                file=sys.stderr,
            )
    return results


def summarize(results: List[IterationResult]) -> Dict[str, Any]:
    counts = {v.value: 0 for v in Verdict}
    for r in results:
        counts[r.verdict.value] += 1
    total = len(results)
    return {
        "total": total,
        "objectives": counts[Verdict.OBJECTIVE.value],
        "continues": counts[Verdict.CONTINUE.value],
        "timeouts": counts[Verdict.TIMEOUT.value],
        "objective_rate": (float(counts[Verdict.OBJECTIVE.value]) / float(total)) if total else 0.0,
        "objective_inputs": [r.input_name for r in results if r.verdict is Verdict.OBJECTIVE],
    }


def to_json_payload(
    args: argparse.Namespace,
    profile: ProfileConfig,
    results: List[IterationResult],
    summary: Dict[str, Any],
) -> Dict[str, object]:
    if Path(sys.argv[0]).suffix == ".py":
        command_parts = ["python3"] + sys.argv
    else:
        command_parts = sys.argv

    return {
        "engine": "unicorn",
        "profile": profile.name,
        "arch": profile.arch,
        "channel": profile.channel,
        "iteration_budget": profile.budget.iteration,
        "verify_replays": args.verify_replays,
        "summary": summary,
        "inputs": {
            "profile": str(args.profile),
            "paths": list(args.inputs),
            "hex": list(args.input_hex),
        },
        "execution": {
            "run_utc": dt.datetime.now(dt.timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z"),
            "command": " ".join(shlex.quote(a) for a in command_parts),
        },
        "results": [r.to_dict() for r in results],
    }


def assertion_failures(args: argparse.Namespace, results: List[IterationResult]) -> List[str]:
    failures: List[str] = []
    if args.assert_objective:
        missed = [r for r in results if r.verdict is not Verdict.OBJECTIVE]
        for r in missed:
            failures.append(
                "  --assert-objective: {} was {} ({})".format(r.input_name or "<input>", r.verdict.value, r.detail)
            )
    if args.assert_no_objective:
        hits = [r for r in results if r.verdict is Verdict.OBJECTIVE]
        for r in hits:
            failures.append("  --assert-no-objective: {} crashed ({})".format(r.input_name or "<input>", r.detail))
    return failures


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    setup_logging(args.verbose)

    try:
        if args.assert_objective and args.assert_no_objective:
            raise ValueError("--assert-objective and --assert-no-objective are mutually exclusive")
        if args.verify_replays < 0:
            raise ValueError("--verify-replays must be >= 0")

        profile = load_profile(args.profile)
        if args.budget is not None:
            if args.budget <= 0:
                raise ValueError("--budget must be positive")
            profile.budget.iteration = args.budget

        inputs = collect_inputs(args.inputs) + parse_hex_inputs(args.input_hex)
        if not inputs:
            raise ValueError("no inputs given (pass paths and/or --input-hex)")

        print(
            "Running {} input(s) against {} [{} / {}]".format(len(inputs), profile.name, profile.arch, profile.channel),
            file=sys.stderr,
        )
        with FuzzHarness(profile, verify_replays=args.verify_replays) as harness:
            results = run_campaign(harness, inputs)

        summary = summarize(results)
        payload = to_json_payload(args, profile, results, summary)

        out_path = Path(args.output)
        out_path.parent.mkdir(parents=True, exist_ok=True)
        out_path.write_text(json.dumps(payload, indent=2, sort_keys=True), encoding="utf-8")

        print(json.dumps(summary, indent=2, sort_keys=True))

        failures = assertion_failures(args, results)
        if failures:
            print("ASSERTION FAILED", file=sys.stderr)
            for line in failures:
                print(line, file=sys.stderr)
            return EXIT_ASSERTION_FAILURE

        return 0
    except DeterminismViolation as exc:
        print("DETERMINISM VIOLATION: {}".format(exc), file=sys.stderr)
        return EXIT_DETERMINISM_FAILURE
    except Exception as exc:
        print("INFRASTRUCTURE FAILURE: {}".format(exc), file=sys.stderr)
        return EXIT_INFRA_FAILURE


if __name__ == "__main__":
    raise SystemExit(main())
