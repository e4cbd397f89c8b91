#!/usr/bin/env python3
"""Fuzz harness: one owned emulation session driven one input at a time.

Usage as library::

    from fuzz_harness import FuzzHarness
    from profile_loader import load_profile

    with FuzzHarness(load_profile("target.yaml")) as harness:
        result = harness.run_one(b"abcd")
        if result.verdict is Verdict.OBJECTIVE:
            ...  # keep the input

The session boots once, the channel brings the guest to its input point and
a snapshot is taken there. Every iteration starts from a fresh restore of that
snapshot, so nothing from an earlier (or abandoned) iteration is visible.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Iterable, Iterator, Optional, Union

from emulation_session import EmulationSession, Snapshot
from firmware_image import FirmwareImage, load_firmware, read_image_bytes
from guest_abi import ArchSpec, lookup_arch
from harness_types import FuzzInput, IterationResult, Verdict
from input_channels import DeliveryError, InputChannel, build_channel
from objective_oracle import check_replay, classify, describe
from profile_loader import ProfileConfig, ProfileError

log = logging.getLogger(__name__)


class FuzzHarness:
    def __init__(self, profile: ProfileConfig, verify_replays: int = 0) -> None:
        if verify_replays < 0:
            raise ValueError("verify_replays must be >= 0")
        try:
            self.arch: ArchSpec = lookup_arch(profile.arch)
        except KeyError as exc:
            raise ProfileError(str(exc.args[0])) from None
        self.profile = profile
        self.verify_replays = verify_replays
        self.firmware: Optional[FirmwareImage] = None
        self.channel: Optional[InputChannel] = None
        self.session: Optional[EmulationSession] = None
        self._snapshot: Optional[Snapshot] = None

    def __enter__(self) -> "FuzzHarness":
        self.open()
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    @property
    def snapshot(self) -> Snapshot:
        if self._snapshot is None:
            raise RuntimeError("harness is not open")
        return self._snapshot

    def open(self) -> None:
        if self.session is not None:
            return
        profile = self.profile
        setup = profile.setup
        try:
            self.firmware = load_firmware(
                profile.firmware.path,
                fmt=profile.firmware.fmt,
                load_address=profile.firmware.load_address,
                symbols=profile.symbols,
                thumb=self.arch.thumb,
                retries=setup.retries,
                retry_delay=setup.retry_delay,
            )
            storage_data = None
            if profile.storage is not None:
                storage_data = read_image_bytes(
                    Path(profile.storage.image), retries=setup.retries, retry_delay=setup.retry_delay
                )
            self.channel = build_channel(profile, self.firmware, self.arch)
            self.session = EmulationSession(
                self.arch,
                profile.memory,
                self.firmware,
                timer_address=profile.devices.timer_address,
                timer_shift=profile.devices.timer_shift,
                console_address=profile.devices.console_address,
                storage_address=profile.storage.address if profile.storage else None,
                storage_data=storage_data,
            )
            self.channel.prepare(self.session)
            self._snapshot = self.session.snapshot()
        except BaseException:
            self.close()
            raise
        log.debug(
            "harness open: profile=%s channel=%s snapshot at pc=0x%08X icount=%d",
            profile.name, self.channel.name, self.session.pc, self._snapshot.icount,
        )

    def close(self) -> None:
        if self.session is not None:
            self.session.close()
        self.session = None
        self._snapshot = None

    def _iterate(self, fuzz_input: FuzzInput) -> IterationResult:
        session = self.session
        if session is None or self.channel is None or self._snapshot is None:
            raise RuntimeError("harness is not open")

        session.restore(self._snapshot)
        try:
            resume = self.channel.deliver(session, fuzz_input)
        except DeliveryError as exc:
            log.debug("delivery failed for %s: %s", fuzz_input.name or "<input>", exc)
            return IterationResult(
                input_name=fuzz_input.name,
                input_len=len(fuzz_input),
                delivered_len=0,
                verdict=Verdict.TIMEOUT,
                reason=None,
                pc=session.pc,
                executed=0,
                digest=session.state_digest(),
                detail="delivery failed: {}".format(exc),
            )

        log.debug(
            "%s: delivered %d of %d bytes, resuming at 0x%08X",
            fuzz_input.name or "<input>", resume.delivered_len, len(fuzz_input), resume.address,
        )
        run = session.run_until(self.profile.budget.iteration, exits=self.channel.iteration_exits)
        return IterationResult(
            input_name=fuzz_input.name,
            input_len=len(fuzz_input),
            delivered_len=resume.delivered_len,
            verdict=classify(run),
            reason=run.reason,
            pc=run.pc,
            executed=run.executed,
            digest=session.state_digest(),
            detail=describe(run),
        )

    def run_one(self, fuzz_input: Union[FuzzInput, bytes, bytearray]) -> IterationResult:
        """Run one input from a fresh restore and classify it.

        With verify_replays > 0 the input is replayed that many more times;
        any divergence raises DeterminismViolation.
        """
        if not isinstance(fuzz_input, FuzzInput):
            fuzz_input = FuzzInput(data=bytes(fuzz_input))
        result = self._iterate(fuzz_input)
        for _ in range(self.verify_replays):
            check_replay(result, self._iterate(fuzz_input))
        result.replays = self.verify_replays
        return result

    def run_many(self, inputs: Iterable[Union[FuzzInput, bytes]]) -> Iterator[IterationResult]:
        for fuzz_input in inputs:
            yield self.run_one(fuzz_input)
