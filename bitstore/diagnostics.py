"""Manual smoke test of a storage backend against live credentials.

Exercises put → about → get → remove on one local file and records how long
each step took. Used by ``scripts/s3_smoke_test.py``; not part of the
storage contract.
"""

import hashlib
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

import aiofiles

from bitstore.core.logging_config import get_logger
from bitstore.storage.models import AssetDescriptor
from bitstore.storage.protocol import StorageBackend
from bitstore.storage.staging import read_chunk


logger = get_logger(__name__)


@dataclass
class SmokeStep:
    name: str
    elapsed_ms: float
    ok: bool
    detail: str = ""


@dataclass
class SmokeTestReport:
    identifier: str
    steps: List[SmokeStep] = field(default_factory=list)
    descriptor: Optional[AssetDescriptor] = None

    @property
    def ok(self) -> bool:
        return bool(self.steps) and all(step.ok for step in self.steps)

    def record(self, name: str, started: float, ok: bool, detail: str = "") -> None:
        elapsed_ms = (time.perf_counter() - started) * 1000
        self.steps.append(SmokeStep(name=name, elapsed_ms=elapsed_ms, ok=ok, detail=detail))
        logger.info("smoke_test_step", step=name, ok=ok, elapsed_ms=round(elapsed_ms, 1), detail=detail)


async def run_smoke_test(backend: StorageBackend, asset_file: Path) -> SmokeTestReport:
    """Round-trip ``asset_file`` through an initialized backend.

    Stops checking at the first failing step, but always tries to remove
    the uploaded object afterwards so no test data is left behind.
    StorageErrors propagate to the caller.
    """
    identifier = backend.generate_id()
    report = SmokeTestReport(identifier=identifier)

    started = time.perf_counter()
    async with aiofiles.open(asset_file, 'rb') as source:
        descriptor = await backend.put(identifier, source)
    report.descriptor = descriptor
    report.record("put", started, True, f"{descriptor.size_bytes} bytes, {descriptor.checksum_algorithm} {descriptor.checksum}")

    try:
        if await _check_about(backend, report, descriptor):
            await _check_get(backend, report, asset_file)
    finally:
        started = time.perf_counter()
        await backend.remove(identifier)
        gone = await backend.about(identifier) is None
        report.record("remove", started, gone, "object removed" if gone else "object still present")

    return report


async def _check_about(backend: StorageBackend, report: SmokeTestReport, descriptor: AssetDescriptor) -> bool:
    started = time.perf_counter()
    about = await backend.about(report.identifier)
    about_ok = (
        about is not None
        and about.size_bytes == descriptor.size_bytes
        and about.checksum == descriptor.checksum
    )
    report.record("about", started, about_ok, "metadata matches put" if about_ok else f"got {about!r}")
    return about_ok


async def _check_get(backend: StorageBackend, report: SmokeTestReport, asset_file: Path) -> bool:
    started = time.perf_counter()
    async with aiofiles.open(asset_file, 'rb') as source:
        expected = hashlib.sha256(await source.read()).hexdigest()
    received = hashlib.sha256()
    stream = await backend.get(report.identifier)
    async with stream:
        while chunk := await read_chunk(stream):
            received.update(chunk)
    get_ok = received.hexdigest() == expected
    report.record("get", started, get_ok, "content matches" if get_ok else "content differs")
    return get_ok
