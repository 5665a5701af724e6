"""Read-only capability detection for the target host."""

from __future__ import annotations

import concurrent.futures
import logging
import re
import time
from dataclasses import dataclass

from packaging.version import InvalidVersion, Version

from .connection import Connection
from .models import ServerCapabilities
from .stack import PROBE_COMMANDS, RUNTIME_VERSION_COMMAND

LOGGER = logging.getLogger(__name__)

_VERSION_PREFIX = re.compile(r"^\d+(?:\.\d+)*")


@dataclass(frozen=True, slots=True)
class ProbeOutcome:
    """Result of a single presence probe."""

    field: str
    present: bool
    duration_ms: int
    warning: str | None = None


def _duration_ms(start: float) -> int:
    return int((time.perf_counter() - start) * 1000)


def _run_probe(connection: Connection, field: str, command: str) -> ProbeOutcome:
    start = time.perf_counter()
    try:
        result = connection.run(command)
    except Exception as exc:  # noqa: BLE001 - a failing probe counts as "absent"
        LOGGER.debug("Probe %s raised: %s", field, exc)
        return ProbeOutcome(
            field=field,
            present=False,
            duration_ms=_duration_ms(start),
            warning=f"Probe '{command}' failed: {exc}",
        )
    present = result.exit_code == 0 and bool(result.stdout.strip())
    return ProbeOutcome(field=field, present=present, duration_ms=_duration_ms(start))


class ConfigurationDetector:
    """Classify a host by running a fixed battery of presence probes."""

    def __init__(self, *, max_concurrency: int = 5, min_runtime_version: str = "8.1") -> None:
        """Configure probe concurrency and the minimum runtime version."""
        self.max_concurrency = max(1, max_concurrency)
        self.min_runtime_version = min_runtime_version

    def detect(self, connection: Connection) -> ServerCapabilities:
        """Return the capabilities detected over *connection*."""
        probes = list(PROBE_COMMANDS.items())
        outcomes = self._run_all(connection, probes)

        flags = {outcome.field: outcome.present for outcome in outcomes}
        warnings = [outcome.warning for outcome in outcomes if outcome.warning]

        runtime_version: str | None = None
        if flags.get("has_runtime"):
            runtime_version, warning = self._runtime_version(connection)
            if warning:
                warnings.append(warning)

        capabilities = ServerCapabilities(
            has_web_server=flags.get("has_web_server", False),
            has_database=flags.get("has_database", False),
            has_runtime=flags.get("has_runtime", False),
            has_site_manager=flags.get("has_site_manager", False),
            has_site_cli=flags.get("has_site_cli", False),
            runtime_version=runtime_version,
            warnings=tuple(warnings),
        )
        LOGGER.debug("Detected capabilities: %s", capabilities.to_dict())
        return capabilities

    def _run_all(
        self, connection: Connection, probes: list[tuple[str, str]]
    ) -> list[ProbeOutcome]:
        if self.max_concurrency == 1:
            return [_run_probe(connection, field, command) for field, command in probes]

        results: list[ProbeOutcome | None] = [None] * len(probes)
        with concurrent.futures.ThreadPoolExecutor(max_workers=self.max_concurrency) as executor:
            future_to_index: dict[concurrent.futures.Future[ProbeOutcome], int] = {}
            for index, (field, command) in enumerate(probes):
                future = executor.submit(_run_probe, connection, field, command)
                future_to_index[future] = index

            for future in concurrent.futures.as_completed(future_to_index):
                results[future_to_index[future]] = future.result()

        return [result for result in results if result is not None]

    def _runtime_version(self, connection: Connection) -> tuple[str | None, str | None]:
        try:
            result = connection.run(RUNTIME_VERSION_COMMAND)
        except Exception as exc:  # noqa: BLE001 - informational probe
            return None, f"Runtime version probe failed: {exc}"
        raw = result.stdout.strip()
        if result.exit_code != 0 or not raw:
            return None, None
        match = _VERSION_PREFIX.match(raw)
        try:
            detected = Version(match.group(0) if match else raw)
            minimum = Version(self.min_runtime_version)
        except InvalidVersion:
            return raw, f"Could not parse runtime version '{raw}'."
        if detected < minimum:
            return raw, (
                f"Runtime version {raw} is older than the recommended "
                f"{self.min_runtime_version}."
            )
        return raw, None


__all__ = ["ConfigurationDetector", "ProbeOutcome"]
