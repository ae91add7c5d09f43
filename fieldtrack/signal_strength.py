from __future__ import annotations

import enum
import logging
import re
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Protocol

from .connectivity import ConnectivityProbe, check_or_offline
from .errors import SignalSourceUnavailable, SignalUnresolvable
from .timeouts import CallTimedOut, call_with_timeout

logger = logging.getLogger("fieldtrack.signal")

CommandRunner = Callable[[list[str], float], str | None]

NO_SIGNAL_SENTINEL = 0

_IW_SIGNAL_RE = re.compile(r"\bsignal\s*:\s*(-?\d+)\s*dBm", re.IGNORECASE)


class SignalKind(str, enum.Enum):
    NUMERIC = "numeric"
    NO_SIGNAL = "no_signal"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class SignalReading:
    kind: SignalKind
    value: int | None = None
    source: str | None = None

    @classmethod
    def numeric(cls, value: int, *, source: str | None = None) -> "SignalReading":
        return cls(kind=SignalKind.NUMERIC, value=int(value), source=source)

    @classmethod
    def no_signal(cls) -> "SignalReading":
        return cls(kind=SignalKind.NO_SIGNAL)

    @classmethod
    def unknown(cls) -> "SignalReading":
        return cls(kind=SignalKind.UNKNOWN)

    def as_text(self) -> str:
        """Text form handed to the record normalizer.

        NO_SIGNAL renders as the 0 sentinel; UNKNOWN renders empty, which the
        normalizer turns into an absent signal level.
        """

        if self.kind is SignalKind.NUMERIC and self.value is not None:
            return str(self.value)
        if self.kind is SignalKind.NO_SIGNAL:
            return str(NO_SIGNAL_SENTINEL)
        return ""


class SignalSource(Protocol):
    name: str

    def query(self, timeout_s: float) -> int | None: ...


class SignalResolver:
    """Ordered fallback chain for the WiFi signal strength.

    1. Not on WiFi: NO_SIGNAL without probing.
    2. Primary source answers: NUMERIC.
    3. Primary raises SignalSourceUnavailable: ask the fallback source, waiting
       at most fallback_timeout_s.
    4. Anything else: NO_SIGNAL.
    """

    def __init__(
        self,
        probe: ConnectivityProbe,
        primary: SignalSource,
        fallback: SignalSource | None = None,
        *,
        primary_timeout_s: float = 2.0,
        fallback_timeout_s: float = 2.0,
    ) -> None:
        self.probe = probe
        self.primary = primary
        self.fallback = fallback
        self.primary_timeout_s = float(primary_timeout_s)
        self.fallback_timeout_s = float(fallback_timeout_s)

    def resolve(self) -> SignalReading:
        connectivity = check_or_offline(self.probe)
        if not connectivity.on_wifi:
            return SignalReading.no_signal()

        try:
            value = self.primary.query(self.primary_timeout_s)
        except SignalSourceUnavailable as exc:
            logger.info("primary signal source %s unavailable here: %s", self.primary.name, exc)
            return self._resolve_fallback()
        except Exception as exc:
            logger.warning("primary signal source %s failed: %r", self.primary.name, exc)
            return SignalReading.no_signal()

        if value is None:
            return SignalReading.no_signal()
        return SignalReading.numeric(value, source=self.primary.name)

    def _resolve_fallback(self) -> SignalReading:
        fallback = self.fallback
        if fallback is None:
            return SignalReading.no_signal()

        try:
            value = call_with_timeout(
                lambda: fallback.query(self.fallback_timeout_s),
                timeout_s=self.fallback_timeout_s,
                name="signal-fallback",
            )
        except CallTimedOut:
            logger.warning(
                "fallback signal source %s timed out after %.1fs",
                fallback.name,
                self.fallback_timeout_s,
            )
            return SignalReading.no_signal()
        except Exception as exc:
            logger.warning("fallback signal source %s failed: %r", fallback.name, exc)
            return SignalReading.no_signal()

        if value is None:
            return SignalReading.no_signal()
        return SignalReading.numeric(value, source=fallback.name)


class ProcWirelessSignalSource:
    """Read the link signal level from /proc/net/wireless."""

    name = "proc_net_wireless"

    def __init__(self, *, interface_name: str | None = None, path: Path = Path("/proc/net/wireless")) -> None:
        self.interface_name = interface_name
        self.path = path

    def query(self, timeout_s: float) -> int | None:
        _ = timeout_s
        try:
            text = self.path.read_text(encoding="utf-8")
        except (FileNotFoundError, PermissionError) as exc:
            raise SignalSourceUnavailable(f"{self.path} not readable: {exc}") from exc
        return parse_proc_wireless(text, interface_name=self.interface_name)


def parse_proc_wireless(text: str, *, interface_name: str | None = None) -> int | None:
    # Inter-|  sta-|   Quality        |   Discarded packets
    #  face | tus | link level noise |  nwid  crypt ...
    #  wlan0: 0000   54.  -56.  -256        0      0 ...
    for line in text.splitlines()[2:]:
        if ":" not in line:
            continue
        iface, rest = line.split(":", 1)
        if interface_name and iface.strip() != interface_name:
            continue
        cols = rest.split()
        if len(cols) < 3:
            continue
        level = cols[2].rstrip(".")
        try:
            return int(float(level))
        except ValueError as exc:
            raise SignalUnresolvable(f"unparseable level {cols[2]!r} for {iface.strip()}") from exc
    return None


class IwLinkSignalSource:
    """Ask `iw dev <iface> link` for the current signal in dBm."""

    name = "iw_link"

    def __init__(self, *, interface_name: str = "wlan0", command_runner: CommandRunner | None = None) -> None:
        self.interface_name = interface_name
        self._command_runner = command_runner or _run_command
        self._iw_available: bool | None = None

    def query(self, timeout_s: float) -> int | None:
        if self._command_runner is _run_command and not self._is_iw_available():
            raise SignalSourceUnavailable("iw not installed")
        output = self._command_runner(["iw", "dev", self.interface_name, "link"], timeout_s)
        if not output:
            return None
        match = _IW_SIGNAL_RE.search(output)
        if not match:
            return None
        return int(match.group(1))

    def _is_iw_available(self) -> bool:
        if self._iw_available is None:
            self._iw_available = shutil.which("iw") is not None
        return bool(self._iw_available)


def _run_command(command: list[str], timeout_s: float) -> str | None:
    try:
        proc = subprocess.run(
            command,
            check=False,
            capture_output=True,
            text=True,
            timeout=max(0.1, float(timeout_s)),
        )
    except (FileNotFoundError, subprocess.TimeoutExpired):
        return None

    if proc.returncode != 0:
        return None
    return proc.stdout.strip()
