from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, FrozenSet, Protocol

import requests

from .errors import ConnectivityUnknown

logger = logging.getLogger("fieldtrack.connectivity")


class Medium(str, enum.Enum):
    WIFI = "wifi"
    CELLULAR = "cellular"
    ETHERNET = "ethernet"
    VPN = "vpn"
    OTHER = "other"
    NONE = "none"


@dataclass(frozen=True)
class Connectivity:
    media: FrozenSet[Medium]

    @classmethod
    def offline(cls) -> "Connectivity":
        return cls(media=frozenset({Medium.NONE}))

    @classmethod
    def of(cls, *media: Medium) -> "Connectivity":
        return cls(media=frozenset(media) or frozenset({Medium.NONE}))

    @property
    def connected(self) -> bool:
        return any(m is not Medium.NONE for m in self.media)

    @property
    def on_wifi(self) -> bool:
        return Medium.WIFI in self.media


class ConnectivityProbe(Protocol):
    def check(self) -> Connectivity: ...


def check_or_offline(probe: ConnectivityProbe) -> Connectivity:
    """Probe failures count as no connectivity."""

    try:
        return probe.check()
    except Exception as exc:
        logger.warning("connectivity probe failed; assuming offline: %r", exc)
        return Connectivity.offline()


DefaultRouteInterfaceDetector = Callable[[], str | None]
MediumClassifier = Callable[[str], Medium]
HttpProbe = Callable[[str, float], bool]

_CELLULAR_PREFIXES = ("wwan", "ppp", "rmnet", "usb", "wwp")
_VPN_PREFIXES = ("tun", "tap", "wg", "tailscale")


class SystemConnectivityProbe:
    """Classify the default-route interface on a Linux host.

    With reachability_url set, an HTTP check must also succeed, otherwise the
    host is reported offline even though it has a route.
    """

    def __init__(
        self,
        *,
        reachability_url: str | None = None,
        reachability_timeout_s: float = 2.5,
        default_route_interface_detector: DefaultRouteInterfaceDetector | None = None,
        medium_classifier: MediumClassifier | None = None,
        http_probe: HttpProbe | None = None,
    ) -> None:
        self.reachability_url = reachability_url
        self.reachability_timeout_s = float(reachability_timeout_s)
        self._detect_interface = default_route_interface_detector or detect_default_route_interface
        self._classify = medium_classifier or classify_interface
        self._http_probe = http_probe or _default_http_probe

    def check(self) -> Connectivity:
        try:
            interface_name = self._detect_interface()
        except OSError as exc:
            raise ConnectivityUnknown(f"cannot read routing table: {exc}") from exc
        if not interface_name:
            return Connectivity.offline()

        medium = self._classify(interface_name)
        if self.reachability_url:
            if not self._http_probe(self.reachability_url, self.reachability_timeout_s):
                logger.debug("route via %s but %s unreachable", interface_name, self.reachability_url)
                return Connectivity.offline()
        return Connectivity.of(medium)


def classify_interface(interface_name: str, *, sys_class_net: Path = Path("/sys/class/net")) -> Medium:
    if (sys_class_net / interface_name / "wireless").exists():
        return Medium.WIFI
    name = interface_name.lower()
    if name.startswith(_CELLULAR_PREFIXES):
        return Medium.CELLULAR
    if name.startswith(_VPN_PREFIXES):
        return Medium.VPN
    if name.startswith(("wlan", "wlp", "wifi")):
        return Medium.WIFI
    if name.startswith(("eth", "enp", "eno", "ens", "enx")):
        return Medium.ETHERNET
    return Medium.OTHER


def detect_default_route_interface(route_file: Path = Path("/proc/net/route")) -> str | None:
    lines = route_file.read_text(encoding="utf-8").splitlines()
    for line in lines[1:]:
        cols = line.split()
        if len(cols) < 11:
            continue
        interface_name = cols[0]
        destination = cols[1]
        if destination == "00000000":
            return interface_name
    return None


def _default_http_probe(url: str, timeout_s: float) -> bool:
    try:
        resp = requests.head(url, timeout=timeout_s, allow_redirects=True)
        if resp.status_code == 405:
            resp = requests.get(url, timeout=timeout_s, allow_redirects=True, stream=True)
        return 200 <= resp.status_code < 500
    except requests.RequestException:
        return False
