from __future__ import annotations

import hashlib
import ipaddress
import json
import re
import secrets
from datetime import datetime
from typing import Any, Callable, Dict, Mapping, Optional, Tuple

from sessionguard.logging import get_logger
from sessionguard.storage.models import DeviceDescriptor, DeviceType, utc_now

logger = get_logger(__name__)

FINGERPRINT_LENGTH = 32
FALLBACK_FINGERPRINT_LENGTH = 16

# Checked in order; the first header carrying a valid address wins
CLIENT_IP_HEADERS = (
    "x-forwarded-for",
    "x-real-ip",
    "x-client-ip",
    "cf-connecting-ip",
    "fastly-client-ip",
    "x-cluster-client-ip",
    "x-forwarded",
    "forwarded-for",
    "forwarded",
)

_TABLET_RE = re.compile(r"iPad|Tablet", re.IGNORECASE)
_MOBILE_RE = re.compile(r"Mobile|Android|iPhone", re.IGNORECASE)
_IOS_RE = re.compile(r"(?:iPhone|CPU) OS (\d+)_(\d+)")
_ANDROID_RE = re.compile(r"Android (\d+(?:\.\d+)?)")
_MACOS_RE = re.compile(r"Mac OS X (\d+)[._](\d+)")
_EDGE_RE = re.compile(r"Edge?/(\d+(?:\.\d+)?)")
_CHROME_RE = re.compile(r"Chrome/(\d+(?:\.\d+)?)")
_FIREFOX_RE = re.compile(r"Firefox/(\d+(?:\.\d+)?)")
_SAFARI_VERSION_RE = re.compile(r"Version/(\d+(?:\.\d+)?)")
_FORWARDED_FOR_RE = re.compile(r'for="?\[?([^\];,"]+)', re.IGNORECASE)


def _parse_os(signature: str) -> Tuple[Optional[str], Optional[str]]:
    """Return ``(os, platform family)`` for a client signature."""

    if "Windows NT 10.0" in signature:
        return "Windows 10/11", "Windows"
    if "Windows NT" in signature:
        return "Windows", "Windows"
    match = _IOS_RE.search(signature)
    if match:
        return f"iOS {match.group(1)}.{match.group(2)}", "iOS"
    match = _ANDROID_RE.search(signature)
    if match:
        return f"Android {match.group(1)}", "Android"
    if "Mac OS X" in signature:
        match = _MACOS_RE.search(signature)
        if match:
            return f"macOS {match.group(1)}.{match.group(2)}", "macOS"
        return "macOS", "macOS"
    if "Linux" in signature:
        return "Linux", "Linux"
    return None, None


def _parse_browser(signature: str) -> Tuple[Optional[str], Optional[str]]:
    """Return ``(browser with version, browser family)``."""

    for family, pattern in (("Edge", _EDGE_RE), ("Chrome", _CHROME_RE), ("Firefox", _FIREFOX_RE)):
        match = pattern.search(signature)
        if match:
            return f"{family} {match.group(1)}", family
    if "Safari/" in signature and "Chrome" not in signature:
        match = _SAFARI_VERSION_RE.search(signature)
        return (f"Safari {match.group(1)}" if match else "Safari"), "Safari"
    return None, None


def _classify_type(
    signature: str, browser_family: Optional[str], os_family: Optional[str]
) -> Tuple[DeviceType, str]:
    if _TABLET_RE.search(signature):
        name = "iPad" if "ipad" in signature.lower() else "Tablet"
        return DeviceType.TABLET, name
    if _MOBILE_RE.search(signature):
        if "iPhone" in signature:
            match = _IOS_RE.search(signature)
            return DeviceType.MOBILE, (f"iPhone (iOS {match.group(1)})" if match else "iPhone")
        if "Android" in signature:
            return DeviceType.MOBILE, "Android Phone"
        return DeviceType.MOBILE, "Mobile Device"
    if browser_family and os_family:
        return DeviceType.DESKTOP, f"{browser_family} on {os_family}"
    return DeviceType.DESKTOP, "Unknown Device"


class DeviceFingerprintService:
    """Turns a raw client signature into a device descriptor and fingerprint.

    The clock and salt source are injectable so fingerprints are reproducible
    in tests. Neither classification nor fingerprinting ever raise.
    """

    def __init__(
        self,
        *,
        clock: Callable[[], datetime] = utc_now,
        salt_factory: Optional[Callable[[], str]] = None,
    ) -> None:
        self._clock = clock
        self._salt_factory = salt_factory or (lambda: secrets.token_hex(16))

    def classify_device(
        self, raw_signature: Optional[str], extra: Optional[Dict[str, Any]] = None
    ) -> DeviceDescriptor:
        if not raw_signature or raw_signature.strip().lower() == "unknown":
            return DeviceDescriptor.unknown(raw_signature)
        try:
            os_name, os_family = _parse_os(raw_signature)
            browser, browser_family = _parse_browser(raw_signature)
            device_type, name = _classify_type(raw_signature, browser_family, os_family)
        except Exception as exc:
            logger.warning("device_classification_failed", error_type=type(exc).__name__)
            return DeviceDescriptor.unknown(raw_signature)

        return DeviceDescriptor(
            type=device_type,
            fingerprint=self.generate_fingerprint(raw_signature, extra),
            name=name,
            platform=os_family,
            browser=browser,
            os=os_name,
            raw_signature=raw_signature,
        )

    def generate_fingerprint(
        self, signature: str, extra: Optional[Dict[str, Any]] = None
    ) -> str:
        try:
            timestamp = self._clock().isoformat()
            payload = {
                "signature": signature,
                "timestamp": timestamp,
                "salt": self._salt_factory(),
                **(extra or {}),
            }
            data = json.dumps(payload, sort_keys=True, default=str)
            return hashlib.sha256(data.encode()).hexdigest()[:FINGERPRINT_LENGTH]
        except Exception as exc:
            logger.warning("device_fingerprint_fallback", error_type=type(exc).__name__)
            fallback = f"{signature}{utc_now().isoformat()}"
            return hashlib.sha256(fallback.encode()).hexdigest()[:FALLBACK_FINGERPRINT_LENGTH]


def _valid_ip(candidate: str) -> Optional[str]:
    candidate = candidate.strip().strip('"')
    if not candidate:
        return None
    try:
        return str(ipaddress.ip_address(candidate))
    except ValueError:
        pass
    # IPv4 with a port suffix
    host, sep, port = candidate.rpartition(":")
    if sep and port.isdigit() and host.count(":") == 0:
        try:
            return str(ipaddress.ip_address(host))
        except ValueError:
            return None
    return None


def client_ip(headers: Mapping[str, Optional[str]]) -> Optional[str]:
    """First valid client address from proxy headers, or None."""

    normalized = {key.lower(): value for key, value in headers.items() if value}
    for header in CLIENT_IP_HEADERS:
        value = normalized.get(header)
        if not value:
            continue
        first = value.split(",")[0]
        if header == "forwarded":
            match = _FORWARDED_FOR_RE.search(first)
            if not match:
                continue
            first = match.group(1)
        address = _valid_ip(first)
        if address:
            return address
    return None
