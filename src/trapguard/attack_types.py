#!/usr/bin/env python3
"""
Attack type and severity definitions for decoy endpoint detection.

This module defines the closed set of attack tags the classifier can
produce, the ordered severity scale, and the immutable records that flow
from the classifier into the rule engine.

Security Considerations:
- Closed enums: unknown tags are rejected at the boundary, not silently mapped
- Immutable records prevent tampering after classification
- Addresses are opaque strings; they may be spoofed upstream and are
  never validated for trustworthiness here
"""

import hashlib
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Optional


class AttackType(Enum):
    """
    Attack categories produced by the classifier.

    Credential and configuration probes:
        ENV_DISCLOSURE, GIT_DISCLOSURE, CREDENTIAL_HARVESTING
    Injection families:
        SQL_INJECTION, XSS, COMMAND_INJECTION, PATH_TRAVERSAL
    Payload delivery:
        FILE_UPLOAD, WEBSHELL_UPLOAD, MALWARE_INJECTION, CRYPTOMINER,
        RANSOMWARE, BOTNET_C2, DATA_EXFILTRATION
    Reconnaissance:
        BRUTE_FORCE, SUSPICIOUS_UA, SUSPICIOUS_HEADER, FINGERPRINTING,
        INFO_GATHERING
    Fallback:
        UNKNOWN
    """

    ENV_DISCLOSURE = "ENV_DISCLOSURE"
    GIT_DISCLOSURE = "GIT_DISCLOSURE"
    BRUTE_FORCE = "BRUTE_FORCE"
    SQL_INJECTION = "SQL_INJECTION"
    XSS = "XSS"
    COMMAND_INJECTION = "COMMAND_INJECTION"
    PATH_TRAVERSAL = "PATH_TRAVERSAL"
    FILE_UPLOAD = "FILE_UPLOAD"
    SUSPICIOUS_UA = "SUSPICIOUS_UA"
    SUSPICIOUS_HEADER = "SUSPICIOUS_HEADER"
    FINGERPRINTING = "FINGERPRINTING"
    CREDENTIAL_HARVESTING = "CREDENTIAL_HARVESTING"
    CRYPTOMINER = "CRYPTOMINER"
    MALWARE_INJECTION = "MALWARE_INJECTION"
    WEBSHELL_UPLOAD = "WEBSHELL_UPLOAD"
    RANSOMWARE = "RANSOMWARE"
    BOTNET_C2 = "BOTNET_C2"
    DATA_EXFILTRATION = "DATA_EXFILTRATION"
    INFO_GATHERING = "INFO_GATHERING"
    UNKNOWN = "UNKNOWN"

    @classmethod
    def from_string(cls, value: str) -> Optional['AttackType']:
        """Convert string to attack type, None if unknown."""
        try:
            return cls(value.upper())
        except (ValueError, AttributeError):
            return None

    def __str__(self) -> str:
        return self.value


class Severity(IntEnum):
    """
    Ordered threat level.

    Uses IntEnum for natural ordering comparison (LOW < MEDIUM < HIGH < CRITICAL),
    which the rule engine relies on for gt/lt/gte/lte conditions.
    """

    LOW = 1
    MEDIUM = 2
    HIGH = 3
    CRITICAL = 4

    @classmethod
    def from_string(cls, value: str) -> Optional['Severity']:
        """Convert string to severity, None if unknown."""
        try:
            return cls[value.upper()]
        except (KeyError, AttributeError):
            return None

    def get_log_level(self) -> str:
        """Get log level name for this severity."""
        levels = {
            Severity.LOW: "info",
            Severity.MEDIUM: "warning",
            Severity.HIGH: "error",
            Severity.CRITICAL: "critical",
        }
        return levels[self]

    def __str__(self) -> str:
        return self.name


@dataclass(frozen=True)
class DetectionResult:
    """
    Immutable classifier output.

    Security: Immutable to prevent tampering after classification.
    """

    attack_type: AttackType
    severity: Severity
    details: str

    def __post_init__(self):
        if not isinstance(self.attack_type, AttackType):
            raise ValueError("attack_type must be AttackType enum")
        if not isinstance(self.severity, Severity):
            raise ValueError("severity must be Severity enum")

    def to_dict(self) -> dict:
        return {
            'attack_type': self.attack_type.value,
            'severity': self.severity.name,
            'details': self.details,
        }


@dataclass(frozen=True)
class AttackEvent:
    """
    One observed request classified as an attack.

    Owned by the event history store for its address once appended.
    Timestamps are epoch seconds.
    """

    address: str
    timestamp: float
    attack_type: AttackType
    severity: Severity
    path: str = ""
    user_agent: str = ""
    country_code: Optional[str] = None
    details: str = field(default="", compare=False)

    def __post_init__(self):
        """Validate event on creation."""
        if not self.address or not isinstance(self.address, str):
            raise ValueError("Address must be non-empty string")
        if not isinstance(self.attack_type, AttackType):
            raise ValueError("attack_type must be AttackType enum")
        if not isinstance(self.severity, Severity):
            raise ValueError("severity must be Severity enum")
        if self.timestamp < 0:
            raise ValueError("Timestamp cannot be negative")

    @classmethod
    def from_detection(
        cls,
        address: str,
        detection: DetectionResult,
        timestamp: float,
        path: str = "",
        user_agent: str = "",
        country_code: Optional[str] = None,
    ) -> 'AttackEvent':
        """Build an event from classifier output plus request context."""
        return cls(
            address=address,
            timestamp=timestamp,
            attack_type=detection.attack_type,
            severity=detection.severity,
            path=path or "",
            user_agent=user_agent or "",
            country_code=country_code.upper() if country_code else None,
            details=detection.details,
        )

    def address_hash(self) -> str:
        """Pseudonymized address for logs and metrics."""
        return hashlib.sha256(self.address.encode()).hexdigest()[:16]

    def to_dict(self) -> dict:
        return {
            'address': self.address,
            'timestamp': self.timestamp,
            'attack_type': self.attack_type.value,
            'severity': self.severity.name,
            'path': self.path,
            'user_agent': self.user_agent,
            'country_code': self.country_code,
        }
