from __future__ import annotations


class BridgeError(Exception):
    pass


class DetectionError(BridgeError):
    """A single browser probe failed. Never fatal: the probe contributes nothing."""


class ResolutionError(BridgeError):
    """Explicit browser input could not be parsed.

    Path resolution itself never raises this: unknown browsers fall back to Chrome.
    """


class WriteError(BridgeError):
    pass


class ElevationError(BridgeError):
    def __init__(self, message: str, *, remediation: str = "") -> None:
        super().__init__(message)
        self.remediation = remediation

    def __str__(self) -> str:
        base = super().__str__()
        if self.remediation:
            return f"{base}. {self.remediation}"
        return base


class DownloadError(BridgeError):
    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class DecodeError(BridgeError):
    pass


class VerificationError(BridgeError):
    pass


class ContainmentViolation(BridgeError):
    pass


__all__ = [
    "BridgeError",
    "ContainmentViolation",
    "DecodeError",
    "DetectionError",
    "DownloadError",
    "ElevationError",
    "ResolutionError",
    "VerificationError",
    "WriteError",
]
