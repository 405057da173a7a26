"""
Redaction helpers for anything that reaches logs or telemetry.
"""

from __future__ import annotations

from hashlib import sha256


def redact(value: str | None) -> str:
    """Stable short hash of a sensitive string, for correlating log lines."""
    if not value:
        return "hash:missing"
    digest = sha256(value.encode("utf-8")).hexdigest()[:12]
    return f"hash:{digest}"


def redact_address(address: str | None) -> str:
    """Keep the domain of an address visible, hash the local part."""
    if not address or "@" not in address:
        return redact(address)
    local, domain = address.rsplit("@", 1)
    return f"{redact(local)}@{domain}"
