"""
Biometric verification gate.

The engine only needs a yes/no answer; the WebAuthn ceremony itself lives
with whoever issues the proof.
"""

from __future__ import annotations

import logging
from typing import Protocol

logger = logging.getLogger(__name__)


class BiometricVerifier(Protocol):
    async def verify(self, proof: str | None) -> bool: ...


class PresenceBiometricVerifier:
    """Accepts any non-empty proof string."""

    async def verify(self, proof: str | None) -> bool:
        if not proof or not proof.strip():
            logger.debug("Biometric proof missing")
            return False
        return True
