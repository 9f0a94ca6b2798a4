"""Structural checks on the configured identity credential."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from rtlink.config import LinkSettings, mask_secret

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class CredentialCheck:
    valid: bool
    reason: Optional[str] = None
    warning: Optional[str] = None


class CredentialValidator:
    """Rejects credentials that can never authenticate before any request is sent."""

    def __init__(self, settings: LinkSettings) -> None:
        self._settings = settings

    def validate(self, credential: Optional[str] = None) -> CredentialCheck:
        value = (self._settings.identity_credential if credential is None else credential).strip()
        if not value:
            return CredentialCheck(valid=False, reason="Identity credential is empty")
        minimum = self._settings.credential_min_length
        if len(value) < minimum:
            return CredentialCheck(
                valid=False,
                reason=f"Identity credential is too short ({len(value)} < {minimum} characters)",
            )
        if self._settings.is_placeholder_credential(value):
            if self._settings.is_production:
                return CredentialCheck(
                    valid=False,
                    reason=f"Placeholder identity credential {mask_secret(value)} is not allowed in production",
                )
            warning = f"Using placeholder identity credential {mask_secret(value)}; set IDENTITY_CREDENTIAL for deployments"
            LOGGER.warning("%s", warning)
            return CredentialCheck(valid=True, warning=warning)
        return CredentialCheck(valid=True)
