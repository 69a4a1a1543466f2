import logging
from enum import Enum
from typing import Dict, Optional
from dataclasses import dataclass
from .config import AuditConfig, ConfigurationError

logger = logging.getLogger(__name__)


class IdentityTier(Enum):
    """Credential tiers recognised by the gateway."""
    NO_AUTH = "noauth"
    SHARED_KEY = "anon"
    USER_TOKEN = "user"


@dataclass(frozen=True)
class IdentityContext:
    """Concrete credential material for one tier."""
    tier: IdentityTier
    credential: Optional[str] = None
    shared_key: Optional[str] = None

    @property
    def available(self) -> bool:
        """NO_AUTH is always available; the other tiers need material."""
        if self.tier == IdentityTier.NO_AUTH:
            return True
        return bool(self.credential)

    def headers(self) -> Dict[str, str]:
        """
        Transport headers for this identity.

        Raises:
            ValueError: If called on an unavailable identity
        """
        if self.tier == IdentityTier.NO_AUTH:
            return {}
        if not self.available:
            raise ValueError(f"Identity {self.tier.value} has no credential material")
        # The gateway routes on apikey; the bearer token decides the role
        return {
            'apikey': self.shared_key or self.credential,
            'Authorization': f"Bearer {self.credential}"
        }

    def __repr__(self) -> str:
        # Never leak credential material into logs
        return f"IdentityContext(tier={self.tier.value}, available={self.available})"


class IdentitySet:
    """The three fixed identities of a run."""

    def __init__(self, shared_key: str, user_token: Optional[str] = None):
        """
        Initialize the identity set.

        Raises:
            ConfigurationError: If the shared key is missing
        """
        if not shared_key:
            raise ConfigurationError("Shared key is required to start an audit")

        self._contexts = {
            IdentityTier.NO_AUTH: IdentityContext(IdentityTier.NO_AUTH),
            IdentityTier.SHARED_KEY: IdentityContext(
                IdentityTier.SHARED_KEY, credential=shared_key, shared_key=shared_key
            ),
            IdentityTier.USER_TOKEN: IdentityContext(
                IdentityTier.USER_TOKEN, credential=user_token or None, shared_key=shared_key
            ),
        }

        if not user_token:
            logger.info("No user token supplied; user-tier probes will be N/A")

    @classmethod
    def from_config(cls, config: AuditConfig) -> 'IdentitySet':
        return cls(config.credentials.shared_key, config.credentials.user_token)

    def resolve(self, tier: IdentityTier) -> IdentityContext:
        """Return the identity for `tier`. No side effects."""
        return self._contexts[tier]

    @property
    def user_token_available(self) -> bool:
        return self.resolve(IdentityTier.USER_TOKEN).available
