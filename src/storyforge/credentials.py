"""Read-only access to cloud provider API keys."""

import os
from typing import Mapping, Optional, Protocol

from storyforge.models import CloudProvider


ENV_KEYS = {
    CloudProvider.OPENROUTER: "OPENROUTER_API_KEY",
    CloudProvider.TOGETHER: "TOGETHER_API_KEY",
    CloudProvider.HUGGINGFACE: "HUGGINGFACE_API_KEY",
}


class CredentialStore(Protocol):
    def is_authenticated(self, provider: CloudProvider) -> bool: ...

    def bearer_token(self, provider: CloudProvider) -> Optional[str]: ...


class StaticCredentialStore:
    """Credentials held in memory, keyed by provider."""

    def __init__(self, tokens: Optional[Mapping[CloudProvider, str]] = None):
        self._tokens = {CloudProvider(k): v for k, v in (tokens or {}).items() if v}

    def is_authenticated(self, provider: CloudProvider) -> bool:
        return bool(self.bearer_token(provider))

    def bearer_token(self, provider: CloudProvider) -> Optional[str]:
        token = self._tokens.get(CloudProvider(provider))
        return token.strip() if token and token.strip() else None


class EnvironmentCredentialStore:
    """Credentials read from environment variables on every lookup."""

    def is_authenticated(self, provider: CloudProvider) -> bool:
        return bool(self.bearer_token(provider))

    def bearer_token(self, provider: CloudProvider) -> Optional[str]:
        value = os.getenv(ENV_KEYS[CloudProvider(provider)], "").strip()
        return value or None
