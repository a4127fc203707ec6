"""Persistence for OAuth token records."""

import logging
import re
from abc import ABC, abstractmethod
from pathlib import Path

import yaml

from .public_api import OAuthToken

logger = logging.getLogger("tracker_sync.tokens")


class TokenStore(ABC):
    """Stores one OAuth token record per tracker name."""

    @abstractmethod
    async def load(self, name: str) -> OAuthToken | None:
        pass

    @abstractmethod
    async def save(self, name: str, token: OAuthToken) -> None:
        pass

    @abstractmethod
    async def delete(self, name: str) -> None:
        pass


class InMemoryTokenStore(TokenStore):
    """Token store that lives only as long as the process."""

    def __init__(self):
        self._tokens: dict[str, OAuthToken] = {}

    async def load(self, name: str) -> OAuthToken | None:
        return self._tokens.get(name)

    async def save(self, name: str, token: OAuthToken) -> None:
        self._tokens[name] = token

    async def delete(self, name: str) -> None:
        self._tokens.pop(name, None)


class YamlTokenStore(TokenStore):
    """
    Token store keeping one YAML file per tracker:

    ```yaml
    access_token: eyJ...
    refresh_token: def...
    expires_at: '2024-01-15T11:00:00+00:00'
    ```
    """

    UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9_.-]")

    def __init__(self, directory: str | Path):
        self._directory = Path(directory)
        self._directory.mkdir(parents=True, exist_ok=True)

    def _path(self, name: str) -> Path:
        return self._directory / f"{self.UNSAFE_CHARS.sub('_', name)}.yaml"

    async def load(self, name: str) -> OAuthToken | None:
        path = self._path(name)
        if not path.exists():
            return None
        data = yaml.safe_load(path.read_text())
        if not data:
            return None
        return OAuthToken(**data)

    async def save(self, name: str, token: OAuthToken) -> None:
        path = self._path(name)
        path.write_text(yaml.safe_dump(token.model_dump(mode="json"), sort_keys=False))
        logger.debug(f"Saved OAuth token for {name} to {path}")

    async def delete(self, name: str) -> None:
        self._path(name).unlink(missing_ok=True)
