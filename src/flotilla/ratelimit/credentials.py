"""Round-robin credential pool with per-entry cooldowns."""

from __future__ import annotations

import json
import logging
import time
from pathlib import Path
from typing import Any, Callable, Iterable

import yaml
from pydantic import BaseModel, Field, SecretStr, ValidationError, field_validator

logger = logging.getLogger(__name__)


class CredentialLoadError(RuntimeError):
    """Raised when the credential file cannot be parsed."""


class Credential(BaseModel):
    """One set of authentication material for the executor backend."""

    name: str = Field(..., description="Stable label used in logs and status output.")
    api_key: SecretStr | None = Field(
        default=None, description="Secret injected as OPENAI_API_KEY when present."
    )
    env: dict[str, str] = Field(
        default_factory=dict, description="Extra environment variables for this credential."
    )

    @field_validator("name")
    @classmethod
    def _normalize_name(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("Credential name must not be empty")
        return normalized

    def environment(self) -> dict[str, str]:
        env = dict(self.env)
        if self.api_key is not None:
            env.setdefault("OPENAI_API_KEY", self.api_key.get_secret_value())
        return env


def load_credentials(path: Path) -> list[Credential]:
    """Read a YAML or JSON list of credentials."""

    try:
        text = Path(path).read_text(encoding="utf-8")
    except OSError as exc:
        raise CredentialLoadError(f"Cannot read credentials from {path}: {exc}") from exc

    try:
        document: Any = json.loads(text) if Path(path).suffix == ".json" else yaml.safe_load(text)
    except (json.JSONDecodeError, yaml.YAMLError) as exc:
        raise CredentialLoadError(f"Failed to parse credentials in {path}: {exc}") from exc

    if isinstance(document, dict):
        document = document.get("credentials", [])
    if not isinstance(document, list):
        raise CredentialLoadError(f"Credentials in {path} must be a list")

    try:
        return [Credential.model_validate(entry) for entry in document]
    except ValidationError as exc:
        raise CredentialLoadError(f"Credential validation error in {path}: {exc}") from exc


class CredentialPool:
    """Hand out credentials round-robin, skipping ones that are cooling down."""

    def __init__(
        self,
        credentials: Iterable[Credential] | None = None,
        *,
        cooldown_seconds: float = 3600.0,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self._credentials = list(credentials or [])
        if not self._credentials:
            self._credentials = [Credential(name="default")]
        self._cooldown_seconds = cooldown_seconds
        self._clock = clock or time.monotonic
        self._cooling_until: dict[int, float] = {}
        self._cursor = 0
        self._rotations = 0

    @classmethod
    def from_settings(cls, settings) -> "CredentialPool":
        credentials: list[Credential] = []
        if settings.credentials_path is not None:
            credentials = load_credentials(settings.credentials_path)
        return cls(credentials, cooldown_seconds=settings.credential_cooldown_seconds)

    def __len__(self) -> int:
        return len(self._credentials)

    def name(self, index: int) -> str:
        return self._credentials[index % len(self._credentials)].name

    def env_for(self, index: int) -> dict[str, str]:
        return self._credentials[index % len(self._credentials)].environment()

    def is_cooling(self, index: int) -> bool:
        until = self._cooling_until.get(index)
        if until is None:
            return False
        if until <= self._clock():
            del self._cooling_until[index]
            return False
        return True

    def available(self) -> list[int]:
        return [index for index in range(len(self._credentials)) if not self.is_cooling(index)]

    def next_index(self) -> int:
        """Round-robin assignment for a new session, preferring available entries."""

        count = len(self._credentials)
        for offset in range(count):
            candidate = (self._cursor + offset) % count
            if not self.is_cooling(candidate):
                self._cursor = candidate + 1
                return candidate
        candidate = self._cursor % count
        self._cursor = candidate + 1
        return candidate

    def mark_cooling(self, index: int) -> None:
        self._cooling_until[index] = self._clock() + self._cooldown_seconds
        logger.warning(
            "Credential cooling down",
            extra={"credential": self.name(index), "cooldown_seconds": self._cooldown_seconds},
        )

    def rotate(self, index: int) -> int | None:
        """Cool ``index`` and return the next available credential, or ``None`` if all are cooling."""

        self.mark_cooling(index)
        candidate = self.next_available(index)
        if candidate is not None:
            self._rotations += 1
        return candidate

    def next_available(self, index: int) -> int | None:
        """First credential after ``index`` in round-robin order that is not cooling."""

        count = len(self._credentials)
        for offset in range(1, count + 1):
            candidate = (index + offset) % count
            if not self.is_cooling(candidate):
                return candidate
        return None

    def seconds_until_available(self) -> float:
        if self.available():
            return 0.0
        now = self._clock()
        return max(0.0, min(self._cooling_until.values()) - now)

    def stats(self) -> dict[str, Any]:
        return {
            "credentials": [
                {"name": credential.name, "cooling": self.is_cooling(index)}
                for index, credential in enumerate(self._credentials)
            ],
            "available": len(self.available()),
            "rotations": self._rotations,
        }


__all__ = ["Credential", "CredentialLoadError", "CredentialPool", "load_credentials"]
