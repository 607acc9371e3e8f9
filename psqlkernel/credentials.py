"""Password lookup for connection profiles."""

from __future__ import annotations

import os
import re
from typing import Mapping, Protocol, runtime_checkable


@runtime_checkable
class SecretStore(Protocol):
    """Resolves secrets by reference; profiles never hold plaintext passwords."""

    async def get_password(self, reference: str) -> str | None:
        """Return the secret stored under ``reference`` (a profile id)."""


class StaticSecretStore:
    """Secret store backed by an in-memory mapping."""

    def __init__(self, secrets: Mapping[str, str] | None = None) -> None:
        self._secrets = dict(secrets or {})

    async def get_password(self, reference: str) -> str | None:
        return self._secrets.get(reference)

    def set_password(self, reference: str, password: str) -> None:
        self._secrets[reference] = password

    def delete_password(self, reference: str) -> None:
        self._secrets.pop(reference, None)


class EnvironmentSecretStore:
    """Reads secrets from ``PSQLKERNEL_PASSWORD_<REFERENCE>`` variables.

    The reference is upper-cased and every non-alphanumeric character becomes
    ``_`` so ``local:ssh`` maps to ``PSQLKERNEL_PASSWORD_LOCAL_SSH``.
    """

    def __init__(self, prefix: str = "PSQLKERNEL_PASSWORD_", environ: Mapping[str, str] | None = None) -> None:
        self._prefix = prefix
        self._environ = environ if environ is not None else os.environ

    def variable_for(self, reference: str) -> str:
        return self._prefix + re.sub(r"[^A-Za-z0-9]", "_", reference).upper()

    async def get_password(self, reference: str) -> str | None:
        return self._environ.get(self.variable_for(reference))


__all__ = ["EnvironmentSecretStore", "SecretStore", "StaticSecretStore"]
