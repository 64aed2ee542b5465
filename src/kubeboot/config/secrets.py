from __future__ import annotations

import os
from typing import Mapping, Protocol


class CredentialProvider(Protocol):
    def get(self, name: str) -> str | None: ...


class EnvCredentialProvider:
    def __init__(self, environ: Mapping[str, str] | None = None):
        self.environ = os.environ if environ is None else environ

    def get(self, name: str) -> str | None:
        value = self.environ.get(name)
        return value if value else None


class StaticCredentialProvider:
    def __init__(self, values: Mapping[str, str]):
        self.values = dict(values)

    def get(self, name: str) -> str | None:
        return self.values.get(name)
