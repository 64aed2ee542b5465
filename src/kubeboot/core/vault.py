from __future__ import annotations

import io
import os
import tempfile
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Protocol

from ruamel.yaml import YAML
from ruamel.yaml.error import YAMLError

from kubeboot.core.errors import ActionFailure, CredentialConflict


@dataclass(frozen=True)
class Credential:
    name: str
    value: str
    producer: str = ""
    details: dict[str, Any] = field(default_factory=dict, compare=False)


class WriteStatus(str, Enum):
    WRITTEN = "written"
    UNCHANGED = "unchanged"
    ROTATED = "rotated"


class CredentialFormat(Protocol):
    mode: int

    def render(self, credential: Credential) -> str: ...

    def extract(self, text: str) -> str | None: ...


class ShellScriptFormat:
    """An executable script whose last line is the credential itself."""

    mode = 0o700

    def render(self, credential: Credential) -> str:
        return f"#!/bin/sh\n# {credential.name}\n{credential.value}\n"

    def extract(self, text: str) -> str | None:
        lines = [line.strip() for line in text.splitlines()]
        lines = [line for line in lines if line and not line.startswith("#")]
        return lines[-1] if lines else None


class YamlRecordFormat:
    mode = 0o600

    def __init__(self, key: str = "password"):
        self.key = key
        self._yaml = YAML(typ="safe")
        self._yaml.default_flow_style = False

    def render(self, credential: Credential) -> str:
        record = {"credential": credential.name, **credential.details, self.key: credential.value}
        buffer = io.StringIO()
        self._yaml.dump(record, buffer)
        return buffer.getvalue()

    def extract(self, text: str) -> str | None:
        data = self._yaml.load(text)
        if not isinstance(data, dict):
            return None
        value = data.get(self.key)
        return str(value) if value is not None else None


class VaultWriter:
    """Owns persistence of captured credentials for one invocation.

    Each destination is written at most once. A destination that already
    holds a different value is never overwritten unless rotation has been
    acknowledged.
    """

    def __init__(self, *, acknowledge_rotation: bool = False):
        self.acknowledge_rotation = acknowledge_rotation
        self._written: dict[Path, str] = {}

    def read(self, destination: Path, fmt: CredentialFormat) -> str | None:
        if destination in self._written:
            return self._written[destination]
        if not destination.exists():
            return None
        try:
            return fmt.extract(destination.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, YAMLError) as exc:
            raise ActionFailure(
                f"cannot read saved credential {destination}: {exc}; fix or remove the file and re-run"
            ) from exc

    def write(self, credential: Credential, destination: Path, fmt: CredentialFormat) -> WriteStatus:
        if destination in self._written:
            if self._written[destination] == credential.value:
                return WriteStatus.UNCHANGED
            raise CredentialConflict(credential.name, destination)

        existing = self.read(destination, fmt)
        if existing == credential.value:
            self._written[destination] = credential.value
            return WriteStatus.UNCHANGED
        if existing is not None and not self.acknowledge_rotation:
            raise CredentialConflict(credential.name, destination)

        _atomic_write(destination, fmt.render(credential), fmt.mode)
        self._written[destination] = credential.value
        return WriteStatus.WRITTEN if existing is None else WriteStatus.ROTATED


def _atomic_write(destination: Path, text: str, mode: int) -> None:
    destination.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=destination.parent, prefix=f".{destination.name}.")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(text)
        os.chmod(tmp_name, mode)
        os.replace(tmp_name, destination)
    except OSError:
        Path(tmp_name).unlink(missing_ok=True)
        raise
