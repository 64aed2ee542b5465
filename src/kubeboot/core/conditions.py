from __future__ import annotations

import json
from typing import Any, Sequence

import httpx

from kubeboot.core.errors import TransientError
from kubeboot.core.executor import CommandRunner
from kubeboot.core.poller import ReadinessCondition

_NOT_FOUND_MARKERS = ("NotFound", "not found")
CONTROL_PLANE_LABELS = (
    "node-role.kubernetes.io/control-plane",
    "node-role.kubernetes.io/master",
)


def kubectl_query(runner: CommandRunner, argv: Sequence[str]) -> str | None:
    """Run a read-only kubectl call.

    Returns stdout, or None when the object does not exist. Any other
    failure means the API is not answering yet and raises TransientError.
    """
    try:
        completed = runner.run(argv)
    except OSError as exc:
        raise TransientError(str(exc)) from exc
    if completed.returncode == 0:
        return completed.stdout or ""
    stderr = (completed.stderr or "").strip()
    if any(marker in stderr for marker in _NOT_FOUND_MARKERS):
        return None
    raise TransientError(stderr or f"{argv[0]} exited with code {completed.returncode}")


def count_ready_nodes(text: str) -> int:
    ready = 0
    for line in text.splitlines():
        columns = line.split()
        if len(columns) < 2:
            continue
        if "Ready" in columns[1].split(","):
            ready += 1
    return ready


def nodes_ready(runner: CommandRunner, kubectl: str, count: int, *, interval_s: float) -> ReadinessCondition:
    def probe() -> bool:
        text = kubectl_query(runner, [kubectl, "get", "nodes", "--no-headers"])
        return count_ready_nodes(text or "") >= count

    return ReadinessCondition(
        name="nodes_ready",
        probe=probe,
        interval_s=interval_s,
        description=f"at least {count} node(s) Ready",
    )


def secret_exists(
    runner: CommandRunner, kubectl: str, namespace: str, name: str, *, interval_s: float
) -> ReadinessCondition:
    def probe() -> bool:
        return kubectl_query(runner, [kubectl, "-n", namespace, "get", "secret", name]) is not None

    return ReadinessCondition(
        name="secret_exists",
        probe=probe,
        interval_s=interval_s,
        description=f"secret {namespace}/{name} exists",
    )


def deployment_available(
    runner: CommandRunner, kubectl: str, namespace: str, name: str, *, interval_s: float
) -> ReadinessCondition:
    def probe() -> bool:
        text = kubectl_query(
            runner,
            [kubectl, "-n", namespace, "get", "deployment", name, "-o", "jsonpath={.status.availableReplicas}"],
        )
        if not text or not text.strip():
            return False
        try:
            return int(text.strip()) >= 1
        except ValueError as exc:
            raise TransientError(f"unexpected availableReplicas value: {text.strip()!r}") from exc

    return ReadinessCondition(
        name="deployment_available",
        probe=probe,
        interval_s=interval_s,
        description=f"deployment {namespace}/{name} available",
    )


def rollout_complete(
    runner: CommandRunner, kubectl: str, namespace: str, name: str, *, interval_s: float
) -> ReadinessCondition:
    def probe() -> bool:
        text = kubectl_query(
            runner,
            [kubectl, "-n", namespace, "rollout", "status", f"deployment/{name}", "--watch=false"],
        )
        return text is not None and "successfully rolled out" in text

    return ReadinessCondition(
        name="rollout_complete",
        probe=probe,
        interval_s=interval_s,
        description=f"deployment {namespace}/{name} rolled out",
    )


def http_healthy(url: str, *, interval_s: float, verify: bool = False, timeout_s: float = 5.0) -> ReadinessCondition:
    def probe() -> bool:
        try:
            response = httpx.get(url, verify=verify, timeout=timeout_s)
        except httpx.TransportError as exc:
            raise TransientError(f"{url}: {exc}") from exc
        return response.status_code == 200

    return ReadinessCondition(
        name="http_healthy",
        probe=probe,
        interval_s=interval_s,
        description=f"{url} answers 200",
    )


def worker_node_names(text: str) -> list[str]:
    """Names of every node in ``kubectl get nodes -o json`` output without a control-plane role."""
    try:
        data: Any = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ValueError("node list is not valid JSON") from exc
    if not isinstance(data, dict) or not isinstance(data.get("items"), list):
        raise ValueError("node list has no items")
    names: list[str] = []
    for item in data["items"]:
        metadata = item.get("metadata") or {}
        labels = metadata.get("labels") or {}
        if any(label in labels for label in CONTROL_PLANE_LABELS):
            continue
        name = metadata.get("name")
        if name:
            names.append(name)
    return sorted(names)
