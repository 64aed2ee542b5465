from __future__ import annotations

from typing import Sequence

from kubeboot.config.model import Commands, Config
from kubeboot.core.executor import Action
from kubeboot.core.steps import ActionStep, Step


def privileged(commands: Commands, argv: Sequence[str]) -> tuple[str, ...]:
    if commands.sudo:
        return ("sudo", *argv)
    return tuple(argv)


def kubectl(config: Config, *args: str) -> tuple[str, ...]:
    return (config.commands.kubectl, *args)


def shell(script: str, display: str, *, guard: Action | None = None) -> Action:
    return Action(argv=("sh", "-c", script), display=display, guard=guard)


def apply_manifest(config: Config, source: str, *, namespace: str | None = None, display: str = "") -> Action:
    argv = kubectl(config, "apply")
    if namespace:
        argv = (*argv, "-n", namespace)
    return Action(argv=(*argv, "-f", source), display=display or f"apply {source}")


def apply_rendered(config: Config, render: Sequence[str], display: str) -> Action:
    """``kubectl create ... --dry-run=client -o yaml | kubectl apply -f -``.

    Gives create-only kubectl subcommands apply semantics, so re-running
    converges instead of failing with AlreadyExists.
    """
    return Action(
        argv=kubectl(config, "apply", "-f", "-"),
        display=display,
        stdin_from=Action(argv=(*kubectl(config, *render), "--dry-run=client", "-o", "yaml"), display=display),
    )


def ensure_namespace(config: Config, namespace: str) -> Action:
    return apply_rendered(config, ("create", "namespace", namespace), f"namespace {namespace}")


def node_package_steps(config: Config) -> tuple[Step, ...]:
    """Package steps shared by the master and worker nodes."""
    commands = config.commands
    cluster = config.cluster
    keyring = "/etc/apt/keyrings/kubernetes-archive-keyring.gpg"
    docker_actions = [
        shell(
            "curl -fsSL https://get.docker.com -o /tmp/get-docker.sh"
            f" && {_sudo(commands)}sh /tmp/get-docker.sh && rm -f /tmp/get-docker.sh",
            "install docker",
            guard=Action(argv=("docker", "--version"), display="docker --version"),
        )
    ]
    if cluster.docker_user:
        docker_actions.append(
            Action(
                argv=privileged(commands, ("usermod", "-aG", "docker", cluster.docker_user)),
                display=f"add {cluster.docker_user} to docker group",
            )
        )
    return (
        ActionStep(
            name="update_system",
            label="Update system packages",
            actions=(
                Action(argv=privileged(commands, ("apt-get", "update")), display="apt-get update"),
                Action(argv=privileged(commands, ("apt-get", "upgrade", "-y")), display="apt-get upgrade"),
            ),
        ),
        ActionStep(name="install_docker", label="Install Docker", actions=tuple(docker_actions)),
        ActionStep(
            name="kubernetes_repo",
            label="Add Kubernetes apt repository",
            actions=(
                Action(
                    argv=privileged(
                        commands,
                        ("apt-get", "install", "-y", "apt-transport-https", "ca-certificates", "curl", "gpg"),
                    ),
                    display="install apt prerequisites",
                ),
                Action(argv=privileged(commands, ("mkdir", "-p", "/etc/apt/keyrings")), display="create keyrings dir"),
                shell(
                    f"curl -fsSL {cluster.kubernetes_apt_key} | {_sudo(commands)}gpg --dearmor --yes -o {keyring}",
                    "import Kubernetes signing key",
                ),
                shell(
                    f"echo '{cluster.kubernetes_apt_repo}' | {_sudo(commands)}tee /etc/apt/sources.list.d/kubernetes.list",
                    "write kubernetes.list",
                ),
            ),
        ),
        ActionStep(
            name="kubernetes_packages",
            label="Install kubelet, kubeadm and kubectl",
            actions=(
                Action(argv=privileged(commands, ("apt-get", "update")), display="apt-get update"),
                Action(
                    argv=privileged(commands, ("apt-get", "install", "-y", "kubelet", "kubeadm", "kubectl")),
                    display="install kubelet kubeadm kubectl",
                ),
                Action(
                    argv=privileged(commands, ("apt-mark", "hold", "kubelet", "kubeadm", "kubectl")),
                    display="hold kubelet kubeadm kubectl",
                ),
            ),
        ),
        ActionStep(
            name="disable_swap",
            label="Disable swap",
            actions=(
                Action(argv=privileged(commands, ("swapoff", "-a")), display="swapoff -a"),
                Action(
                    argv=privileged(commands, ("sed", "-i", r"/^[^#].* swap /s/^/#/", "/etc/fstab")),
                    display="comment swap out of /etc/fstab",
                ),
            ),
        ),
    )


def _sudo(commands: Commands) -> str:
    return "sudo " if commands.sudo else ""
