from __future__ import annotations

import shlex

from kubeboot.core.errors import UsageError
from kubeboot.core.executor import Action
from kubeboot.core.steps import ActionStep, Phase, PlanInputs, Stage, StageSpec, Workflow
from kubeboot.workflows.cluster import JOIN_FORMAT
from kubeboot.workflows.commands import node_package_steps, privileged

KERNEL_MODULES = ("overlay", "br_netfilter")
SYSCTL_SETTINGS = (
    ("net.bridge.bridge-nf-call-iptables", "1"),
    ("net.bridge.bridge-nf-call-ip6tables", "1"),
    ("net.ipv4.ip_forward", "1"),
)


def build_install(inputs: PlanInputs) -> Stage:
    return Stage(
        name="install",
        label="Install Kubernetes components",
        steps=node_package_steps(inputs.config),
    )


def build_system(inputs: PlanInputs) -> Stage:
    commands = inputs.config.commands
    modules = "".join(f"{name}\n" for name in KERNEL_MODULES)
    sysctl = "".join(f"{key} = {value}\n" for key, value in SYSCTL_SETTINGS)
    return Stage(
        name="system",
        label="Configure system settings",
        steps=(
            ActionStep(
                name="kernel_modules",
                label="Load kernel modules",
                actions=(
                    Action(
                        argv=privileged(commands, ("tee", "/etc/modules-load.d/k8s.conf")),
                        input=modules,
                        display="write /etc/modules-load.d/k8s.conf",
                    ),
                    *(
                        Action(argv=privileged(commands, ("modprobe", name)), display=f"modprobe {name}")
                        for name in KERNEL_MODULES
                    ),
                ),
            ),
            ActionStep(
                name="sysctl",
                label="Apply bridged traffic sysctl settings",
                actions=(
                    Action(
                        argv=privileged(commands, ("tee", "/etc/sysctl.d/k8s.conf")),
                        input=sysctl,
                        display="write /etc/sysctl.d/k8s.conf",
                    ),
                    Action(argv=privileged(commands, ("sysctl", "--system")), display="sysctl --system"),
                ),
            ),
        ),
    )


def build_verify(inputs: PlanInputs) -> Stage:
    return Stage(
        name="verify",
        label="Verify installation",
        steps=(
            ActionStep(
                name="docker_active",
                label="Docker is running",
                actions=(Action(argv=("systemctl", "is-active", "--quiet", "docker"), display="docker active"),),
            ),
            ActionStep(
                name="kubelet_active",
                label="Kubelet is running (normal to fail before joining)",
                actions=(Action(argv=("systemctl", "is-active", "--quiet", "kubelet"), display="kubelet active"),),
                optional=True,
            ),
        ),
    )


def build_join(inputs: PlanInputs) -> Stage:
    config = inputs.config
    path = inputs.path(config.vault.join_command_path)
    if not path.exists():
        raise UsageError(
            f"Join command file not found: {path}",
            usage=[
                "Run `kubeboot cluster master` on the master node and copy the file here,",
                "or generate a new one there with: kubeadm token create --print-join-command",
            ],
        )
    command = JOIN_FORMAT.extract(path.read_text(encoding="utf-8"))
    if not command or not command.startswith("kubeadm join"):
        raise UsageError(f"Join command file does not contain a kubeadm join command: {path}")
    argv = shlex.split(command)
    argv[0] = config.commands.kubeadm
    return Stage(
        name="join",
        label="Join the cluster",
        reaches=Phase.WORKERS_JOINING,
        steps=(
            ActionStep(
                name="kubeadm_join",
                label="Join this node to the cluster",
                actions=(
                    Action(
                        argv=privileged(config.commands, argv),
                        display="kubeadm join",
                        guard=Action(
                            argv=privileged(config.commands, ("test", "-f", "/etc/kubernetes/kubelet.conf")),
                            display="node already joined",
                        ),
                    ),
                ),
            ),
        ),
        notes=("Run `kubeboot cluster labels` on the master once every worker has joined.",),
    )


WORKER = Workflow(
    family="worker",
    description="Worker node setup",
    stages={
        "install": StageSpec("Install Kubernetes components", build_install),
        "system": StageSpec("Configure system settings", build_system, "Load kernel modules and sysctl settings"),
        "verify": StageSpec("Verify installation", build_verify),
        "join": StageSpec("Join the cluster", build_join, "Join the cluster with the saved join command"),
    },
    composites={"all": ("install", "system", "verify", "join")},
)
