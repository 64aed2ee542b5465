from __future__ import annotations

from kubeboot.core import conditions
from kubeboot.core.errors import ActionFailure
from kubeboot.core.executor import Action, execute
from kubeboot.core.steps import (
    ActionStep,
    CaptureStep,
    Phase,
    PlanInputs,
    ReadinessStep,
    RunContext,
    Stage,
    StageSpec,
    Workflow,
)
from kubeboot.core.vault import ShellScriptFormat
from kubeboot.workflows.commands import (
    apply_manifest,
    apply_rendered,
    ensure_namespace,
    kubectl,
    node_package_steps,
    privileged,
    shell,
)

JOIN_COMMAND = "join-command"
JOIN_FORMAT = ShellScriptFormat()
INSECURE_TLS_FLAG = "--kubelet-insecure-tls"


def parse_join_command(output: str) -> str:
    lines = [line.strip() for line in output.splitlines() if line.strip()]
    if not lines or not lines[-1].startswith("kubeadm join"):
        raise ValueError("expected a 'kubeadm join ...' command")
    return lines[-1]


def build_master(inputs: PlanInputs) -> Stage:
    config = inputs.config
    commands = config.commands
    cluster = config.cluster
    join_path = inputs.path(config.vault.join_command_path)
    components = build_components(inputs)
    return Stage(
        name="master",
        label="Install and initialize master node",
        enters=Phase.MASTER_INSTALLING,
        reaches=Phase.MASTER_READY,
        steps=(
            *node_package_steps(config),
            ActionStep(
                name="kubeadm_init",
                label="Initialize control plane",
                actions=(
                    Action(
                        argv=privileged(
                            commands,
                            (
                                commands.kubeadm,
                                "init",
                                f"--apiserver-advertise-address={cluster.master_ip}",
                                f"--pod-network-cidr={cluster.pod_network_cidr}",
                            ),
                        ),
                        display="kubeadm init",
                        guard=Action(
                            argv=privileged(commands, ("test", "-f", "/etc/kubernetes/admin.conf")),
                            display="control plane already initialized",
                        ),
                    ),
                ),
            ),
            ActionStep(
                name="kubeconfig",
                label="Install admin kubeconfig",
                actions=(
                    shell(
                        'mkdir -p "$HOME/.kube"'
                        f' && {"sudo " if commands.sudo else ""}cp /etc/kubernetes/admin.conf "$HOME/.kube/config"'
                        f' && {"sudo " if commands.sudo else ""}chown "$(id -u):$(id -g)" "$HOME/.kube/config"',
                        "copy admin.conf to ~/.kube/config",
                    ),
                ),
            ),
            ActionStep(
                name="cni",
                label="Install pod network",
                actions=(apply_manifest(config, cluster.cni_manifest, display="apply CNI manifest"),),
            ),
            ReadinessStep(
                name="master_ready",
                label="Wait for master node Ready",
                condition=lambda ctx: conditions.nodes_ready(
                    ctx.runner,
                    ctx.config.commands.kubectl,
                    1,
                    interval_s=ctx.config.polling.node_interval_s,
                ),
            ),
            CaptureStep(
                name="join_command",
                label="Capture worker join command",
                credential=JOIN_COMMAND,
                producer=Action(
                    argv=privileged(commands, (commands.kubeadm, "token", "create", "--print-join-command")),
                    display="kubeadm token create --print-join-command",
                ),
                destination=lambda ctx: ctx.path(ctx.config.vault.join_command_path),
                fmt=JOIN_FORMAT,
                extract=parse_join_command,
                reuse_existing=True,
            ),
            *components.steps,
        ),
        notes=(
            f"Join command saved to {join_path}",
            "Copy it to each worker and run `kubeboot worker join` there.",
            "A new token needs `kubeboot cluster master --rotate`.",
        ),
    )


def build_components(inputs: PlanInputs) -> Stage:
    config = inputs.config
    cluster = config.cluster
    metrics_args = "jsonpath={.spec.template.spec.containers[0].args}"
    return Stage(
        name="components",
        label="Install cluster components",
        reaches=Phase.AWAITING_WORKERS,
        steps=(
            ActionStep(
                name="ingress",
                label="Install NGINX ingress controller",
                actions=(apply_manifest(config, cluster.ingress_manifest, display="apply ingress-nginx"),),
            ),
            ActionStep(
                name="metrics_server",
                label="Install metrics server",
                actions=(apply_manifest(config, cluster.metrics_manifest, display="apply metrics-server"),),
            ),
            ActionStep(
                name="metrics_insecure_tls",
                label="Allow metrics server to skip kubelet TLS",
                actions=(
                    Action(
                        argv=kubectl(
                            config,
                            "patch",
                            "deployment",
                            "metrics-server",
                            "-n",
                            "kube-system",
                            "--type=json",
                            "-p",
                            '[{"op": "add", "path": "/spec/template/spec/containers/0/args/-", '
                            f'"value": "{INSECURE_TLS_FLAG}"}}]',
                        ),
                        display=f"patch metrics-server {INSECURE_TLS_FLAG}",
                        guard=shell(
                            f"{config.commands.kubectl} -n kube-system get deployment metrics-server"
                            f" -o '{metrics_args}' | grep -q -- {INSECURE_TLS_FLAG}",
                            "metrics-server already patched",
                        ),
                    ),
                ),
            ),
        ),
    )


def _label_actions(ctx: RunContext) -> list[Action]:
    config = ctx.config
    listed = execute(Action(argv=kubectl(config, "get", "nodes", "-o", "json"), display="list nodes"), ctx.runner)
    if not listed.ok:
        raise ActionFailure(f"could not list nodes: {listed.reason}")
    workers = conditions.worker_node_names(listed.output)
    if not workers:
        raise ActionFailure("no worker nodes have joined the cluster")
    return [
        Action(
            argv=kubectl(config, "label", "node", name, config.cluster.worker_label, "--overwrite"),
            display=f"label {name}",
        )
        for name in workers
    ]


def build_labels(inputs: PlanInputs) -> Stage:
    return Stage(
        name="labels",
        label="Label worker nodes",
        reaches=Phase.CONVERGED,
        steps=(
            ReadinessStep(
                name="workers_ready",
                label=f"Wait for {inputs.config.cluster.node_count} Ready nodes",
                phase=Phase.AWAITING_WORKERS,
                condition=lambda ctx: conditions.nodes_ready(
                    ctx.runner,
                    ctx.config.commands.kubectl,
                    ctx.config.cluster.node_count,
                    interval_s=ctx.config.polling.node_interval_s,
                ),
            ),
            ActionStep(name="label_workers", label="Label worker nodes", resolve=_label_actions),
        ),
    )


def build_registry(inputs: PlanInputs) -> Stage:
    config = inputs.config
    registry = config.registry
    server = inputs.require(registry.server, "registry.server")
    username = inputs.require(registry.username, "registry.username")
    password = inputs.secret(registry.password_env, "registry.password_env")
    return Stage(
        name="registry",
        label="Create registry pull secret",
        steps=(
            ActionStep(
                name="registry_namespace",
                label=f"Ensure namespace {registry.namespace}",
                actions=(ensure_namespace(config, registry.namespace),),
            ),
            ActionStep(
                name="registry_secret",
                label=f"Apply secret {registry.namespace}/{registry.secret_name}",
                actions=(
                    apply_rendered(
                        config,
                        (
                            "create",
                            "secret",
                            "docker-registry",
                            registry.secret_name,
                            f"--docker-server={server}",
                            f"--docker-username={username}",
                            f"--docker-password={password}",
                            f"--docker-email={registry.email}",
                            "-n",
                            registry.namespace,
                        ),
                        f"docker-registry secret {registry.namespace}/{registry.secret_name}",
                    ),
                ),
            ),
        ),
    )


CLUSTER = Workflow(
    family="cluster",
    description="Kubernetes control plane bootstrap",
    stages={
        "master": StageSpec(
            "Install and initialize master node", build_master, "Install and initialize master node, then components"
        ),
        "components": StageSpec(
            "Install cluster components", build_components, "Install cluster components (ingress, metrics)"
        ),
        "labels": StageSpec("Label worker nodes", build_labels, "Label worker nodes (waits for workers to join)"),
        "registry": StageSpec("Create registry pull secret", build_registry, "Create Docker registry secret"),
    },
    composites={"all": ("master",)},
    composite_notes={
        "all": (
            "1. Run the join command on each worker node (kubeboot worker all)",
            "2. Run: kubeboot cluster labels (after workers join)",
            "3. Run: kubeboot cluster registry (to create the registry secret)",
        )
    },
)
