from __future__ import annotations

import base64
import binascii
import json
from datetime import datetime, timezone

from kubeboot.config.model import Config, RepoSettings
from kubeboot.core import conditions
from kubeboot.core.errors import UsageError
from kubeboot.core.executor import Action
from kubeboot.core.steps import (
    ActionStep,
    CaptureStep,
    PlanInputs,
    ReadinessStep,
    RunContext,
    Stage,
    StageSpec,
    Step,
    Workflow,
)
from kubeboot.core.vault import YamlRecordFormat
from kubeboot.workflows.commands import apply_manifest, ensure_namespace, kubectl, shell

ADMIN_PASSWORD = "argocd-admin-password"
ADMIN_USERNAME = "admin"
CREDENTIALS_FORMAT = YamlRecordFormat(key="password")
SERVER_DEPLOYMENT = "argocd-server"
INITIAL_ADMIN_SECRET = "argocd-initial-admin-secret"


def decode_password(output: str) -> str:
    encoded = output.strip()
    if not encoded:
        raise ValueError("initial admin secret has no password")
    try:
        return base64.b64decode(encoded, validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError) as exc:
        raise ValueError("initial admin password is not valid base64") from exc


def _server_url(config: Config, host: str | None = None) -> str:
    return f"https://{host or config.cluster.master_ip}:{config.gitops.https_node_port}"


def _credential_details(ctx: RunContext) -> dict[str, str]:
    return {
        "username": ADMIN_USERNAME,
        "node_port_url": _server_url(ctx.config),
        "load_balancer": f"kubectl get svc {SERVER_DEPLOYMENT} -n {ctx.config.gitops.namespace}",
        "setup_date": datetime.now(timezone.utc).isoformat(timespec="seconds"),
    }


def build_install(inputs: PlanInputs) -> Stage:
    config = inputs.config
    gitops = config.gitops
    service_patch = {
        "spec": {
            "type": "NodePort",
            "ports": [
                {"port": 443, "nodePort": gitops.https_node_port, "name": "https"},
                {"port": 80, "nodePort": gitops.http_node_port, "name": "http"},
            ],
        }
    }
    return Stage(
        name="install",
        label="Install Argo CD",
        steps=(
            ActionStep(
                name="argocd_namespace",
                label=f"Ensure namespace {gitops.namespace}",
                actions=(ensure_namespace(config, gitops.namespace),),
            ),
            ActionStep(
                name="argocd_manifest",
                label="Apply Argo CD manifest",
                actions=(
                    apply_manifest(config, gitops.install_manifest, namespace=gitops.namespace, display="apply argo-cd"),
                ),
            ),
            ReadinessStep(
                name="argocd_server_available",
                label=f"Wait for {SERVER_DEPLOYMENT} available",
                timeout_s=gitops.ready_timeout_s,
                condition=lambda ctx: conditions.deployment_available(
                    ctx.runner,
                    ctx.config.commands.kubectl,
                    ctx.config.gitops.namespace,
                    SERVER_DEPLOYMENT,
                    interval_s=ctx.config.polling.resource_interval_s,
                ),
            ),
            ActionStep(
                name="argocd_service",
                label="Expose Argo CD through NodePort",
                actions=(
                    Action(
                        argv=kubectl(
                            config,
                            "patch",
                            "svc",
                            SERVER_DEPLOYMENT,
                            "-n",
                            gitops.namespace,
                            "-p",
                            json.dumps(service_patch),
                        ),
                        display=f"patch svc {SERVER_DEPLOYMENT} NodePort",
                    ),
                ),
            ),
            ReadinessStep(
                name="initial_admin_secret",
                label="Wait for initial admin secret",
                condition=lambda ctx: conditions.secret_exists(
                    ctx.runner,
                    ctx.config.commands.kubectl,
                    ctx.config.gitops.namespace,
                    INITIAL_ADMIN_SECRET,
                    interval_s=ctx.config.polling.resource_interval_s,
                ),
            ),
            CaptureStep(
                name="admin_password",
                label="Capture Argo CD admin password",
                credential=ADMIN_PASSWORD,
                producer=Action(
                    argv=kubectl(
                        config,
                        "-n",
                        gitops.namespace,
                        "get",
                        "secret",
                        INITIAL_ADMIN_SECRET,
                        "-o",
                        "jsonpath={.data.password}",
                    ),
                    display=f"read {INITIAL_ADMIN_SECRET}",
                ),
                destination=lambda ctx: ctx.path(ctx.config.vault.credentials_path),
                fmt=CREDENTIALS_FORMAT,
                extract=decode_password,
                details=_credential_details,
            ),
        ),
        notes=(f"Credentials saved to {inputs.path(config.vault.credentials_path)}",),
    )


def build_cli(inputs: PlanInputs) -> Stage:
    config = inputs.config
    sudo = "sudo " if config.commands.sudo else ""
    download = "/tmp/argocd-linux-amd64"
    return Stage(
        name="cli",
        label="Install Argo CD CLI",
        steps=(
            ActionStep(
                name="argocd_cli",
                label="Install argocd binary",
                actions=(
                    shell(
                        f"curl -sSL -o {download} {config.gitops.cli_url}"
                        f" && {sudo}install -m 555 {download} /usr/local/bin/argocd"
                        f" && rm -f {download}",
                        "install argocd CLI",
                        guard=Action(argv=(config.commands.argocd, "version", "--client"), display="argocd present"),
                    ),
                ),
            ),
        ),
    )


def build_configure(inputs: PlanInputs) -> Stage:
    config = inputs.config
    gitops = config.gitops
    insecure = "true" if gitops.insecure else "false"
    steps: list[Step] = [
        ActionStep(
            name="server_insecure",
            label=f"Set server.insecure={insecure}",
            actions=(
                Action(
                    argv=kubectl(
                        config,
                        "patch",
                        "configmap",
                        "argocd-cmd-params-cm",
                        "-n",
                        gitops.namespace,
                        "--type",
                        "merge",
                        "-p",
                        json.dumps({"data": {"server.insecure": insecure}}),
                    ),
                    display="patch argocd-cmd-params-cm",
                ),
            ),
        ),
        ActionStep(
            name="restart_server",
            label=f"Restart {SERVER_DEPLOYMENT}",
            actions=(
                Action(
                    argv=kubectl(config, "rollout", "restart", "deployment", SERVER_DEPLOYMENT, "-n", gitops.namespace),
                    display=f"rollout restart {SERVER_DEPLOYMENT}",
                ),
            ),
        ),
        ReadinessStep(
            name="server_rollout",
            label=f"Wait for {SERVER_DEPLOYMENT} rollout",
            timeout_s=gitops.ready_timeout_s,
            condition=lambda ctx: conditions.rollout_complete(
                ctx.runner,
                ctx.config.commands.kubectl,
                ctx.config.gitops.namespace,
                SERVER_DEPLOYMENT,
                interval_s=ctx.config.polling.resource_interval_s,
            ),
        ),
    ]
    if gitops.health_url:
        health_url = gitops.health_url
        steps.append(
            ReadinessStep(
                name="server_healthy",
                label=f"Wait for {health_url}",
                timeout_s=gitops.ready_timeout_s,
                condition=lambda ctx: conditions.http_healthy(
                    health_url, interval_s=ctx.config.polling.resource_interval_s
                ),
            )
        )
    return Stage(name="configure", label="Configure Argo CD server", steps=tuple(steps))


def _repo_actions(ctx: RunContext, repo: RepoSettings, repo_token: str | None) -> list[Action]:
    config = ctx.config
    argocd = config.commands.argocd
    password = ctx.credential(ADMIN_PASSWORD, ctx.path(config.vault.credentials_path), CREDENTIALS_FORMAT)
    server = f"{config.cluster.master_ip}:{config.gitops.https_node_port}"
    login = [argocd, "login", server, "--username", ADMIN_USERNAME, "--password", password]
    if config.gitops.insecure:
        login.append("--insecure")
    add = [argocd, "repo", "add", repo.url, "--upsert"]
    if repo.username:
        add += ["--username", repo.username]
    if repo_token:
        add += ["--password", repo_token]
    return [
        Action(argv=tuple(login), display=f"argocd login {server}"),
        Action(argv=tuple(add), display=f"argocd repo add {repo.url}"),
    ]


def build_app(inputs: PlanInputs) -> Stage:
    config = inputs.config
    gitops = config.gitops
    manifests = [inputs.path(item) for item in gitops.app_manifests]
    missing = [str(path) for path in manifests if not path.exists()]
    if missing:
        raise UsageError(f"Missing application manifest(s): {', '.join(missing)}")

    steps: list[Step] = [
        ActionStep(
            name="app_manifests",
            label="Apply project and application manifests",
            actions=tuple(apply_manifest(config, str(path), display=f"apply {path.name}") for path in manifests),
        )
    ]
    notes: tuple[str, ...] = ()
    repo = gitops.repo
    if repo is not None:
        repo_token = inputs.secret(repo.password_env, "gitops.repo.password_env") if repo.password_env else None
        steps.append(
            ActionStep(
                name="repository_access",
                label=f"Register repository {repo.url}",
                resolve=lambda ctx: _repo_actions(ctx, repo, repo_token),
            )
        )
    else:
        notes = (
            "If the application repository is private, register it with Argo CD:",
            "  argocd repo add <repo-url> --username <username> --password <token>",
            "or set gitops.repo in kubeboot.yaml and re-run `kubeboot gitops app`.",
        )
    return Stage(name="app", label="Create Argo CD application", steps=tuple(steps), notes=notes)


def build_info(inputs: PlanInputs) -> Stage:
    config = inputs.config
    credentials_path = inputs.path(config.vault.credentials_path)

    def describe(output: str) -> list[str]:
        host = output.strip().split()[0] if output.strip() else config.cluster.master_ip
        return [
            f"UI URL: {_server_url(config, host)}",
            f"Username: {ADMIN_USERNAME}",
            f"Password: see {credentials_path}",
            f"Check Argo CD: kubectl get pods -n {config.gitops.namespace}",
            f"Check application: kubectl get pods -n {config.registry.namespace}",
            f"CLI login: argocd login {host}:{config.gitops.https_node_port}",
        ]

    return Stage(
        name="info",
        label="Argo CD access information",
        steps=(
            ActionStep(
                name="master_address",
                label="Query master InternalIP",
                actions=(
                    Action(
                        argv=kubectl(
                            config,
                            "get",
                            "nodes",
                            "-o",
                            'jsonpath={.items[0].status.addresses[?(@.type=="InternalIP")].address}',
                        ),
                        display="master InternalIP",
                    ),
                ),
                describe=describe,
            ),
        ),
    )


GITOPS = Workflow(
    family="gitops",
    description="Argo CD GitOps controller",
    stages={
        "install": StageSpec("Install Argo CD", build_install, "Install Argo CD and configure service"),
        "cli": StageSpec("Install Argo CD CLI", build_cli),
        "configure": StageSpec("Configure Argo CD server", build_configure, "Configure Argo CD for insecure mode"),
        "app": StageSpec("Create Argo CD application", build_app, "Create the application in Argo CD"),
        "info": StageSpec("Argo CD access information", build_info, "Display access information"),
    },
    composites={"all": ("install", "cli", "configure", "app", "info")},
    composite_notes={
        "all": (
            "1. Open the Argo CD UI and check the application exists",
            "2. Configure repository access if the repository is private",
            "3. Sync the application",
        )
    },
)
