from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator


class Commands(BaseModel):
    model_config = ConfigDict(extra="forbid")

    kubectl: str = "kubectl"
    kubeadm: str = "kubeadm"
    argocd: str = "argocd"
    ansible: str = "ansible"
    ansible_playbook: str = "ansible-playbook"
    sudo: bool = True


class ClusterSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    master_ip: str = "192.168.100.101"
    worker_ips: list[str] = Field(default_factory=lambda: ["40.172.190.235", "3.28.200.103"])
    expected_nodes: int | None = Field(default=None, ge=1)
    pod_network_cidr: str = "10.244.0.0/16"
    kubernetes_apt_repo: str = "deb [signed-by=/etc/apt/keyrings/kubernetes-archive-keyring.gpg] https://apt.kubernetes.io/ kubernetes-xenial main"
    kubernetes_apt_key: str = "https://packages.cloud.google.com/apt/doc/apt-key.gpg"
    cni_manifest: str = "https://raw.githubusercontent.com/flannel-io/flannel/master/Documentation/kube-flannel.yml"
    ingress_manifest: str = "https://raw.githubusercontent.com/kubernetes/ingress-nginx/controller-v1.8.2/deploy/static/provider/cloud/deploy.yaml"
    metrics_manifest: str = "https://github.com/kubernetes-sigs/metrics-server/releases/latest/download/components.yaml"
    worker_label: str = "node-role.kubernetes.io/worker=worker"
    docker_user: str | None = None

    @property
    def node_count(self) -> int:
        return self.expected_nodes or 1 + len(self.worker_ips)


class PollingSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    node_interval_s: float = Field(default=10.0, gt=0)
    resource_interval_s: float = Field(default=5.0, gt=0)
    max_transient_errors: int = Field(default=5, ge=0)


class RepoSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    url: str
    username: str | None = None
    password_env: str | None = None


class GitOpsSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    namespace: str = "argocd"
    install_manifest: str = "https://raw.githubusercontent.com/argoproj/argo-cd/stable/manifests/install.yaml"
    cli_url: str = "https://github.com/argoproj/argo-cd/releases/latest/download/argocd-linux-amd64"
    https_node_port: int = 30443
    http_node_port: int = 30080
    insecure: bool = True
    ready_timeout_s: float | None = 300.0
    health_url: str | None = None
    app_manifests: list[str] = Field(
        default_factory=lambda: ["argocd/todo-project.yaml", "argocd/todo-app-application.yaml"]
    )
    repo: RepoSettings | None = None


class RegistrySettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    server: str | None = None
    username: str | None = None
    email: str = "your-email@example.com"
    password_env: str = "KUBEBOOT_REGISTRY_PASSWORD"
    namespace: str = "todo-app"
    secret_name: str = "registry-secret"


class ConnectivitySettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    inventory: str | None = None
    hosts: str = "all"
    setup_playbook: str = "ansible/playbooks/setup-servers.yml"
    deploy_playbook: str = "ansible/playbooks/deploy-app.yml"
    status_mode: Literal["command", "playbook"] | None = None
    status_command: str = "docker ps"
    status_playbook: str | None = None

    @model_validator(mode="after")
    def _validate_status(self) -> "ConnectivitySettings":
        if self.status_mode == "playbook" and not self.status_playbook:
            raise ValueError("connectivity.status_playbook is required when status_mode is 'playbook'.")
        return self


class VaultSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    join_command_path: str = "~/k8s-join-command.sh"
    credentials_path: str = "~/argocd-credentials.yaml"


class Config(BaseModel):
    model_config = ConfigDict(extra="forbid")

    version: str = "v1"
    commands: Commands = Field(default_factory=Commands)
    cluster: ClusterSettings = Field(default_factory=ClusterSettings)
    polling: PollingSettings = Field(default_factory=PollingSettings)
    gitops: GitOpsSettings = Field(default_factory=GitOpsSettings)
    registry: RegistrySettings = Field(default_factory=RegistrySettings)
    connectivity: ConnectivitySettings = Field(default_factory=ConnectivitySettings)
    vault: VaultSettings = Field(default_factory=VaultSettings)

    @model_validator(mode="after")
    def _validate_config(self) -> "Config":
        if self.version != "v1":
            raise ValueError("Only version v1 is supported.")
        ips = [self.cluster.master_ip, *self.cluster.worker_ips]
        duplicates = sorted({ip for ip in ips if ips.count(ip) > 1})
        if duplicates:
            raise ValueError(f"Duplicate node addresses: {', '.join(duplicates)}")
        return self
