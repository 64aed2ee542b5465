from __future__ import annotations

from pathlib import Path

import pytest

from conftest import set_config
from kubeboot.config.load import ConfigError, load_config, resolve_path
from kubeboot.config.model import Config
from kubeboot.config.secrets import EnvCredentialProvider


def test_defaults_mirror_bootstrap_scripts() -> None:
    config = Config()

    assert config.cluster.pod_network_cidr == "10.244.0.0/16"
    assert config.cluster.node_count == 3
    assert config.gitops.https_node_port == 30443
    assert config.gitops.http_node_port == 30080
    assert config.registry.namespace == "todo-app"
    assert config.polling.node_interval_s == 10
    assert config.connectivity.status_mode is None


def test_load_sample_project(sample_project: Path) -> None:
    config = load_config(sample_project)

    assert config.cluster.worker_ips == ["40.172.190.235", "3.28.200.103"]
    assert config.registry.server == "registry.example.com"
    assert config.polling.max_transient_errors == 2


def test_missing_config_is_config_error(tmp_path: Path) -> None:
    with pytest.raises(ConfigError, match="Missing config"):
        load_config(tmp_path)


def test_empty_config_uses_defaults(tmp_path: Path) -> None:
    (tmp_path / "kubeboot.yaml").write_text("", encoding="utf-8")
    assert load_config(tmp_path).version == "v1"


def test_unknown_key_is_rejected(sample_project: Path) -> None:
    set_config(sample_project, "polling:", "polling:\n  retries: 3")
    with pytest.raises(ConfigError):
        load_config(sample_project)


def test_unsupported_version_is_rejected(sample_project: Path) -> None:
    set_config(sample_project, "version: v1", "version: v2")
    with pytest.raises(ConfigError, match="v1"):
        load_config(sample_project)


def test_duplicate_node_address_is_rejected(sample_project: Path) -> None:
    set_config(sample_project, "3.28.200.103", "192.168.100.101")
    with pytest.raises(ConfigError, match="Duplicate node addresses"):
        load_config(sample_project)


def test_playbook_status_requires_playbook(sample_project: Path) -> None:
    set_config(sample_project, "  inventory: ansible/inventory.ini", "  status_mode: playbook")
    with pytest.raises(ConfigError, match="status_playbook"):
        load_config(sample_project)


def test_non_mapping_config_is_rejected(tmp_path: Path) -> None:
    (tmp_path / "kubeboot.yaml").write_text("- just\n- a list\n", encoding="utf-8")
    with pytest.raises(ConfigError, match="mapping"):
        load_config(tmp_path)


def test_invalid_yaml_is_rejected(tmp_path: Path) -> None:
    (tmp_path / "kubeboot.yaml").write_text("cluster: [unclosed\n", encoding="utf-8")
    with pytest.raises(ConfigError, match="Failed to parse YAML"):
        load_config(tmp_path)


def test_resolve_path(tmp_path: Path) -> None:
    assert resolve_path(tmp_path, "state/join.sh") == tmp_path / "state" / "join.sh"
    assert resolve_path(tmp_path, "/etc/hosts") == Path("/etc/hosts")
    assert resolve_path(tmp_path, "~/k8s-join-command.sh") == Path.home() / "k8s-join-command.sh"


def test_env_provider_treats_empty_as_missing() -> None:
    provider = EnvCredentialProvider({"KUBEBOOT_REGISTRY_PASSWORD": "", "TOKEN": "abc"})

    assert provider.get("KUBEBOOT_REGISTRY_PASSWORD") is None
    assert provider.get("TOKEN") == "abc"
    assert provider.get("UNSET") is None
