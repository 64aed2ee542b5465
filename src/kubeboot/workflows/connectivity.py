from __future__ import annotations

from kubeboot.core.errors import UsageError
from kubeboot.core.executor import Action
from kubeboot.core.steps import ActionStep, PlanInputs, Stage, StageSpec, Workflow


def _inventory(inputs: PlanInputs) -> tuple[str, ...]:
    inventory = inputs.config.connectivity.inventory
    if not inventory:
        return ()
    return ("-i", str(inputs.path(inventory)))


def _playbook(inputs: PlanInputs, playbook: str, display: str) -> Action:
    config = inputs.config
    path = inputs.path(playbook)
    if not path.exists():
        raise UsageError(f"Missing playbook: {path}")
    return Action(
        argv=(config.commands.ansible_playbook, *_inventory(inputs), str(path)),
        display=display,
    )


def _adhoc(inputs: PlanInputs, *args: str, display: str) -> Action:
    config = inputs.config
    return Action(
        argv=(config.commands.ansible, config.connectivity.hosts, *_inventory(inputs), *args),
        display=display,
    )


def build_test(inputs: PlanInputs) -> Stage:
    return Stage(
        name="test",
        label="Test Ansible connectivity",
        steps=(
            ActionStep(
                name="ping",
                label="Ping managed hosts",
                actions=(_adhoc(inputs, "-m", "ping", display="ansible -m ping"),),
            ),
            ActionStep(
                name="distribution_facts",
                label="Gather distribution facts",
                actions=(
                    _adhoc(inputs, "-m", "setup", "-a", "filter=ansible_distribution*", display="ansible -m setup"),
                ),
            ),
        ),
    )


def build_setup(inputs: PlanInputs) -> Stage:
    playbook = inputs.config.connectivity.setup_playbook
    return Stage(
        name="setup",
        label="Configure servers",
        steps=(
            ActionStep(
                name="setup_playbook",
                label="Install Docker and dependencies",
                actions=(_playbook(inputs, playbook, f"ansible-playbook {playbook}"),),
            ),
        ),
    )


def build_deploy(inputs: PlanInputs) -> Stage:
    playbook = inputs.config.connectivity.deploy_playbook
    return Stage(
        name="deploy",
        label="Deploy application",
        steps=(
            ActionStep(
                name="deploy_playbook",
                label="Deploy with Docker Compose",
                actions=(_playbook(inputs, playbook, f"ansible-playbook {playbook}"),),
            ),
        ),
    )


def build_status(inputs: PlanInputs) -> Stage:
    settings = inputs.config.connectivity
    if settings.status_mode is None:
        raise UsageError(
            "connectivity.status_mode is not set",
            usage=[
                "Set connectivity.status_mode in kubeboot.yaml:",
                f"  command  - run `{settings.status_command}` on every host",
                "  playbook - run connectivity.status_playbook",
            ],
        )
    if settings.status_mode == "command":
        action = _adhoc(inputs, "-m", "command", "-a", settings.status_command, display=settings.status_command)
    elif settings.status_playbook is None:
        raise UsageError("connectivity.status_playbook is not set")
    else:
        action = _playbook(inputs, settings.status_playbook, f"ansible-playbook {settings.status_playbook}")
    return Stage(
        name="status",
        label="Check server status",
        steps=(ActionStep(name="status", label="Check running containers", actions=(action,)),),
    )


CONNECTIVITY = Workflow(
    family="connectivity",
    description="Ansible connectivity and application deployment",
    stages={
        "test": StageSpec("Test Ansible connectivity", build_test, "Test Ansible connectivity to servers"),
        "setup": StageSpec("Configure servers", build_setup, "Configure servers with Docker and dependencies"),
        "deploy": StageSpec("Deploy application", build_deploy, "Deploy the application using Docker Compose"),
        "status": StageSpec("Check server status", build_status, "Check running containers on servers"),
    },
    composites={"full": ("test", "setup", "deploy", "status")},
)
