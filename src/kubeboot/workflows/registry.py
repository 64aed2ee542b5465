from importlib.metadata import entry_points

from kubeboot.core.errors import UsageError
from kubeboot.core.steps import Workflow


def builtin_workflows() -> dict[str, Workflow]:
    from kubeboot.workflows.cluster import CLUSTER
    from kubeboot.workflows.connectivity import CONNECTIVITY
    from kubeboot.workflows.gitops import GITOPS
    from kubeboot.workflows.worker import WORKER

    return {workflow.family: workflow for workflow in (CLUSTER, GITOPS, CONNECTIVITY, WORKER)}


def available_workflows() -> dict[str, Workflow]:
    workflows = builtin_workflows()
    for ep in entry_points(group="kubeboot.workflows"):
        if ep.name not in workflows:
            workflows[ep.name] = ep.load()
    return workflows


def load_workflow(family: str) -> Workflow:
    workflows = available_workflows()
    if family in workflows:
        return workflows[family]
    usage = [f"  {name} - {workflow.description}" for name, workflow in workflows.items()]
    raise UsageError(f"Unknown workflow family: {family!r}", usage=["Families:", *usage])
