import typer
import rich_click  # noqa: F401
from .run import family_command
from .stages import stages
from kubeboot import __version__

app = typer.Typer(
    name="kubeboot",
    help="Staged Kubernetes cluster and Argo CD bootstrapper",
    no_args_is_help=True,
)

@app.command("version")
def version() -> None:
    """Show the kubeboot version."""
    typer.echo(f"kubeboot v{__version__}")

app.command(
    "cluster",
    help="Bootstrap the control plane: master, components, labels, registry, all.",
)(family_command("cluster", "master | components | labels | registry | all"))
app.command(
    "gitops",
    help="Install and configure Argo CD: install, cli, configure, app, info, all.",
)(family_command("gitops", "install | cli | configure | app | info | all"))
app.command(
    "connectivity",
    help="Run Ansible against the servers: test, setup, deploy, status, full.",
)(family_command("connectivity", "test | setup | deploy | status | full"))
app.command(
    "worker",
    help="Prepare this node as a worker: install, system, verify, join, all.",
)(family_command("worker", "install | system | verify | join | all"))
app.command("stages")(stages)
