"""CLI entry point for triton-k8s, built on cli-core-yo.

Usage::

    triton-k8s --help
    triton-k8s managers
    triton-k8s show prod
    triton-k8s get prod module.cluster_triton_dev.triton_account
    triton-k8s nodes prod cluster_triton_dev
    triton-k8s add-nodes prod cluster_triton_dev --hostname web --count 3 \\
        --settings node.yaml
    triton-k8s destroy-node prod cluster_triton_dev web-2
    triton-k8s destroy-manager prod --yes
"""

from __future__ import annotations

import json
import logging
import sys
from pathlib import Path
from typing import Callable, List, Optional, TypeVar

import typer
import yaml
from cli_core_yo import output
from cli_core_yo.app import create_app
from cli_core_yo.spec import CliSpec, PolicySpec, XdgSpec

from triton_k8s import ui
from triton_k8s.config.loader import load_config
from triton_k8s.config.models import ProvisionConfig
from triton_k8s.errors import (
    ApplyFailure,
    LockError,
    PersistFailure,
    TritonK8sError,
)
from triton_k8s.workflow.coordinator import ProvisionCoordinator
from triton_k8s.workflow.nodes import TritonNodeSettings, triton_node_factory

logger = logging.getLogger(__name__)

EXIT_SUCCESS = 0
EXIT_FAILURE = 1
EXIT_APPLY_FAILURE = 2
EXIT_PERSIST_FAILURE = 3
EXIT_LOCKED = 4

T = TypeVar("T")

# ── App specification ────────────────────────────────────────────────────────

spec = CliSpec(
    prog_name="triton-k8s",
    app_display_name="Triton Kubernetes",
    dist_name="triton-k8s",
    root_help=(
        "Provision and tear down multi-cloud Kubernetes clusters from a "
        "single Terraform state document per cluster manager."
    ),
    xdg=XdgSpec(app_dir_name="triton-k8s"),
    policy=PolicySpec(),
)

app = create_app(spec)

_CONFIG_OPTION = typer.Option(None, "--config", help="Path to triton-k8s config YAML.")
_DEBUG_OPTION = typer.Option(False, "--debug", help="Enable debug logging.")


# ── Helpers ──────────────────────────────────────────────────────────────────


def _config(config: Optional[str], debug: bool) -> ProvisionConfig:
    if debug:
        logging.basicConfig(level=logging.DEBUG)
        logging.getLogger("triton_k8s").setLevel(logging.DEBUG)
    try:
        return load_config(config)
    except ValueError as exc:
        output.error(str(exc))
        raise typer.Exit(EXIT_FAILURE) from exc


def _coordinator(config: Optional[str], debug: bool) -> ProvisionCoordinator:
    return ProvisionCoordinator.from_config(_config(config, debug))


def _guard(fn: Callable[[], T]) -> T:
    """Run *fn*, mapping state-engine errors to exit codes."""
    try:
        return fn()
    except PersistFailure as exc:
        ui.error_panel("STATE NOT PERSISTED", str(exc))
        raise typer.Exit(EXIT_PERSIST_FAILURE) from exc
    except ApplyFailure as exc:
        ui.fail(f"Terraform failed; state unchanged. {exc}")
        raise typer.Exit(EXIT_APPLY_FAILURE) from exc
    except LockError as exc:
        output.error(str(exc))
        raise typer.Exit(EXIT_LOCKED) from exc
    except (TritonK8sError, ValueError) as exc:
        output.error(str(exc))
        raise typer.Exit(EXIT_FAILURE) from exc


# ── Read commands ────────────────────────────────────────────────────────────


@app.command()
def managers(
    config: Optional[str] = _CONFIG_OPTION,
    debug: bool = _DEBUG_OPTION,
) -> None:
    """List cluster managers with a committed state document."""
    coordinator = _coordinator(config, debug)
    names = _guard(coordinator.list_managers)
    if not names:
        output.warning("No cluster managers found.")
        return
    for name in names:
        output.detail(name)


@app.command()
def show(
    target: str = typer.Argument(..., help="Cluster manager name."),
    config: Optional[str] = _CONFIG_OPTION,
    debug: bool = _DEBUG_OPTION,
) -> None:
    """Print the committed state document."""
    coordinator = _coordinator(config, debug)
    document = _guard(lambda: coordinator.read(target))
    typer.echo(document.to_bytes().decode("utf-8"), nl=False)


@app.command()
def get(
    target: str = typer.Argument(..., help="Cluster manager name."),
    path: str = typer.Argument(..., help="Dotted path, e.g. module.cluster-manager.name"),
    config: Optional[str] = _CONFIG_OPTION,
    debug: bool = _DEBUG_OPTION,
) -> None:
    """Resolve one value from the committed document."""
    coordinator = _coordinator(config, debug)
    document = _guard(lambda: coordinator.read(target))
    value = document.get(path)
    if value is None:
        output.warning(f"{path} is not set.")
        raise typer.Exit(EXIT_FAILURE)
    typer.echo(value if isinstance(value, str) else json.dumps(value, sort_keys=True))


@app.command()
def nodes(
    target: str = typer.Argument(..., help="Cluster manager name."),
    cluster: str = typer.Argument(..., help="Cluster module, e.g. cluster_triton_dev."),
    config: Optional[str] = _CONFIG_OPTION,
    debug: bool = _DEBUG_OPTION,
) -> None:
    """List the nodes of a cluster."""
    coordinator = _coordinator(config, debug)
    document = _guard(lambda: coordinator.read(target))
    found = document.nodes(cluster)
    if not found:
        output.warning(f"No nodes in {cluster}.")
        return
    for hostname, key in sorted(found.items()):
        ui.detail(hostname, key)


# ── Mutating commands ────────────────────────────────────────────────────────


@app.command("add-nodes")
def add_nodes(
    target: str = typer.Argument(..., help="Cluster manager name."),
    cluster: str = typer.Argument(..., help="Cluster module, e.g. cluster_triton_dev."),
    hostname: str = typer.Option(..., "--hostname", help="Base hostname."),
    count: int = typer.Option(1, "--count", help="Number of nodes to add."),
    settings_file: Optional[Path] = typer.Option(
        None,
        "--settings",
        help="YAML file with resolved Triton node settings.",
    ),
    config: Optional[str] = _CONFIG_OPTION,
    debug: bool = _DEBUG_OPTION,
) -> None:
    """Add Triton nodes to a cluster and apply."""
    cfg = _config(config, debug)
    coordinator = ProvisionCoordinator.from_config(cfg)

    raw = {}
    if settings_file is not None:
        raw = yaml.safe_load(settings_file.read_text(encoding="utf-8")) or {}
    settings = _guard(lambda: TritonNodeSettings.model_validate(raw))

    output.action(f"Adding {count} node(s) to {cluster} in {target} ...")
    result = _guard(
        lambda: coordinator.add_nodes(
            target,
            cluster,
            hostname,
            count,
            triton_node_factory(cfg, cluster, settings),
        )
    )
    for name in result.added:
        ui.ok(f"node {name}")
    output.success(f"State for {target} committed.")


@app.command("destroy-node")
def destroy_node(
    target: str = typer.Argument(..., help="Cluster manager name."),
    cluster: str = typer.Argument(..., help="Cluster module, e.g. cluster_triton_dev."),
    hostnames: List[str] = typer.Argument(..., help="Node hostname(s)."),
    config: Optional[str] = _CONFIG_OPTION,
    debug: bool = _DEBUG_OPTION,
) -> None:
    """Destroy nodes and remove them from the state document."""
    coordinator = _coordinator(config, debug)
    output.action(f"Destroying {', '.join(hostnames)} in {target} ...")
    result = _guard(lambda: coordinator.destroy_nodes(target, cluster, hostnames))
    for name in result.removed:
        ui.ok(f"removed module.{name}")
    output.success(f"State for {target} committed.")


@app.command("destroy-cluster")
def destroy_cluster(
    target: str = typer.Argument(..., help="Cluster manager name."),
    cluster: str = typer.Argument(..., help="Cluster module, e.g. cluster_triton_dev."),
    config: Optional[str] = _CONFIG_OPTION,
    debug: bool = _DEBUG_OPTION,
) -> None:
    """Destroy a cluster and all of its nodes."""
    coordinator = _coordinator(config, debug)
    output.action(f"Destroying {cluster} in {target} ...")
    result = _guard(lambda: coordinator.destroy_cluster(target, cluster))
    for name in result.removed:
        ui.ok(f"removed module.{name}")
    output.success(f"State for {target} committed.")


@app.command("destroy-manager")
def destroy_manager(
    target: str = typer.Argument(..., help="Cluster manager name."),
    yes: bool = typer.Option(False, "--yes", help="Skip the confirmation prompt."),
    config: Optional[str] = _CONFIG_OPTION,
    debug: bool = _DEBUG_OPTION,
) -> None:
    """Destroy a cluster manager, everything under it, and its state."""
    if not yes:
        typer.confirm(f"Destroy '{target}' and every cluster and node it manages?", abort=True)
    coordinator = _coordinator(config, debug)
    ui.step(f"Destroying cluster manager {target} ...")
    _guard(lambda: coordinator.destroy_manager(target))
    output.success(f"Cluster manager {target} destroyed.")


# ── Entry point ──────────────────────────────────────────────────────────────


def main() -> int:
    """Run the CLI and return an exit code."""
    try:
        app()
        return 0
    except SystemExit as exc:
        return exc.code if isinstance(exc.code, int) else 0


if __name__ == "__main__":
    sys.exit(main())
