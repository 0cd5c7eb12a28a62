"""Command-line entry point using Typer."""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import replace
from pathlib import Path
from typing import Iterator

import structlog
import typer
from rich.console import Console
from rich.table import Table

from cephfs_pvc_converter.config import (
    AppConfig,
    RunContext,
    build_run_context,
    ensure_directories,
    validate_namespace,
)
from cephfs_pvc_converter.errors import MigrationError, ValidationError
from cephfs_pvc_converter.k8s import (
    IN_CLUSTER_CONTEXT_NAME,
    ClusterClient,
    current_context_name,
    load_kubernetes_clients,
)
from cephfs_pvc_converter.logging_config import configure_logging
from cephfs_pvc_converter.models import AccessMode, Mounter
from cephfs_pvc_converter.orchestrator import Orchestrator
from cephfs_pvc_converter.snapshot import load_snapshot
from cephfs_pvc_converter.workloads import WorkloadResumer

app = typer.Typer(
    name="cephfs-pvc-converter",
    help="Change the access mode and mounter of CephFS PVCs in place, keeping their data.",
    add_completion=False,
    no_args_is_help=True,
)

console = Console()
logger = structlog.get_logger()

_NAMESPACE_OPTION = typer.Option(..., "--namespace", "-n", help="Namespace whose PVCs are converted.")
_CLUSTER_OPTION = typer.Option(
    None,
    "--cluster",
    "-c",
    help="Kubeconfig context to use. Defaults to the current context.",
)
_KUBECONFIG_OPTION = typer.Option(None, "--kubeconfig", help="Path to the kubeconfig file.")
_IN_CLUSTER_OPTION = typer.Option(False, "--in-cluster", help="Use the pod's service account credentials.")
_WORK_DIR_OPTION = typer.Option(None, "--work-dir", help="Directory for logs, snapshots and manifest backups.")
_VERBOSE_OPTION = typer.Option(False, "--verbose", "-v", help="Enable verbose output.")
_DEBUG_OPTION = typer.Option(False, "--debug", help="Enable debug mode.")


@app.command()
def convert(
    namespace: str = _NAMESPACE_OPTION,
    mode: AccessMode = typer.Option(AccessMode.READ_WRITE_MANY, "--mode", "-m", help="Target access mode."),
    mounter: Mounter = typer.Option(Mounter.KERNEL, "--mounter", "-t", help="Target CephFS mounter."),
    cluster: str | None = _CLUSTER_OPTION,
    kubeconfig: str | None = _KUBECONFIG_OPTION,
    in_cluster: bool = _IN_CLUSTER_OPTION,
    storage_class: str | None = typer.Option(None, "--storage-class", help="Storage class of the PVCs to convert."),
    work_dir: Path | None = _WORK_DIR_OPTION,
    drain_timeout: float | None = typer.Option(
        None, "--drain-timeout", help="Seconds to wait for pods to stop (0 waits forever)."
    ),
    bind_timeout: float | None = typer.Option(
        None, "--bind-timeout", help="Seconds to wait for each PV/PVC pair to bind (0 waits forever)."
    ),
    verbose: bool = _VERBOSE_OPTION,
    debug: bool = _DEBUG_OPTION,
) -> None:
    """Stop the namespace's workloads, convert its PVCs and start the workloads again."""
    config = _app_config(
        work_dir=work_dir,
        storage_class=storage_class,
        drain_timeout=drain_timeout,
        bind_timeout=bind_timeout,
    )
    context = _start_run(
        config,
        namespace=namespace,
        cluster=cluster,
        kubeconfig=kubeconfig,
        in_cluster=in_cluster,
        verbose=verbose,
        debug=debug,
    )
    logger.info("executing_on_cluster", cluster=context.cluster_name)
    logger.info("access_mode_used", access_mode=mode.value)
    logger.info("mounter_type_used", mounter=mounter.value)

    with _fatal_errors():
        cluster_client = _connect(kubeconfig=kubeconfig, cluster=cluster, in_cluster=in_cluster)
        report = Orchestrator(cluster=cluster_client, context=context).run(context.namespace, mode, mounter)

    logger.info("end_of_run")
    console.print(
        f"[green]Converted {len(report.converted_claims)} PVC(s) in namespace {context.namespace}:[/green] "
        f"{', '.join(report.converted_claims)}"
    )
    console.print(f"Workloads restored: {len(report.snapshot)}. Run directory: {context.execution_dir}")


@app.command()
def plan(
    namespace: str = _NAMESPACE_OPTION,
    cluster: str | None = _CLUSTER_OPTION,
    kubeconfig: str | None = _KUBECONFIG_OPTION,
    in_cluster: bool = _IN_CLUSTER_OPTION,
    storage_class: str | None = typer.Option(None, "--storage-class", help="Storage class of the PVCs to convert."),
    verbose: bool = _VERBOSE_OPTION,
    debug: bool = _DEBUG_OPTION,
) -> None:
    """List the PVCs a conversion would touch, without changing anything."""
    configure_logging(verbose=verbose, debug=debug)
    with _fatal_errors():
        namespace = validate_namespace(namespace)
    config = _app_config(storage_class=storage_class)
    cluster_name = _cluster_name(cluster=cluster, kubeconfig=kubeconfig, in_cluster=in_cluster)
    context = build_run_context(config, cluster_name=cluster_name, namespace=namespace)

    with _fatal_errors():
        cluster_client = _connect(kubeconfig=kubeconfig, cluster=cluster, in_cluster=in_cluster)
        records = Orchestrator(cluster=cluster_client, context=context).plan(namespace)

    table = Table(title=f"PVCs of storage class {context.storage_class} in {namespace} ({cluster_name})")
    table.add_column("PVC", style="cyan", no_wrap=True)
    table.add_column("PV")
    table.add_column("Phase")
    table.add_column("Access modes")
    table.add_column("Mounter")
    for record in records:
        table.add_row(
            record.name,
            record.volume_name or "-",
            record.phase,
            ",".join(record.access_modes) or "-",
            record.mounter or "-",
        )
    console.print(table)


@app.command()
def resume(
    namespace: str = _NAMESPACE_OPTION,
    snapshot: Path = typer.Option(
        ...,
        "--snapshot",
        "-s",
        exists=True,
        dir_okay=False,
        readable=True,
        help="Replica snapshot file written by a previous run.",
    ),
    cluster: str | None = _CLUSTER_OPTION,
    kubeconfig: str | None = _KUBECONFIG_OPTION,
    in_cluster: bool = _IN_CLUSTER_OPTION,
    work_dir: Path | None = _WORK_DIR_OPTION,
    verbose: bool = _VERBOSE_OPTION,
    debug: bool = _DEBUG_OPTION,
) -> None:
    """Scale workloads back to the replica counts recorded in a snapshot file."""
    config = _app_config(work_dir=work_dir)
    context = _start_run(
        config,
        namespace=namespace,
        cluster=cluster,
        kubeconfig=kubeconfig,
        in_cluster=in_cluster,
        verbose=verbose,
        debug=debug,
    )

    with _fatal_errors():
        try:
            replica_snapshot = load_snapshot(snapshot, namespace=context.namespace)
        except ValueError as error:
            raise ValidationError(str(error)) from error
        cluster_client = _connect(kubeconfig=kubeconfig, cluster=cluster, in_cluster=in_cluster)
        WorkloadResumer(cluster=cluster_client).resume(context.namespace, replica_snapshot)

    console.print(f"[green]Restored {len(replica_snapshot)} workload(s) in namespace {context.namespace}.[/green]")


def _app_config(
    *,
    work_dir: Path | None = None,
    storage_class: str | None = None,
    drain_timeout: float | None = None,
    bind_timeout: float | None = None,
) -> AppConfig:
    config = AppConfig()
    overrides: dict[str, object] = {}
    if work_dir is not None:
        overrides["work_dir"] = work_dir
    if storage_class:
        overrides["storage_class"] = storage_class
    if drain_timeout is not None:
        overrides["drain_timeout_seconds"] = drain_timeout
    if bind_timeout is not None:
        overrides["bind_timeout_seconds"] = bind_timeout
    return replace(config, **overrides) if overrides else config


def _cluster_name(*, cluster: str | None, kubeconfig: str | None, in_cluster: bool) -> str:
    if cluster:
        return cluster
    if in_cluster:
        return IN_CLUSTER_CONTEXT_NAME
    return current_context_name(kubeconfig)


def _start_run(
    config: AppConfig,
    *,
    namespace: str,
    cluster: str | None,
    kubeconfig: str | None,
    in_cluster: bool,
    verbose: bool,
    debug: bool,
) -> RunContext:
    with _fatal_errors():
        namespace = validate_namespace(namespace)
        cluster_name = _cluster_name(cluster=cluster, kubeconfig=kubeconfig, in_cluster=in_cluster)
        context = build_run_context(config, cluster_name=cluster_name, namespace=namespace)
        ensure_directories(context)
        configure_logging(log_file=context.log_file, verbose=verbose, debug=debug)
    return context


def _connect(*, kubeconfig: str | None, cluster: str | None, in_cluster: bool) -> ClusterClient:
    clients = load_kubernetes_clients(kubeconfig_path=kubeconfig, context=cluster, in_cluster=in_cluster)
    return ClusterClient(clients)


@contextmanager
def _fatal_errors() -> Iterator[None]:
    """Turn migration and filesystem errors into an ``ERROR:`` line on stderr and exit code 1."""
    try:
        yield
    except (MigrationError, OSError) as error:
        logger.error("run_aborted", error=str(error), error_type=type(error).__name__)
        _fail(str(error))
    except KeyboardInterrupt:
        logger.error("run_interrupted")
        _fail("Interrupted by operator.", code=130)


def _fail(message: str, *, code: int = 1) -> None:
    typer.echo(f"ERROR: {message}", err=True)
    raise typer.Exit(code=code)


def main() -> None:
    app()


if __name__ == "__main__":
    main()
