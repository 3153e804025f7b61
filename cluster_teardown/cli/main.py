"""Main CLI entry point using Typer."""

import logging
import sys
from enum import Enum
from typing import Optional

import typer
import yaml
from rich.console import Console

from ..teardown.errors import DiscoveryError
from ..utils.logging import setup_logging
from .config import Config, ConfigError

logger = logging.getLogger(__name__)

# Create Typer app
app = typer.Typer(
    name="cluster-teardown",
    help="Cluster Teardown - delete every cloud resource owned by a Kubernetes cluster",
    add_completion=False,
)

# Create Rich console for output
console = Console()

# Global config
config: Optional[Config] = None


class Cloud(str, Enum):
    GCE = "gce"
    AWS = "aws"


class OutputFormat(str, Enum):
    TABLE = "table"
    YAML = "yaml"


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logging"),
    quiet: bool = typer.Option(False, "--quiet", "-q", help="Suppress output except errors"),
    no_color: bool = typer.Option(False, "--no-color", help="Disable colored output"),
):
    """Cluster Teardown - delete every cloud resource owned by a Kubernetes cluster."""
    global config

    # Load configuration
    try:
        config = Config.load()
    except ConfigError as e:
        console.print(f"✗ Configuration error: {e}", style="bold red")
        raise typer.Exit(code=2)

    # Setup logging
    log_level = "ERROR" if quiet else ("DEBUG" if verbose else config.log_level)
    setup_logging(level=log_level, verbose=verbose)

    # Disable colors if requested
    if no_color:
        console.no_color = True


@app.command()
def version():
    """Show version information."""
    import boto3
    import googleapiclient.version

    from .. import __version__

    console.print(f"cluster-teardown version {__version__}")
    console.print(f"Python {sys.version.split()[0]}")
    console.print(f"boto3 {boto3.__version__}")
    console.print(f"google-api-python-client {googleapiclient.version.__version__}")


def build_adapter(cloud: Cloud, cluster_name: str, region: Optional[str], project: Optional[str], profile: Optional[str]):
    """Create the discovery adapter for a cloud.

    Raises:
        ConfigError: If a required setting is missing
    """
    if cloud == Cloud.GCE:
        from ..providers.gce.cloud import GCECloud
        from ..providers.gce.discovery import GCEClusterDiscovery

        if not project:
            raise ConfigError("--project (or GOOGLE_CLOUD_PROJECT) is required for GCE")
        if not region:
            raise ConfigError("--region is required for GCE")
        return GCEClusterDiscovery(GCECloud(project=project, region=region), cluster_name)

    from ..providers.aws.discovery import AWSClusterDiscovery

    if not region:
        raise ConfigError("--region is required for AWS")
    return AWSClusterDiscovery(cluster_name, region=region, aws_profile=profile)


@app.command()
def delete(
    cluster_name: str = typer.Argument(..., help="Name of the cluster to delete"),
    cloud: Cloud = typer.Option(..., "--cloud", "-c", help="Cloud the cluster runs on", case_sensitive=False),
    region: Optional[str] = typer.Option(None, "--region", "-r", help="Region the cluster runs in"),
    project: Optional[str] = typer.Option(None, "--project", help="GCP project ID (GCE only)"),
    profile: Optional[str] = typer.Option(None, "--profile", "-p", help="AWS profile name (AWS only)"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Delete resources (default is a dry run)"),
    output: OutputFormat = typer.Option(OutputFormat.TABLE, "--output", "-o", help="Output format for the plan"),
    timeout: Optional[float] = typer.Option(None, "--timeout", help="Give up after this many seconds"),
):
    """Delete all resources belonging to a cluster.

    Without --yes only the deletion plan is shown: resources grouped by the
    pass they would be deleted in, plus anything that could never be deleted.

    Examples:
        # Preview what would be deleted
        cluster-teardown delete mycluster.example.com --cloud gce --project my-project --region us-central1

        # Delete it
        cluster-teardown delete mycluster.example.com --cloud aws --region us-east-1 --yes
    """
    from ..teardown.discovery import collect_resources
    from ..teardown.planner import DryRunReporter
    from ..teardown.reporter import TeardownReporter
    from ..teardown.scheduler import DeletionScheduler

    try:
        region = region or config.region
        project = project or config.gce_project
        profile = profile or config.aws_profile
        if timeout is not None:
            config.timeout = timeout
        config.validate()

        adapter = build_adapter(cloud, cluster_name, region, project, profile)

        console.print(f"🔍 Discovering resources for cluster [bold]{cluster_name}[/bold] ({cloud.value})")
        graph = collect_resources(adapter, max_workers=config.max_workers)

        reporter = TeardownReporter(console)

        if not yes:
            plan = DryRunReporter().plan(graph)
            if output == OutputFormat.YAML:
                console.print(
                    yaml.safe_dump(plan.to_dict(), default_flow_style=False, sort_keys=False),
                    end="",
                    markup=False,
                    highlight=False,
                    soft_wrap=True,
                )
            else:
                reporter.display_plan(plan, cluster_name)
                console.print("Dry run only; re-run with --yes to delete these resources", style="yellow")
            raise typer.Exit(code=0)

        scheduler = DeletionScheduler(
            max_workers=config.max_workers,
            stall_retries=config.stall_retries,
            retry_interval=config.retry_interval,
            timeout=config.timeout,
        )
        result = scheduler.run(graph)
        reporter.display_result(result)

        if not result.is_complete:
            console.print(
                f"✗ Teardown {result.outcome.value}: {len(result.residual)} resources remain", style="bold red"
            )
            raise typer.Exit(code=1)

        console.print(f"✓ Deleted cluster {cluster_name}", style="bold green")

    except typer.Exit:
        # Re-raise Exit exceptions (normal exit codes)
        raise
    except ConfigError as e:
        console.print(f"✗ Configuration error: {e}", style="bold red")
        raise typer.Exit(code=2)
    except DiscoveryError as e:
        console.print(f"✗ Discovery failed: {e}", style="bold red")
        logger.debug("Discovery error", exc_info=True)
        raise typer.Exit(code=2)
    except Exception as e:
        console.print(f"✗ Error deleting cluster: {e}", style="bold red")
        logger.exception("Error in delete command")
        raise typer.Exit(code=2)


def cli_main():
    """Entry point for console script."""
    app()


if __name__ == "__main__":
    cli_main()
