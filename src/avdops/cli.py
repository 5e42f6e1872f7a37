"""CLI entry point for avdops.

Commands:
    avdops troubleshoot --maintenance ...   # Drain, evict, open local access
    avdops troubleshoot --restore ...       # Reinstall agent, re-register, enable
    avdops image-prep --gallery ...         # Prepare gallery resources for a build
    avdops config show|set                  # Inspect or change ~/.avdops/config.toml

Exit codes:
    0  success
    1  invalid arguments, configuration error, or a fatal step failed
"""

import logging
import sys
from dataclasses import fields
from typing import Any

import click
import tomlkit

from avdops import __version__
from avdops.azure_cli_executor import resolve_subscription_id
from avdops.config_manager import AvdopsConfig, ConfigManager
from avdops.console import setup_logging
from avdops.credential_factory import CredentialFactory
from avdops.errors import AvdopsError
from avdops.gallery_provider import AzureImageGalleryProvider, ImageGalleryProvider
from avdops.image_prep import (
    DEFAULT_IMAGE_DEFINITION,
    DEFAULT_IMAGE_NAME,
    ImageBuildRequest,
    ImagePrep,
)
from avdops.maintenance import MaintenanceRequest, MaintenanceTransition
from avdops.maintenance_store import FileMaintenanceStore
from avdops.models import LocalAdminCredential
from avdops.providers import (
    AzureComputeProvider,
    AzureDesktopVirtualizationProvider,
    ComputeProvider,
    DesktopVirtualizationProvider,
)
from avdops.restore import RestoreRequest, RestoreTransition, format_expiration
from avdops.steps import TransitionReport

logger = logging.getLogger(__name__)

BANNER_RULE = "=" * 60


def create_providers(
    config: AvdopsConfig, subscription: str | None = None
) -> tuple[ComputeProvider, DesktopVirtualizationProvider]:
    """Build the Azure-backed compute and control-plane providers."""
    subscription_id = resolve_subscription_id(subscription or config.subscription_id)
    logger.debug(f"Using subscription: {subscription_id}")
    credential = CredentialFactory.create_credential(config.auth_method)
    return (
        AzureComputeProvider(credential, subscription_id),
        AzureDesktopVirtualizationProvider(credential, subscription_id),
    )


def create_gallery_provider(
    config: AvdopsConfig, subscription: str | None = None
) -> ImageGalleryProvider:
    subscription_id = resolve_subscription_id(subscription or config.subscription_id)
    logger.info(f"Using subscription: {subscription_id}")
    credential = CredentialFactory.create_credential(config.auth_method)
    return AzureImageGalleryProvider(credential, subscription_id)


def _fail(message: str) -> None:
    click.echo(f"Error: {message}", err=True)
    sys.exit(1)


def _load_config(ctx: click.Context) -> AvdopsConfig:
    return ConfigManager.load_config(ctx.obj.get("config_path"))


def _print_warnings(report: TransitionReport) -> None:
    warnings = report.warnings
    if warnings:
        click.echo("")
        click.echo(f"Completed with {len(warnings)} warning(s):")
        for warning in warnings:
            click.echo(f"  - {warning.strip()}")


@click.group(context_settings={"help_option_names": ["--help", "-h"]})
@click.version_option(version=__version__, prog_name="avdops")
@click.option("--debug", is_flag=True, help="Show debug output (raw API details)")
@click.option("--config", "config_path", help="Config file path", type=click.Path())
@click.pass_context
def main(ctx: click.Context, debug: bool, config_path: str | None) -> None:
    """avdops - Azure Virtual Desktop session host operations.

    \b
    COMMANDS:
        troubleshoot  Put a session host into maintenance or restore it
        image-prep    Prepare Shared Image Gallery resources for a build
        config        Show or change avdops configuration

    \b
    EXAMPLES:
        $ avdops troubleshoot --vm-name avd-sh-0 --resource-group rg-avd --maintenance
        $ avdops troubleshoot --vm-name avd-sh-0 --resource-group rg-avd --restore
        $ avdops image-prep --gallery avdgallery --location westeurope --dry-run
    """
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path
    ctx.obj["debug"] = debug
    setup_logging(debug=debug)


@main.command(name="troubleshoot")
@click.option("--vm-name", help="Target VM name", type=str)
@click.option("--resource-group", help="VM resource group", type=str)
@click.option("--maintenance", is_flag=True, help="Enter maintenance mode")
@click.option("--restore", is_flag=True, help="Restore the VM to its host pool")
@click.option("--host-pool", help="Host pool name (restore; optional hint for maintenance)")
@click.option("--host-pool-rg", help="Host pool resource group")
@click.option("--local-admin", help="Local admin username (default from config: avdadmin)")
@click.option("--local-admin-password", help="Local admin password (default: generated)")
@click.option("--skip-pool-removal", is_flag=True, help="Only configure local access")
@click.option("--subscription", help="Azure subscription ID", type=str)
@click.pass_context
def troubleshoot(
    ctx: click.Context,
    vm_name: str | None,
    resource_group: str | None,
    maintenance: bool,
    restore: bool,
    host_pool: str | None,
    host_pool_rg: str | None,
    local_admin: str | None,
    local_admin_password: str | None,
    skip_pool_removal: bool,
    subscription: str | None,
) -> None:
    """Put an AVD session host into maintenance mode or restore it.

    \b
    MAINTENANCE:
        Drains the session host, removes it from its host pool, and opens
        local administrator access for Azure Bastion. The pool is remembered
        so restore does not need --host-pool/--host-pool-rg.

    \b
    RESTORE:
        Issues a fresh registration token, reapplies AVD prerequisites,
        reinstalls the agent, waits for registration and enables sessions.

    \b
    EXAMPLES:
        $ avdops troubleshoot --vm-name avd-sh-0 --resource-group rg-avd --maintenance
        $ avdops troubleshoot --vm-name avd-sh-0 --resource-group rg-avd --restore \\
            --host-pool pool-A --host-pool-rg rg-A
    """
    if not vm_name:
        _fail("Missing required argument: --vm-name")
    if not resource_group:
        _fail("Missing required argument: --resource-group")
    if maintenance == restore:
        _fail("Specify exactly one of --maintenance or --restore")

    try:
        config = _load_config(ctx)
        if maintenance:
            exit_code = _run_maintenance(
                config,
                vm_name,
                resource_group,
                host_pool,
                host_pool_rg,
                local_admin,
                local_admin_password,
                skip_pool_removal,
                subscription,
            )
        else:
            exit_code = _run_restore(
                config, vm_name, resource_group, host_pool, host_pool_rg, subscription
            )
    except AvdopsError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(e.exit_code)

    sys.exit(exit_code)


def _run_maintenance(
    config: AvdopsConfig,
    vm_name: str,
    resource_group: str,
    host_pool: str | None,
    host_pool_rg: str | None,
    local_admin: str | None,
    local_admin_password: str | None,
    skip_pool_removal: bool,
    subscription: str | None,
) -> int:
    if bool(host_pool) != bool(host_pool_rg):
        _fail("--host-pool and --host-pool-rg must be given together")

    credential = LocalAdminCredential.create(
        local_admin or config.local_admin_user, local_admin_password
    )
    compute, desktop = create_providers(config, subscription)
    store = FileMaintenanceStore(config.maintenance_state_dir)

    logger.info(f"Entering maintenance mode for VM: {vm_name}")
    pool_hint = (host_pool, host_pool_rg) if host_pool and host_pool_rg else None
    outcome = MaintenanceTransition(compute, desktop, store).run(
        MaintenanceRequest(
            vm_name=vm_name,
            resource_group=resource_group,
            credential=credential,
            pool_hint=pool_hint,
            skip_pool_removal=skip_pool_removal,
        )
    )
    if outcome.report.failed:
        return 1

    restore_cmd = (
        f"avdops troubleshoot --vm-name {vm_name} --resource-group {resource_group} --restore"
    )
    if outcome.record:
        restore_cmd += (
            f" --host-pool {outcome.record.pool_name}"
            f" --host-pool-rg {outcome.record.pool_resource_group}"
        )

    click.echo("")
    click.echo(BANNER_RULE)
    click.echo("Maintenance Mode Enabled")
    click.echo(BANNER_RULE)
    click.echo(f"VM: {vm_name}")
    if outcome.record:
        click.echo(f"Removed from host pool: {outcome.record.pool_name}")
    click.echo("")
    click.echo("Connect via Azure Bastion with:")
    click.echo(f"  Username: {credential.username}")
    click.echo(f"  Password: {credential.password}")
    click.echo("")
    click.echo("IMPORTANT: Save the password above - it won't be shown again!")
    click.echo("")
    click.echo("When finished troubleshooting, restore with:")
    click.echo(f"  {restore_cmd}")
    click.echo(BANNER_RULE)
    _print_warnings(outcome.report)
    return 0


def _run_restore(
    config: AvdopsConfig,
    vm_name: str,
    resource_group: str,
    host_pool: str | None,
    host_pool_rg: str | None,
    subscription: str | None,
) -> int:
    if bool(host_pool) != bool(host_pool_rg):
        _fail("--host-pool and --host-pool-rg must be given together")

    store = FileMaintenanceStore(config.maintenance_state_dir)
    if not host_pool:
        record = store.load(vm_name)
        if record:
            logger.info(
                f"Recovered host pool from maintenance record: {record.pool_name} "
                f"({record.pool_resource_group})"
            )
            host_pool = record.pool_name
            host_pool_rg = record.pool_resource_group
    if not host_pool or not host_pool_rg:
        _fail(
            "--host-pool and --host-pool-rg are required for restore "
            "(no maintenance record found for this VM)"
        )

    compute, desktop = create_providers(config, subscription)
    logger.info(f"Restoring VM to production: {vm_name}")
    outcome = RestoreTransition(
        compute,
        desktop,
        store,
        settle_seconds=config.registration_settle_seconds,
        poll_interval=config.registration_poll_interval,
        max_attempts=config.registration_max_attempts,
    ).run(
        RestoreRequest(
            vm_name=vm_name,
            resource_group=resource_group,
            pool_name=host_pool,
            pool_resource_group=host_pool_rg,
        )
    )
    if outcome.report.failed:
        return 1

    click.echo("")
    click.echo(BANNER_RULE)
    click.echo("Restore Complete")
    click.echo(BANNER_RULE)
    click.echo(f"VM: {vm_name}")
    click.echo(f"Host pool: {host_pool} ({host_pool_rg})")
    if outcome.session_host:
        click.echo(f"Session host: {outcome.session_host.name}")
    if outcome.session_type:
        click.echo(f"Session type: {outcome.session_type.value}")
    if outcome.token_expiration:
        click.echo(f"Registration token expires: {format_expiration(outcome.token_expiration)}")
    click.echo(BANNER_RULE)
    _print_warnings(outcome.report)
    return 0


@main.command(name="image-prep")
@click.option("--image-name", default=DEFAULT_IMAGE_NAME, show_default=True)
@click.option("--gallery", "gallery_name", help="Shared Image Gallery name (required)")
@click.option("--resource-group", help="Gallery resource group (default from config)")
@click.option("--location", help="Azure region for new resources")
@click.option("--image-definition", default=DEFAULT_IMAGE_DEFINITION, show_default=True)
@click.option("--image-version", help="Version to publish (default: auto-increment)")
@click.option("--disk-size", "disk_size_gb", type=int, help="Target OS disk size in GB")
@click.option("--staging-rg", help="Staging resource group base name")
@click.option("--dry-run", is_flag=True, help="Show planned operations without changing anything")
@click.option("--subscription", help="Azure subscription ID", type=str)
@click.pass_context
def image_prep(
    ctx: click.Context,
    image_name: str,
    gallery_name: str | None,
    resource_group: str | None,
    location: str | None,
    image_definition: str,
    image_version: str | None,
    disk_size_gb: int | None,
    staging_rg: str | None,
    dry_run: bool,
    subscription: str | None,
) -> None:
    """Prepare Shared Image Gallery resources for an image build.

    Checks existing resources in parallel, cleans up staging groups older
    than 24 hours, creates a fresh staging group, ensures the gallery exists
    and recreates the image definition. Prints the version to build.

    \b
    Disk size options (ephemeral OS VMs):
        --disk-size 64    D2d_v5 (70 GB temp storage)
        --disk-size 127   D4d_v5 (150 GB temp storage)
        --disk-size 254   D8d_v5 (300 GB temp storage)
    """
    if not gallery_name:
        _fail("Missing required argument: --gallery")

    try:
        config = _load_config(ctx)
        request = ImageBuildRequest(
            gallery_name=gallery_name,
            image_name=image_name,
            resource_group=resource_group or config.image_resource_group,
            location=location or config.image_location,
            image_definition=image_definition,
            image_version=image_version,
            disk_size_gb=disk_size_gb,
            staging_resource_group=staging_rg,
        )
        request.validate()
        provider = create_gallery_provider(config, subscription)
        result = ImagePrep(provider).run(request, dry_run=dry_run)
    except AvdopsError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(e.exit_code)

    plan = result.plan
    click.echo("")
    click.echo(BANNER_RULE)
    click.echo("Image Build Preparation (dry run)" if dry_run else "Image Build Preparation")
    click.echo(BANNER_RULE)
    click.echo(f"  Resource Group: {plan.resource_group}")
    click.echo(f"  Location: {plan.location}")
    click.echo(f"  Gallery: {plan.gallery_name}")
    click.echo(f"  Image Definition: {plan.image_definition} (SKU {plan.sku})")
    click.echo(f"  Staging Resource Group: {plan.staging_resource_group}")
    click.echo(f"  Build Disk Size: {plan.build_disk_size_gb} GB")
    click.echo(f"  Target Version: {result.image_version}")
    if dry_run:
        click.echo("")
        click.echo("Planned operations:")
        for op in plan.operations:
            click.echo(f"  - {op}")
    for warning in result.warnings:
        click.echo(f"  Warning: {warning}")
    click.echo(BANNER_RULE)


@main.group(name="config")
def config_group() -> None:
    """Show or change avdops configuration."""
    pass


@config_group.command(name="show")
@click.pass_context
def config_show(ctx: click.Context) -> None:
    """Print the effective configuration as TOML."""
    try:
        config = _load_config(ctx)
    except AvdopsError as e:
        _fail(str(e))
    click.echo(tomlkit.dumps(config.to_dict()).rstrip())


@config_group.command(name="set")
@click.argument("key", type=str)
@click.argument("value", type=str)
@click.pass_context
def config_set(ctx: click.Context, key: str, value: str) -> None:
    """Set a configuration value.

    \b
    Examples:
        avdops config set local_admin_user breakglass
        avdops config set registration_max_attempts 20
    """
    root = ctx.find_root()
    defaults = AvdopsConfig()
    if key not in {f.name for f in fields(AvdopsConfig)}:
        _fail(f"Unknown config key: {key}")

    try:
        ConfigManager.update_config(
            root.obj.get("config_path"), **{key: _coerce(defaults, key, value)}
        )
    except (AvdopsError, ValueError) as e:
        _fail(str(e))
    click.echo(f"Set {key} = {value}")


def _coerce(defaults: AvdopsConfig, key: str, value: str) -> Any:
    current = getattr(defaults, key)
    if isinstance(current, bool):
        return value.lower() in ("1", "true", "yes")
    if isinstance(current, int):
        return int(value)
    if isinstance(current, float):
        return float(value)
    return value


if __name__ == "__main__":
    main()
