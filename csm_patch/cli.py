#!/usr/bin/env python3
import logging
import pathlib
from typing import Optional, Tuple

import click

from csm_patch import __version__
from csm_patch.common.config import ClientSettings, load_config
from csm_patch.common.constants import (
    BSS_API_PATH,
    DEFAULT_SUBNETS_TO_PATCH,
    DEFAULT_SUPERNET_SUBNETS,
    EXIT_INVALID_ARGS,
    NETWORKS_TO_PATCH,
    SLS_API_PATH,
)
from csm_patch.common.errors import RetrofitError
from csm_patch.common.logger import configure_logging
from csm_patch.patch.ipv6 import RetrofitOrchestrator
from csm_patch.tools.auth import TokenProvider
from csm_patch.tools.backup import BackupWriter, run_timestamp
from csm_patch.tools.bss import BSSClient
from csm_patch.tools.http import make_session
from csm_patch.tools.sls import SLSClient

logger = logging.getLogger("csm_patch")


class _Cli(click.Group):
    """ Root group, usage errors anywhere in the command tree exit with EXIT_INVALID_ARGS """

    def make_context(self, *args, **kwargs):
        try:
            return super().make_context(*args, **kwargs)
        except click.UsageError as e:
            e.exit_code = EXIT_INVALID_ARGS
            raise

    def invoke(self, ctx):
        try:
            return super().invoke(ctx)
        except click.UsageError as e:
            e.exit_code = EXIT_INVALID_ARGS
            raise


def make_clients(settings: ClientSettings) -> Tuple[SLSClient, BSSClient]:
    token = TokenProvider(settings.api_url, settings.token, settings.verify_tls, settings.timeout).get_token()
    session = make_session(token, verify=settings.verify_tls)
    api_url = settings.api_url.rstrip('/')
    return (
        SLSClient(session, f"{api_url}{SLS_API_PATH}", settings.timeout),
        BSSClient(session, f"{api_url}{BSS_API_PATH}", settings.timeout),
    )


@click.group(cls=_Cli)
@click.option("--verbose", "-v", is_flag=True, help="Enables verbose mode.")
@click.option("--log-file", help="Log file path, defaults to $CSM_PATCH_LOGFILE or ./csm-patch.log", default=None)
@click.version_option(__version__)
def cli(verbose: bool, log_file: Optional[str]):
    """Patch the configuration of an installed CSM system."""
    configure_logging(verbose, log_file)


@cli.group()
def patch():
    """Apply changes to a running system."""
    pass


@patch.group()
def csm():
    """Patch CSM services."""
    pass


def network_options(f):
    for name in reversed(NETWORKS_TO_PATCH):
        lower = name.lower()
        f = click.option(
            f"--{lower}-gateway6", f"{lower}_gateway6",
            help=f"IPv6 gateway of the {name} network, defaults to the first host of --{lower}-cidr6.",
            default=None,
        )(f)
        f = click.option(
            f"--{lower}-cidr6", f"{lower}_cidr6",
            help=f"IPv6 CIDR to carve the {name} subnets from.",
            default=None,
        )(f)
    return f


@csm.command()
@click.option("--commit", "-w", is_flag=True, help="Write the changes to SLS and BSS, otherwise this is a dry-run.")
@click.option("--force", "-f", is_flag=True, help="Overwrite IPv6 data which already exists.")
@click.option("--remove", "-r", is_flag=True, help="Remove IPv6 data instead of adding it.")
@click.option(
    "--backup-dir", "-b",
    type=click.Path(file_okay=False, path_type=pathlib.Path),
    help="Directory for the JSON backups, defaults to ./<timestamp>.",
    default=None,
)
@click.option(
    "--subnets",
    help=f"Comma separated subnets to patch. [default: {','.join(DEFAULT_SUBNETS_TO_PATCH)}]",
    default=None,
)
@click.option(
    "--supernet-subnets",
    help=f"Comma separated subnets which share their network's CIDR6 and gateway. "
         f"[default: {','.join(DEFAULT_SUPERNET_SUBNETS)}]",
    default=None,
)
@network_options
@click.option("--config", "config_file", type=click.Path(exists=True, dir_okay=False),
              help="YAML file providing defaults for any of these options.")
@click.option("--api-url", envvar="CSM_API_URL", help="API gateway URL.", default=None)
@click.option("--token", help="API token, defaults to $CSM_API_TOKEN.", default=None)
@click.option("--insecure", is_flag=True, help="Skip TLS verification of the API gateway.")
@click.option("--bss-workers", type=click.IntRange(min=1), default=None,
              help="Update BSS with this many parallel workers. Every node is attempted and failures are reported "
                   "per node instead of stopping at the first one.")
@click.option("--output", "-o", type=click.Choice(["table", "json", "yaml"]), default=None,
              help="Report format. [default: table]")
@click.pass_context
def ipv6(ctx: click.Context, commit: bool, force: bool, remove: bool, backup_dir: Optional[pathlib.Path],
         subnets: Optional[str], supernet_subnets: Optional[str], config_file: Optional[str],
         api_url: Optional[str], token: Optional[str], insecure: bool, bss_workers: Optional[int],
         output: Optional[str], **network_kwargs):
    """
    Add IPv6 to the CHN/CMN networks in SLS and to the matching node boot parameters in BSS.

    Without --commit nothing is written, the backup directory receives the current and the patched documents for
    review.
    """
    if force and remove:
        raise click.UsageError("--force and --remove are mutually exclusive")

    networks = {
        name: {
            "cidr6": network_kwargs.get(f"{name.lower()}_cidr6"),
            "gateway6": network_kwargs.get(f"{name.lower()}_gateway6"),
        }
        for name in NETWORKS_TO_PATCH
    }
    try:
        config = load_config(
            config_file,
            commit=commit,
            force=force,
            remove=remove,
            backup_dir=backup_dir,
            subnets=subnets,
            supernet_subnets=supernet_subnets,
            networks=networks,
            api_url=api_url,
            token=token,
            verify_tls=False if insecure else None,
            bss_workers=bss_workers,
            output=output,
        )
    except RetrofitError as e:
        logger.error(str(e))
        ctx.exit(e.exit_code)

    timestamp = run_timestamp()
    backups = BackupWriter(config.resolve_backup_dir(timestamp), timestamp)
    try:
        sls, bss = make_clients(config.client_settings())
    except RetrofitError as e:
        logger.error(str(e))
        ctx.exit(e.exit_code)

    report = RetrofitOrchestrator(config, sls, bss, backups).run()
    click.echo(report.render(config.output))
    for line in report.messages():
        click.echo(line, err=config.output != "table")
    ctx.exit(report.exit_code)


def main():
    cli(prog_name="csm-patch")


if __name__ == "__main__":
    main()
