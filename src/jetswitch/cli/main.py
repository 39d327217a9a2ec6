#!/usr/bin/env python3
"""
jetswitch CLI - Main entry point
"""

import logging
import sys
from pathlib import Path

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.prompt import Prompt

from jetswitch import __version__
from jetswitch.cli.prompts import ConsoleDecisions
from jetswitch.updater.backup import BackupManager
from jetswitch.updater.config import ManagerConfig
from jetswitch.updater.decisions import UnattendedDecisions
from jetswitch.updater.device import detect_device, industrial_warning
from jetswitch.updater.errors import JetswitchError, OperationCancelled, UnknownInput
from jetswitch.updater.pipeline import PipelineOrchestrator
from jetswitch.updater.resolver import HELP_TEXT
from jetswitch.updater.rollback import RevertOperation

console = Console()

# --revert given without a version
CHOOSE_BACKUP = 'choose'


def _setup_logging(debug: bool, quiet: bool):
    level = logging.DEBUG if debug else (logging.ERROR if quiet else logging.WARNING)
    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[RichHandler(console=console, show_path=debug)],
        force=True,
    )


def _status_printer(quiet: bool):
    def status(message: str):
        if not quiet:
            console.print(message, markup=False, highlight=False)
    return status


@click.command(context_settings={'help_option_names': ['-h', '--help']})
@click.version_option(version=__version__, prog_name="jetswitch")
@click.option('-t', '--target', metavar='VERSION',
              help='Target Jetson Linux version (e.g. 36.4.4, or "JetPack 6.2.1").')
@click.option('-y', '--yes', is_flag=True, help="Assume 'Yes' for all prompts (run non-interactively).")
@click.option('-q', '--quiet', is_flag=True, help='Quiet mode (suppress detailed explanations).')
@click.option('--revert', is_flag=False, flag_value=CHOOSE_BACKUP, default=None, metavar='[VERSION]',
              help='Revert to a previously backed-up Jetson Linux version.')
@click.option('--dry-run', is_flag=True, help='Simulate the process without making changes.')
@click.option('--config', 'config_path', type=click.Path(path_type=Path),
              help='Path to a JSON config file.')
@click.option('--debug', is_flag=True, help='Enable debug output')
def cli(target, yes, quiet, revert, dry_run, config_path, debug):
    """Upgrade, downgrade or rebuild the NVIDIA Jetson Linux kernel.

    Resolves the target version, extracts the NVIDIA release archives,
    builds the kernel, backs up the current boot files and modules, and
    installs the new kernel. Use --revert to restore a backup.

    Examples:
        jetswitch --target 36.4.4 -y
        jetswitch --target "JetPack 5.1.2" --dry-run
        jetswitch --revert 35.3.1
    """
    _setup_logging(debug, quiet)
    status = _status_printer(quiet)
    decisions = UnattendedDecisions() if yes else ConsoleDecisions(console)

    try:
        config = ManagerConfig(config_path)
        device = detect_device(config, simulate=dry_run)

        status(f"Current device: {device.model}")
        status(f"Current Jetson Linux (L4T) version: {device.describe_release()}")
        if device.simulated:
            status(f"[DRY-RUN] Simulating current environment as {device.model} "
                   f"with Jetson Linux {device.current_release}.")
        if device.cross_build:
            status(f"WARNING: This host is {device.architecture}, not a Jetson. "
                   f"The kernel will be cross-compiled.")
        warning = industrial_warning(device)
        if warning:
            status(f"NOTE: {warning}")

        if revert is not None:
            manager = BackupManager(config.backup_root, config.boot_dir, config.modules_root)
            operation = RevertOperation(manager, decisions, simulate=dry_run, status=status)
            operation.revert(None if revert == CHOOSE_BACKUP else revert)
            return

        if not target:
            if yes:
                raise UnknownInput("No target version given (--target is required with --yes).",
                                   remediation=HELP_TEXT)
            status("Please enter the Jetson Linux version or JetPack you want to switch to.")
            status("You can specify it in various ways (e.g., '35.4.1', 'JetPack 6.2', "
                   "'Ubuntu 22.04', 'kernel 5.10').")
            target = Prompt.ask("Target Jetson Linux version", console=console)

        orchestrator = PipelineOrchestrator(config, device, decisions,
                                            simulate=dry_run, status=status)
        orchestrator.run(target)

    except OperationCancelled as e:
        console.print(f"[yellow]{escape(str(e))}[/yellow]")
        sys.exit(e.exit_code)
    except JetswitchError as e:
        console.print(f"[bold red]Error: {escape(str(e))}[/bold red]")
        if e.remediation:
            console.print(e.remediation, markup=False, highlight=False)
        sys.exit(e.exit_code)


def main():
    """Main entry point"""
    try:
        cli(standalone_mode=False)
    except (click.exceptions.Abort, KeyboardInterrupt):
        console.print("\n[yellow]Interrupted by user[/yellow]")
        sys.exit(130)
    except click.ClickException as e:
        e.show()
        sys.exit(e.exit_code)
    except Exception as e:
        console.print(f"[bold red]Error: {escape(str(e))}[/bold red]")
        sys.exit(1)


if __name__ == "__main__":
    main()
