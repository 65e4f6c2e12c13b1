# Stdlib imports
import os
import pathlib
import typing

# Vendor imports
import humanize
import sh
import typer

# Local imports
from . import config as applicationConfig, errors, helper, model, profiles, runner, systemd


# Create a subclass of the context with correct typing of the system paths object
class ManageCLIContext(typer.Context):
    obj: applicationConfig.SystemPaths


# Initialize the typer app
cli = typer.Typer(
    help="Manage Proxmox Backup Server client backup profiles with systemd timers.",
    add_completion=False,
)

_defaults = applicationConfig.SystemPaths()

_timer_colors = {"active": "green", "enabled": "yellow", "disabled": "red"}


# Main method that resolves the system paths and makes them available to all commands
@cli.callback()
def cli_main(
    ctx: ManageCLIContext,
    config_dir: pathlib.Path = typer.Option(
        _defaults.config_dir,
        "--config-dir",
        envvar="PBS_BACKUP_CONFIG_DIR",
        help="Directory holding profile config and credentials files.",
    ),
    log_dir: pathlib.Path = typer.Option(
        _defaults.log_dir,
        "--log-dir",
        envvar="PBS_BACKUP_LOG_DIR",
        help="Directory for per-profile log files.",
    ),
    lock_dir: pathlib.Path = typer.Option(
        _defaults.lock_dir,
        "--lock-dir",
        envvar="PBS_BACKUP_LOCK_DIR",
        help="Directory for per-profile lock files.",
    ),
    systemd_dir: pathlib.Path = typer.Option(
        _defaults.systemd_dir,
        "--systemd-dir",
        envvar="PBS_BACKUP_SYSTEMD_DIR",
        help="Directory the service and timer units are written to.",
    ),
):
    if os.geteuid() != 0:
        helper.print_error("This command must be run as root (use sudo)")

    ctx.obj = applicationConfig.SystemPaths(
        config_dir=config_dir,
        log_dir=log_dir,
        lock_dir=lock_dir,
        systemd_dir=systemd_dir,
    )


def require_profile(paths: applicationConfig.SystemPaths, name: str):
    try:
        applicationConfig.validate_profile_name(name)
    except errors.ConfigError as err:
        helper.print_error(f"Error: {err}")
    if not applicationConfig.profile_exists(paths, name):
        helper.print_error(f"Error: Profile '{name}' does not exist")


def print_profile_summary(profile: model.Profile, index: typing.Optional[int] = None):
    config = profile.configuration
    timer = systemd.timer_state(profile.name)
    prefix = f"[cyan]{index})[/] " if index is not None else ""
    helper.print(
        f"  {prefix}[bold]{profile.name:<20}[/] -> "
        f"{config.pbs_server}:{config.pbs_port}/{config.pbs_datastore}  "
        f"[{_timer_colors[timer]}]{timer}[/]"
    )
    helper.print(f"     Paths: {config.backup_paths or '<not set>'}")
    helper.print(
        f"     Schedule: {config.backup_schedule} | Retention: "
        f"last={config.keep_last} daily={config.keep_daily} "
        f"weekly={config.keep_weekly} monthly={config.keep_monthly}"
    )


@cli.command(
    name="install",
    help="Install a profile: config and credentials templates, systemd service and timer.",
)
def cli_install(
    ctx: ManageCLIContext,
    name: str = typer.Argument(..., help="Name of the backup profile."),
    force: bool = typer.Option(
        False,
        "--force",
        "-f",
        help="Replace existing config and credentials files with fresh templates.",
    ),
    generate_key: typing.Optional[bool] = typer.Option(
        None,
        "--generate-key/--no-generate-key",
        help="Generate a client-side encryption key. Prompts when not given.",
    ),
    enable: typing.Optional[bool] = typer.Option(
        None,
        "--enable/--no-enable",
        help="Enable and start the timer. Prompts when not given.",
    ),
):
    paths = ctx.obj
    try:
        applicationConfig.validate_profile_name(name)
    except errors.ConfigError as err:
        helper.print_error(f"Error: {err}")

    helper.print_line(f"Installing profile: {name}")

    if applicationConfig.profile_exists(paths, name) and not force:
        helper.print_warning(
            f"Profile '{name}' already exists; keeping its config and credentials files"
        )

    if generate_key is None:
        existing = (
            applicationConfig.load_credentials(paths.credentials_file(name))
            if paths.credentials_file(name).is_file()
            else None
        )
        if existing and existing.encryption_enabled and not force:
            generate_key = False
        else:
            helper.print_warning(
                "Backups sent to PBS are NOT encrypted by default. Without the "
                "encryption key, restoring encrypted backups is IMPOSSIBLE."
            )
            generate_key = typer.confirm("Generate encryption key now?", default=True)

    try:
        result = profiles.install_profile(
            name, paths, overwrite=force, generate_key=generate_key, enable=False
        )
    except (errors.PBSBackupError, sh.ErrorReturnCode, OSError) as err:
        helper.print_error(f"Error: {err}")

    for label, path, written in (
        ("Config", result.config_file, result.config_written),
        ("Credentials", result.credentials_file, result.credentials_written),
    ):
        state = "template written" if written else "kept"
        helper.print_nested_line(f"{label}: {path} ({state}, mode 600)")

    if result.key_generated:
        helper.print_ok(f"Encryption key generated and saved to: {result.credentials_file}")
        helper.print_warning("BACKUP THIS KEY NOW! Store it in a password manager or secure vault.")
    elif not generate_key:
        helper.print_warning("Encryption key not generated. Backups will NOT be encrypted.")

    helper.print_ok("Systemd units created:")
    helper.print_nested_line(f"Service: {result.service_unit}")
    helper.print_nested_line(f"Timer:   {result.timer_unit}")

    helper.print_warning("Edit the config and credentials files before enabling the timer.")

    if enable is None:
        enable = typer.confirm("Enable and start the timer now?", default=False)
    if enable:
        try:
            systemd.enable_timer(name)
        except (errors.PBSBackupError, sh.ErrorReturnCode) as err:
            helper.print_error(f"Error enabling timer: {err}")
        helper.print_ok("Timer enabled and started")
    else:
        helper.print_line(
            f"Timer created but not enabled. Enable later with: "
            f"systemctl enable --now {systemd.timer_unit(name)}"
        )

    helper.print_ok(f"Profile '{name}' installed successfully")


@cli.command(
    name="remove",
    help="Stop and remove a profile's systemd units. Config files are preserved.",
)
def cli_remove(
    ctx: ManageCLIContext,
    name: str = typer.Argument(..., help="Name of the backup profile."),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation."),
):
    paths = ctx.obj
    require_profile(paths, name)

    helper.print_warning(f"This will STOP and REMOVE the backup profile '{name}'")
    if not yes and not typer.confirm("Continue?", default=False):
        helper.print_line("Cancelled")
        raise typer.Exit()

    try:
        profiles.remove_profile(name, paths)
    except (errors.PBSBackupError, sh.ErrorReturnCode) as err:
        helper.print_error(f"Error: {err}")

    helper.print_ok(f"Systemd units removed for profile '{name}'")
    helper.print_line("Config files preserved at:")
    helper.print_nested_line(str(paths.config_file(name)))
    helper.print_nested_line(str(paths.credentials_file(name)))


def print_status(status: profiles.ProfileStatus):
    profile = status.profile
    config = profile.configuration

    helper.print_kv("Profile", profile.name)
    helper.print_config_data(
        {
            "server": f"{config.pbs_server or '<not set>'}:{config.pbs_port}",
            "datastore": config.pbs_datastore or "<not set>",
            "auth": config.pbs_auth_id or "<not set>",
            "paths": config.path_list,
            "exclusions": config.exclude_list,
            "schedule": config.backup_schedule,
            "retention": {
                "last": config.keep_last,
                "daily": config.keep_daily,
                "weekly": config.keep_weekly,
                "monthly": config.keep_monthly,
            },
            "change_detection_mode": config.change_detection_mode,
        }
    )

    if not status.credentials_present:
        helper.print_kv("Credentials", f"[red]MISSING[/] - expected at {profile.credentials_file}")
    elif status.credentials_secure:
        helper.print_kv("Credentials", f"{profile.credentials_file} [green](perms OK)")
    else:
        helper.print_kv(
            "Credentials",
            f"{profile.credentials_file} [red](unsafe perms: {status.credentials_mode:o})",
        )

    helper.print_kv("Timer", f"[{_timer_colors[status.timer]}]{status.timer}")
    if status.next_run:
        helper.print_kv("Next run", status.next_run)

    if status.last_started is None:
        helper.print_kv("Last run", "[yellow]never")
    else:
        color = "green" if status.last_result == "success" else "red"
        helper.print_kv(
            "Last run", f"[{color}]{status.last_result or 'unknown'}[/] ({status.last_started})"
        )

    if status.lock:
        state = "running" if status.lock["alive"] else "stale"
        helper.print_kv("Lock", f"held by PID {status.lock['pid']} ({state})")

    if status.log_size is not None:
        helper.print_kv(
            "Log",
            f"{helper.human_readable(status.log_size)}, last written "
            f"{humanize.naturaltime(status.log_modified)}",
        )


@cli.command(name="status", help="Show status of one or all profiles.")
def cli_status(
    ctx: ManageCLIContext,
    name: typing.Optional[str] = typer.Argument(
        None, help="Name of the backup profile. All profiles when omitted."
    ),
):
    paths = ctx.obj

    if name:
        require_profile(paths, name)
        names = [name]
    else:
        names = applicationConfig.list_profile_names(paths)
        if not names:
            helper.print_warning("No backup profiles configured")
            raise typer.Exit()

    for profile_name in names:
        print_status(profiles.profile_status(profile_name, paths))
        helper.print()


@cli.command(name="test", help="Test PBS server connectivity for a profile.")
def cli_test(
    ctx: ManageCLIContext,
    name: str = typer.Argument(..., help="Name of the backup profile."),
):
    paths = ctx.obj
    require_profile(paths, name)

    helper.print_line(f"Testing connection for profile: {name}")
    try:
        for step, ok, detail in profiles.check_connection(name, paths):
            if ok is None:
                helper.print_warning(detail)
            elif ok:
                helper.print_ok(detail)
            else:
                helper.print_error(f"Error: {detail}")
    except errors.PBSBackupError as err:
        helper.print_error(f"Error: {err}")

    helper.print_ok(f"All connection tests passed for profile '{name}'")


@cli.command(name="run", help="Execute an immediate backup in the foreground.")
def cli_run(
    ctx: ManageCLIContext,
    name: str = typer.Argument(..., help="Name of the backup profile."),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation."),
):
    paths = ctx.obj
    require_profile(paths, name)

    helper.print_line(f"Running manual backup for profile: {name}")
    if not yes and not typer.confirm("Proceed?", default=False):
        helper.print_line("Cancelled")
        raise typer.Exit()

    exit_code = runner.BackupRun(name, paths).execute()
    if exit_code != errors.EXIT_OK:
        helper.print_line(f"Check logs: {paths.log_file(name)}")
        helper.print_error(f"Manual backup failed (exit code: {exit_code})")

    helper.print_ok("Manual backup completed successfully")


@cli.command(name="validate", help="Validate a profile's configuration without running it.")
def cli_validate(
    ctx: ManageCLIContext,
    name: str = typer.Argument(..., help="Name of the backup profile."),
):
    paths = ctx.obj
    try:
        report = profiles.validate_profile(name, paths)
    except errors.PBSBackupError as err:
        helper.print_error(f"Error: {err}")

    helper.print_line(f"Validating profile: {name}")
    for message in report.passed:
        helper.print_nested_line(f"[green]OK[/] {helper.escape(message)}")
    for message in report.warnings:
        helper.print_nested_line(f"[yellow]WARN[/] {helper.escape(message)}")
    for issue in report.errors:
        helper.print_nested_line(f"[red]ERROR[/] ({issue.category}) {helper.escape(issue.message)}")

    if not report.ok:
        helper.print_error(
            f"Validation found {len(report.errors)} error(s) - fix them before running backups"
        )
    helper.print_ok(f"Validation passed - profile '{name}' is ready")


@cli.command(name="list", help="List all configured profiles.")
def cli_list(ctx: ManageCLIContext):
    paths = ctx.obj

    found = profiles.list_profiles(paths)
    if not found:
        helper.print_warning("No backup profiles configured")
        helper.print_line("Create one with: pbs-backup-manage install <profile-name>")
        raise typer.Exit()

    helper.print("Profiles:")
    for index, profile in enumerate(found, start=1):
        print_profile_summary(profile, index)
        helper.print()
    helper.print_line(f"Total profiles: {len(found)}")


@cli.command(name="logs", help="Show recent journal entries and log file lines for a profile.")
def cli_logs(
    ctx: ManageCLIContext,
    name: str = typer.Argument(..., help="Name of the backup profile."),
    lines: int = typer.Option(50, "--lines", "-n", help="Number of lines to show."),
):
    paths = ctx.obj
    try:
        journal, log_lines = profiles.profile_logs(name, paths, lines)
    except errors.PBSBackupError as err:
        helper.print_error(f"Error: {err}")

    helper.print_line(f"Systemd journal (last {lines} entries)")
    if journal:
        helper.print_plain(journal.rstrip("\n"))
    else:
        helper.print_warning("No journal entries found")

    log_file = paths.log_file(name)
    if log_lines is None:
        helper.print_line(f"No log file found at {log_file}")
    else:
        helper.print_line(f"Log file: {log_file} (last {lines} lines)")
        for line in log_lines:
            helper.print_plain(line)


@cli.command(name="help", help="Show this help message.")
def cli_help(ctx: ManageCLIContext):
    helper.print(ctx.parent.get_help() if ctx.parent else ctx.get_help())
