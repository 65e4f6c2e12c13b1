# Stdlib imports
import pathlib
import sys
import typing

# Vendor imports
import sh

# Local imports
from . import command, config as applicationConfig, errors, log

logger = log.get_logger(__name__)

RUNNER_MODULE = "homelab.pbsbackup.runner"


def unit_base(profile_name: str) -> str:
    return f"pbs-backup-{profile_name}"


def service_unit(profile_name: str) -> str:
    return f"{unit_base(profile_name)}.service"


def timer_unit(profile_name: str) -> str:
    return f"{unit_base(profile_name)}.timer"


def runner_exec_start(profile_name: str) -> str:
    return f"{sys.executable} -m {RUNNER_MODULE} {profile_name}"


def render_service_unit(
    profile_name: str, paths: applicationConfig.SystemPaths
) -> str:
    return f"""
[Unit]
Description=PBS Backup - Profile: {profile_name}
After=network-online.target
Wants=network-online.target

[Service]
Type=oneshot
ExecStart={runner_exec_start(profile_name)}
StandardOutput=journal
StandardError=journal
SyslogIdentifier={unit_base(profile_name)}
Environment=PBS_BACKUP_CONFIG_DIR={paths.config_dir}
Environment=PBS_BACKUP_LOG_DIR={paths.log_dir}
Environment=PBS_BACKUP_LOCK_DIR={paths.lock_dir}

# Security hardening
ProtectSystem=strict
ReadWritePaths={paths.log_dir} {paths.lock_dir}
PrivateTmp=true
NoNewPrivileges=true
ProtectKernelTunables=true
ProtectKernelModules=true
ProtectControlGroups=true
RestrictSUIDSGID=true

[Install]
WantedBy=multi-user.target
""".lstrip()


def render_timer_unit(profile_name: str, schedule: str) -> str:
    return f"""
[Unit]
Description=PBS Backup Timer - Profile: {profile_name}
Requires={service_unit(profile_name)}

[Timer]
OnCalendar={schedule}
Persistent=true
RandomizedDelaySec=60

[Install]
WantedBy=timers.target
""".lstrip()


def write_units(
    profile_name: str, schedule: str, paths: applicationConfig.SystemPaths
) -> tuple[pathlib.Path, pathlib.Path]:
    if "\n" in schedule:
        raise errors.ConfigError("BACKUP_SCHEDULE must be a single line")

    paths.systemd_dir.mkdir(parents=True, exist_ok=True)
    service_path = paths.systemd_dir / service_unit(profile_name)
    timer_path = paths.systemd_dir / timer_unit(profile_name)
    service_path.write_text(render_service_unit(profile_name, paths))
    timer_path.write_text(render_timer_unit(profile_name, schedule))
    return service_path, timer_path


def remove_unit_files(
    profile_name: str, paths: applicationConfig.SystemPaths
) -> list[pathlib.Path]:
    removed = []
    for unit in (service_unit(profile_name), timer_unit(profile_name)):
        unit_path = paths.systemd_dir / unit
        if unit_path.exists():
            unit_path.unlink()
            removed.append(unit_path)
    return removed


def units_installed(
    profile_name: str, paths: applicationConfig.SystemPaths
) -> dict[str, bool]:
    return {
        "service": (paths.systemd_dir / service_unit(profile_name)).is_file(),
        "timer": (paths.systemd_dir / timer_unit(profile_name)).is_file(),
    }


def _systemctl(*args: str) -> typing.Optional[str]:
    """Run systemctl, returning its stdout or None if it failed or is missing."""
    if not command.systemctl:
        return None
    try:
        return str(command.systemctl(*args)).strip()
    except sh.ErrorReturnCode:
        return None


def daemon_reload():
    if not command.systemctl:
        raise errors.ConfigError("systemctl is not available on this host")
    command.systemctl("daemon-reload")


def enable_timer(profile_name: str):
    if not command.systemctl:
        raise errors.ConfigError("systemctl is not available on this host")
    command.systemctl("enable", "--now", timer_unit(profile_name))


def disable_units(profile_name: str):
    """Stop and disable both units. Failures (e.g. never enabled) are ignored."""
    for action in ("stop", "disable"):
        for unit in (timer_unit(profile_name), service_unit(profile_name)):
            _systemctl(action, unit)


def timer_state(profile_name: str) -> str:
    """One of `active`, `enabled` or `disabled`."""
    unit = timer_unit(profile_name)
    if _systemctl("is-active", unit) == "active":
        return "active"
    if _systemctl("is-enabled", unit) == "enabled":
        return "enabled"
    return "disabled"


def next_elapse(profile_name: str) -> typing.Optional[str]:
    output = _systemctl(
        "show", timer_unit(profile_name), "-p", "NextElapseUSecRealtime", "--value"
    )
    return output or None


def last_run(profile_name: str) -> tuple[typing.Optional[str], typing.Optional[str]]:
    """Result and start timestamp of the most recent service run, None when unknown."""
    unit = service_unit(profile_name)
    result = _systemctl("show", unit, "-p", "Result", "--value")
    started = _systemctl("show", unit, "-p", "ExecMainStartTimestamp", "--value")
    if not started or started == "n/a":
        return None, None
    return result or None, started


def validate_calendar(
    expression: str,
) -> tuple[typing.Optional[bool], typing.Optional[str]]:
    """Check a calendar expression with systemd-analyze.

    Returns (valid, next elapse). `valid` is None when systemd-analyze is not
    available to decide.
    """
    if not command.systemd_analyze:
        return None, None
    try:
        output = str(command.systemd_analyze("calendar", expression))
    except sh.ErrorReturnCode:
        return False, None

    for line in output.splitlines():
        if "Next elapse" in line:
            return True, line.split(":", 1)[1].strip()
    return True, None


def journal_entries(profile_name: str, lines: int = 50) -> typing.Optional[str]:
    if not command.journalctl:
        return None
    try:
        return str(
            command.journalctl(
                "-u", service_unit(profile_name), "-n", str(lines), "--no-pager"
            )
        )
    except sh.ErrorReturnCode:
        return None
