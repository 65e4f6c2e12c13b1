"""Administrative operations on backup profiles.

These functions do the work behind `pbs-backup-manage`; rendering and
prompting stay in the CLI module.
"""
# Stdlib imports
import collections
import dataclasses
import datetime
import json
import os
import pathlib
import re
import socket
import tempfile
import typing

# Vendor imports
import sh

# Local imports
from . import command, config as applicationConfig, errors, helper, lock, log, model, systemd

logger = log.get_logger(__name__)

_INTEGER = re.compile(r"^[0-9]+$")


@dataclasses.dataclass
class InstallResult:
    config_file: pathlib.Path
    credentials_file: pathlib.Path
    config_written: bool
    credentials_written: bool
    service_unit: pathlib.Path
    timer_unit: pathlib.Path
    key_generated: bool = False
    enabled: bool = False


def generate_encryption_key() -> str:
    """Create a new unprotected client key and return its contents as one line."""
    if not command.client:
        raise errors.ConfigError(f"{command.CLIENT_NAME} is not installed")

    with tempfile.TemporaryDirectory(prefix="pbs-backup-install-") as workdir:
        keyfile = pathlib.Path(workdir) / "backup.key"
        try:
            command.client("key", "create", str(keyfile), "--kdf", "none")
            contents = keyfile.read_text()
        finally:
            keyfile.unlink(missing_ok=True)

    try:
        return json.dumps(json.loads(contents), separators=(",", ":"))
    except ValueError:
        return contents.strip()


def install_profile(
    name: str,
    paths: applicationConfig.SystemPaths,
    overwrite: bool = False,
    generate_key: bool = False,
    enable: bool = False,
    reload_units: bool = True,
) -> InstallResult:
    """Create a profile's files and systemd units.

    Existing config and credentials are kept byte for byte unless `overwrite`
    is set; their owner and mode are corrected either way.
    """
    applicationConfig.validate_profile_name(name)

    written = applicationConfig.write_profile_templates(paths, name, overwrite)
    config_file = paths.config_file(name)
    credentials_file = paths.credentials_file(name)

    key_generated = False
    if generate_key:
        applicationConfig.store_encryption_key(
            credentials_file, generate_encryption_key()
        )
        key_generated = True

    paths.log_dir.mkdir(parents=True, exist_ok=True)

    configuration = applicationConfig.load_configuration(config_file)
    service_path, timer_path = systemd.write_units(
        name, configuration.backup_schedule, paths
    )
    if reload_units:
        systemd.daemon_reload()
    if enable:
        systemd.enable_timer(name)

    logger.info(f"Installed profile '{name}'")
    return InstallResult(
        config_file=config_file,
        credentials_file=credentials_file,
        config_written=written["config"],
        credentials_written=written["credentials"],
        service_unit=service_path,
        timer_unit=timer_path,
        key_generated=key_generated,
        enabled=enable,
    )


def remove_profile(
    name: str, paths: applicationConfig.SystemPaths, reload_units: bool = True
) -> list[pathlib.Path]:
    """Stop, disable and delete the profile's units. Config files are kept."""
    applicationConfig.validate_profile_name(name)
    if not applicationConfig.profile_exists(paths, name):
        raise errors.ConfigError(f"Profile '{name}' does not exist")

    systemd.disable_units(name)
    removed = systemd.remove_unit_files(name, paths)
    if reload_units:
        systemd.daemon_reload()
    logger.info(f"Removed systemd units for profile '{name}'")
    return removed


@dataclasses.dataclass
class ProfileStatus:
    profile: model.Profile
    credentials_present: bool
    credentials_mode: typing.Optional[int]
    timer: str
    next_run: typing.Optional[str]
    last_result: typing.Optional[str]
    last_started: typing.Optional[str]
    lock: typing.Optional[dict]
    log_size: typing.Optional[int]
    log_modified: typing.Optional[datetime.datetime]

    @property
    def credentials_secure(self) -> bool:
        return self.credentials_mode is not None and not self.credentials_mode & 0o077


def profile_status(
    name: str, paths: applicationConfig.SystemPaths
) -> ProfileStatus:
    profile = applicationConfig.load_profile(name, paths, check_permissions=False)

    credentials_mode = None
    if profile.credentials_file.is_file():
        credentials_mode = profile.credentials_file.stat().st_mode & 0o777

    log_file = paths.log_file(name)
    log_size = log_modified = None
    if log_file.is_file():
        info = log_file.stat()
        log_size = info.st_size
        log_modified = datetime.datetime.fromtimestamp(info.st_mtime)

    last_result, last_started = systemd.last_run(name)
    timer = systemd.timer_state(name)
    return ProfileStatus(
        profile=profile,
        credentials_present=credentials_mode is not None,
        credentials_mode=credentials_mode,
        timer=timer,
        next_run=systemd.next_elapse(name) if timer == "active" else None,
        last_result=last_result,
        last_started=last_started,
        lock=lock.check_lock_status(paths.lock_file(name)),
        log_size=log_size,
        log_modified=log_modified,
    )


def list_profiles(paths: applicationConfig.SystemPaths) -> list[model.Profile]:
    profiles = []
    for name in applicationConfig.list_profile_names(paths):
        profiles.append(
            applicationConfig.load_profile(name, paths, check_permissions=False)
        )
    return profiles


@dataclasses.dataclass
class ValidationIssue:
    category: str
    message: str


@dataclasses.dataclass
class ValidationReport:
    profile_name: str
    passed: list[str] = dataclasses.field(default_factory=list)
    warnings: list[str] = dataclasses.field(default_factory=list)
    errors: list[ValidationIssue] = dataclasses.field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors

    def error(self, category: str, message: str):
        self.errors.append(ValidationIssue(category, message))

    def categories(self) -> set[str]:
        return {issue.category for issue in self.errors}


def _check_file(report: ValidationReport, path: pathlib.Path, label: str) -> bool:
    if not path.is_file():
        report.error("missing", f"{label} not found: {path}")
        return False
    report.passed.append(f"{label} exists: {path}")

    try:
        applicationConfig.check_file_security(path, label)
    except errors.FilePermissionError as err:
        report.error("permission", str(err))
    else:
        report.passed.append(f"{label} ownership and permissions are safe")
    return True


def validate_profile(
    name: str,
    paths: applicationConfig.SystemPaths,
    path_exists: typing.Callable[[str], bool] = os.path.isdir,
) -> ValidationReport:
    """Check a profile without changing anything.

    Every problem found is collected in the report rather than raised.
    """
    applicationConfig.validate_profile_name(name)
    report = ValidationReport(profile_name=name)

    config_file = paths.config_file(name)
    if _check_file(report, config_file, "Config file"):
        configuration = applicationConfig.load_configuration(config_file)
        _validate_configuration(report, configuration, path_exists)

    credentials_file = paths.credentials_file(name)
    if _check_file(report, credentials_file, "Credentials file"):
        credentials = applicationConfig.load_credentials(credentials_file)
        if credentials.pbs_password:
            report.passed.append("PBS_PASSWORD is set")
        else:
            report.error("required", "PBS_PASSWORD is empty")
        if credentials.encryption_enabled:
            report.passed.append("Encryption: ENABLED (client-side encryption configured)")
        else:
            report.warnings.append(
                f"Encryption: DISABLED - add ENCRYPTION_KEY to {credentials_file} "
                "or reinstall with --generate-key"
            )

    for unit, present in systemd.units_installed(name, paths).items():
        if present:
            report.passed.append(f"Systemd {unit} unit exists")
        else:
            report.warnings.append(
                f"Systemd {unit} unit not found (run 'install' to create)"
            )

    return report


def _validate_configuration(
    report: ValidationReport,
    configuration: model.ProfileConfiguration,
    path_exists: typing.Callable[[str], bool],
):
    for key in ("pbs_server", "pbs_datastore", "pbs_auth_id", "backup_paths"):
        value = getattr(configuration, key)
        if value:
            report.passed.append(f"{key.upper()}: {value}")
        else:
            report.error("required", f"{key.upper()} is empty")

    for path in configuration.path_list:
        if path_exists(path):
            report.passed.append(f"Path exists: {path}")
        else:
            report.error("path", f"Path does not exist: {path}")

    if configuration.backup_schedule:
        valid, next_elapse = systemd.validate_calendar(configuration.backup_schedule)
        if valid is None:
            report.warnings.append(
                "systemd-analyze not available; schedule was not checked"
            )
        elif valid:
            message = f"Schedule is valid: {configuration.backup_schedule}"
            if next_elapse:
                message += f" (next trigger: {next_elapse})"
            report.passed.append(message)
        else:
            report.error(
                "schedule", f"Invalid schedule format: {configuration.backup_schedule}"
            )
    else:
        report.error("schedule", "BACKUP_SCHEDULE is empty")

    # (category, value, whether blank falls back to a default)
    numeric = {
        "KEEP_LAST": ("retention", configuration.keep_last, True),
        "KEEP_DAILY": ("retention", configuration.keep_daily, True),
        "KEEP_WEEKLY": ("retention", configuration.keep_weekly, True),
        "KEEP_MONTHLY": ("retention", configuration.keep_monthly, True),
        "PBS_PORT": ("value", configuration.pbs_port, False),
        "LOCK_TIMEOUT": ("value", configuration.lock_timeout, True),
    }
    for key, (category, value, blank_ok) in numeric.items():
        if _INTEGER.match(value.strip()):
            report.passed.append(f"{key}: {value}")
        elif blank_ok and not value.strip():
            report.passed.append(f"{key}: <default>")
        else:
            report.error(category, f"{key} must be a number (got: '{value}')")

    if configuration.change_detection_mode not in ("", "metadata", "data", "legacy"):
        report.warnings.append(
            f"Unknown CHANGE_DETECTION_MODE: {configuration.change_detection_mode}"
        )


def tail_file(path: pathlib.Path, lines: int = 50) -> list[str]:
    with path.open("r", errors="replace") as handle:
        return [line.rstrip("\n") for line in collections.deque(handle, maxlen=lines)]


def profile_logs(
    name: str, paths: applicationConfig.SystemPaths, lines: int = 50
) -> tuple[typing.Optional[str], typing.Optional[list[str]]]:
    """Journal entries for the profile's service and the tail of its log file."""
    applicationConfig.validate_profile_name(name)
    log_file = paths.log_file(name)
    return (
        systemd.journal_entries(name, lines),
        tail_file(log_file, lines) if log_file.is_file() else None,
    )


def check_reachable(host: str, port: int, timeout: float = 5.0) -> bool:
    try:
        with socket.create_connection((host, port), timeout=timeout):
            return True
    except OSError:
        return False


def check_connection(
    name: str, paths: applicationConfig.SystemPaths
) -> typing.Iterator[tuple[str, bool, str]]:
    """Check reachability, authentication and datastore access step by step.

    Yields (step, ok, detail) tuples, where ok is None for a non-fatal
    warning, and stops after the first failing required step.
    """
    profile = applicationConfig.load_profile(name, paths, check_permissions=False)
    if not profile.credentials or not profile.credentials.pbs_password:
        raise errors.ConfigError(
            f"PBS_PASSWORD not found in credentials file: {profile.credentials_file}"
        )
    if not command.client:
        raise errors.ConfigError(f"{command.CLIENT_NAME} is not installed")

    config = profile.configuration
    log.secret_filter.add(profile.credentials.pbs_password)
    env = helper.get_execution_env(profile)

    reachable = check_reachable(config.pbs_server, config.port_number)
    yield (
        "reachability",
        reachable,
        f"Server {config.pbs_server}:{config.pbs_port}"
        + (" is reachable" if reachable else " is not reachable (check firewall, DNS, network)"),
    )
    if not reachable:
        return

    try:
        command.client("login", _env=env)
    except sh.ErrorReturnCode as err:
        detail = err.stderr.decode(errors="replace").strip().splitlines()[:5]
        yield "authentication", False, "\n".join(["Authentication failed", *detail])
        return
    yield "authentication", True, "Authentication successful"

    try:
        command.client("list", _env=env)
    except sh.ErrorReturnCode:
        yield (
            "datastore",
            None,
            "Could not list backups (may be empty, which is normal before the first run)",
        )
    else:
        yield "datastore", True, f"Datastore '{config.pbs_datastore}' is accessible"
