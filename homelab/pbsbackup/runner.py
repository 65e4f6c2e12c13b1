"""Backup runner for a single profile.

Invoked by the profile's systemd timer (or by hand) as
`pbs-backup <profile>`. A run goes through

    START -> LOCKING -> RUNNING_BACKUP -> PRUNING -> DONE

and ends in FAILED from any step. Whatever the outcome, the temporary
keyfile is deleted and the profile lock released before the process exits.

Exit codes: 0 success, 1 configuration error, 2 lock timeout, 3 backup
failure, 4 prune failure, 128+N when stopped by signal N.
"""
# Stdlib imports
import contextlib
import enum
import os
import pathlib
import signal
import socket
import typing

# Vendor imports
import sh
import typer

# Local imports
from . import command, config as applicationConfig, errors, helper, lock, log, model

logger = log.get_logger(__name__)

VERSION = "1.0.0"
NOTIFY_TIMEOUT = 30
HANDLED_SIGNALS = (signal.SIGTERM, signal.SIGHUP, signal.SIGINT)


class RunState(enum.Enum):
    START = "start"
    LOCKING = "locking"
    RUNNING_BACKUP = "running_backup"
    PRUNING = "pruning"
    DONE = "done"
    FAILED = "failed"


# Failures from these states page the operator through NOTIFY_ON_FAILURE.
# Configuration problems found before locking only surface via the exit code.
NOTIFYING_STATES = frozenset(
    {RunState.LOCKING, RunState.RUNNING_BACKUP, RunState.PRUNING}
)


def _raise_interrupt(signum, frame):
    raise errors.RunInterrupted(signum)


@contextlib.contextmanager
def interruptible():
    """Turn termination signals into RunInterrupted so cleanup code still runs."""
    previous = {}
    for signum in HANDLED_SIGNALS:
        try:
            previous[signum] = signal.signal(signum, _raise_interrupt)
        except ValueError:
            # Not the main thread; keep the default handlers
            pass
    try:
        yield
    finally:
        for signum, handler in previous.items():
            signal.signal(signum, handler if handler is not None else signal.SIG_DFL)


def notify_failure(notify_command: str, message: str, timeout: int = NOTIFY_TIMEOUT):
    """Run the user's notification command with `message` as $1, bounded by `timeout`."""
    if not notify_command:
        return
    if not command.bash:
        logger.warning("bash not available; failure notification skipped")
        return

    logger.info("Sending failure notification...")
    try:
        command.bash("-c", notify_command, "--", message, _timeout=timeout)
    except (sh.ErrorReturnCode, sh.TimeoutException):
        logger.warning("Failure notification command returned non-zero or timed out")


class BackupRun:
    """One execution of a backup profile."""

    def __init__(
        self,
        profile_name: str,
        paths: typing.Optional[applicationConfig.SystemPaths] = None,
        hostname: typing.Optional[str] = None,
        poll_interval: float = lock.POLL_INTERVAL,
        keyfile_dir: typing.Optional[pathlib.Path] = None,
    ):
        self.profile_name = profile_name
        self.paths = paths or applicationConfig.SystemPaths()
        self.hostname = hostname or socket.gethostname()
        self.poll_interval = poll_interval
        self.keyfile_dir = keyfile_dir
        self.state = RunState.START
        self.failed_in: typing.Optional[RunState] = None
        self.profile: typing.Optional[model.Profile] = None

    def load(self) -> model.Profile:
        profile = applicationConfig.load_profile(self.profile_name, self.paths)
        log.secret_filter.add(
            profile.credentials.pbs_password, profile.credentials.encryption_key
        )

        missing = profile.missing_fields()
        if missing:
            raise errors.ConfigError(
                f"Missing required config fields: {' '.join(missing)}"
            )

        profile.configuration.check_values()

        if not command.client:
            raise errors.ConfigError(
                f"{command.CLIENT_NAME} is not installed or not on PATH"
            )

        log.set_verbose(profile.configuration.verbose_enabled)
        return profile

    def log_mount_points(self, config: model.ProfileConfiguration):
        for path in config.path_list:
            if not helper.is_mount_point(path):
                continue
            nested = helper.list_nested_mount_points(path)
            if nested:
                logger.info(
                    f"Mount point detected: {path} (with {len(nested)} nested mount "
                    "points - will traverse with --include-dev)"
                )
            else:
                logger.info(f"Mount point detected: {path} (will traverse with --include-dev)")

    def run_backup(self, backup: helper.BackupCommand, env: dict[str, str]):
        logger.info("Executing: " + " ".join(backup.masked()))
        try:
            helper.run_command_politely(command.client, backup.args[1:], env)
        except sh.ErrorReturnCode as err:
            raise errors.BackupExecutionError(
                f"Backup failed with exit code {err.exit_code}"
            )
        logger.info("Backup completed successfully")

    def run_prune(self, config: model.ProfileConfiguration, env: dict[str, str]):
        retention = config.retention()
        logger.info(
            "Applying retention policy: "
            + " ".join(f"{tier}={count}" for tier, count in retention.items())
        )

        args = helper.build_prune_command(config, self.hostname)
        logger.info("Executing: " + " ".join(helper.mask_arguments(args)))
        try:
            helper.run_command_politely(command.client, args[1:], env)
        except sh.ErrorReturnCode as err:
            raise errors.PruneExecutionError(
                f"Prune failed with exit code {err.exit_code}"
            )
        logger.info("Prune completed successfully")

    def _run(self):
        with contextlib.ExitStack() as cleanup:
            self.profile = profile = self.load()
            config = profile.configuration
            env = helper.get_execution_env(profile)
            logger.info(
                f"Target: {config.pbs_auth_id}@{config.pbs_server}:{config.pbs_port} "
                f"-> datastore '{config.pbs_datastore}'"
            )

            self.state = RunState.LOCKING
            cleanup.enter_context(
                lock.profile_lock(
                    self.paths.lock_file(self.profile_name),
                    timeout=config.lock_timeout_seconds,
                    poll_interval=self.poll_interval,
                )
            )

            self.state = RunState.RUNNING_BACKUP
            logger.info(
                f"Starting file-level backup for host '{self.hostname}', "
                f"profile '{self.profile_name}'"
            )
            logger.info(f"Backup paths: {config.backup_paths}")
            self.log_mount_points(config)
            backup = cleanup.enter_context(
                helper.build_backup_command(profile, keyfile_dir=self.keyfile_dir)
            )
            self.run_backup(backup, env)

            self.state = RunState.PRUNING
            self.run_prune(config, env)

        self.state = RunState.DONE

    def execute(self) -> int:
        """Run the profile end to end and return the process exit code."""
        try:
            applicationConfig.validate_profile_name(self.profile_name)
        except errors.ConfigError as err:
            logger.error(str(err))
            self.failed_in, self.state = self.state, RunState.FAILED
            return err.exit_code

        handler = None
        try:
            handler = log.attach_file_handler(self.paths.log_file(self.profile_name))
        except OSError as err:
            logger.warning(f"Cannot write profile log file: {err}")

        try:
            return self._execute()
        finally:
            if handler:
                log.detach_file_handler(handler)
            log.secret_filter.clear()

    def _execute(self) -> int:
        logger.info("=========================================")
        logger.info(f"PBS Backup v{VERSION} - Profile: {self.profile_name}")
        logger.info("=========================================")

        try:
            with interruptible():
                self._run()
        except errors.PBSBackupError as err:
            self.failed_in, self.state = self.state, RunState.FAILED
            logger.error(str(err))
            message = (
                f"PBS backup failed for profile '{self.profile_name}' "
                f"with exit code {err.exit_code}"
            )
            logger.error(message)
            if self.failed_in in NOTIFYING_STATES and self.profile:
                notify_failure(self.profile.configuration.notify_on_failure, message)
            return err.exit_code

        logger.info(
            f"All operations completed successfully for profile '{self.profile_name}'"
        )
        return errors.EXIT_OK


runner_cli = typer.Typer(add_completion=False)


@runner_cli.command(help="Run the backup and retention prune for one profile.")
def cli_run(
    profile: str = typer.Argument(..., help="Name of the backup profile."),
    config_dir: pathlib.Path = typer.Option(
        applicationConfig.SystemPaths().config_dir,
        envvar="PBS_BACKUP_CONFIG_DIR",
        help="Directory holding <profile>.conf and <profile>.credentials.",
    ),
    log_dir: pathlib.Path = typer.Option(
        applicationConfig.SystemPaths().log_dir,
        envvar="PBS_BACKUP_LOG_DIR",
        help="Directory for per-profile log files.",
    ),
    lock_dir: pathlib.Path = typer.Option(
        applicationConfig.SystemPaths().lock_dir,
        envvar="PBS_BACKUP_LOCK_DIR",
        help="Directory for per-profile lock files.",
    ),
):
    if os.geteuid() != 0:
        helper.print_error("This command must be run as root")

    paths = applicationConfig.SystemPaths(
        config_dir=config_dir, log_dir=log_dir, lock_dir=lock_dir
    )
    raise typer.Exit(BackupRun(profile, paths).execute())


def main():
    runner_cli()


if __name__ == "__main__":
    main()
