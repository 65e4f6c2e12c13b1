# Stdlib imports
import dataclasses
import os
import pathlib
import re
import sys
import tempfile
import typing

# Vendor imports
import humanize
import rich
import rich.markup
import sh
import yaml

# Local imports
from . import command, errors, log, model

logger = log.get_logger(__name__)

KEYFILE_PLACEHOLDER = "***KEYFILE***"


def print(*args, file=sys.stdout):
    rich.print(*args, file=file)


def escape(text: str) -> str:
    return rich.markup.escape(text)


def print_plain(text: str, file=sys.stdout):
    print(escape(text), file=file)


def print_line(*args, file=sys.stdout):
    print("-" * 8, *args, file=file)


def print_nested_line(*args):
    print("-" * 12, *args)


def print_ok(message: str):
    print_line(f"[green]{message}")


def print_warning(message: str):
    print_line(f"[yellow]{message}", file=sys.stderr)


def print_error(message: str):
    print("-" * 8, f"[red]{message}", file=sys.stderr)
    exit(1)


def print_kv(key: str, value: str = ""):
    print(f"[yellow]{key}[/]: {value}")


def print_config_data(data: typing.Any):
    serialized: str = yaml.safe_dump(data, sort_keys=False)
    print("\n".join("|  " + line for line in serialized.splitlines()))


def human_readable(num):
    return humanize.naturalsize(num, binary=True)


def archive_name(path: str) -> str:
    """Archive label for a backup path: `/var/lib/data` -> `var-lib-data`, `/` -> `root`."""
    name = path[1:] if path.startswith("/") else path
    return name.replace("/", "-") or "root"


def is_mount_point(path: str) -> bool:
    """Whether `path` is in the mount table, bind mounts from the same filesystem included."""
    if command.mountpoint:
        try:
            command.mountpoint("-q", path)
        except sh.ErrorReturnCode:
            return False
        return True

    if command.findmnt:
        try:
            output = command.findmnt("-rno", "TARGET", "--mountpoint", path)
        except sh.ErrorReturnCode:
            return False
        return bool(str(output).strip())

    logger.warning("mountpoint and findmnt not available; bind mounts are not detected")
    return os.path.ismount(path)


def _unescape_findmnt(value: str) -> str:
    # findmnt -r encodes unsafe characters (spaces etc.) as \xHH
    return re.sub(
        r"\\x([0-9a-fA-F]{2})", lambda match: chr(int(match.group(1), 16)), value
    )


def list_nested_mount_points(path: str) -> list[str]:
    """Mount points strictly below `path`, in findmnt order."""
    if not command.findmnt:
        logger.warning("findmnt not available; nested mount points are not detected")
        return []

    try:
        output = command.findmnt("-rno", "TARGET", "-R", path)
    except sh.ErrorReturnCode:
        return []

    nested = []
    for line in str(output).splitlines():
        target = _unescape_findmnt(line.strip())
        if target and target != path:
            nested.append(target)
    return nested


def mask_arguments(args: typing.Sequence[str]) -> list[str]:
    """Copy of `args` with the value after every --keyfile replaced by a placeholder."""
    masked = list(args)
    for index, arg in enumerate(masked[:-1]):
        if arg == "--keyfile":
            masked[index + 1] = KEYFILE_PLACEHOLDER
    return masked


def write_keyfile(
    profile_name: str,
    key: str,
    directory: typing.Optional[pathlib.Path] = None,
) -> pathlib.Path:
    """Write the encryption key to a fresh 0600 file unique to this profile and process."""
    directory = directory or pathlib.Path(tempfile.gettempdir())
    path = directory / f"pbs-backup-{profile_name}-{os.getpid()}.key"

    fd = os.open(
        path,
        os.O_WRONLY | os.O_CREAT | os.O_EXCL | getattr(os, "O_NOFOLLOW", 0),
        0o600,
    )
    try:
        os.fchmod(fd, 0o600)
        os.write(fd, (key + "\n").encode())
    except BaseException:
        os.close(fd)
        path.unlink(missing_ok=True)
        raise
    os.close(fd)
    return path


@dataclasses.dataclass
class BackupCommand:
    """Argument vector for one backup invocation plus the keyfile it depends on.

    Used as a context manager, the keyfile is deleted when the block exits.
    """

    args: list[str]
    keyfile: typing.Optional[pathlib.Path] = None

    def masked(self) -> list[str]:
        return mask_arguments(self.args)

    def discard_keyfile(self):
        if self.keyfile is not None:
            self.keyfile.unlink(missing_ok=True)
            self.keyfile = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.discard_keyfile()
        return False


def get_mount_arguments(
    path: str,
    is_mount: typing.Callable[[str], bool],
    nested_mounts: typing.Callable[[str], list[str]],
) -> list[str]:
    if not is_mount(path):
        return []

    args = ["--include-dev", path]
    for nested in nested_mounts(path):
        if nested != path:
            args += ["--include-dev", nested]
    return args


def build_backup_command(
    profile: model.Profile,
    is_dir: typing.Optional[typing.Callable[[str], bool]] = None,
    is_mount: typing.Optional[typing.Callable[[str], bool]] = None,
    nested_mounts: typing.Optional[typing.Callable[[str], list[str]]] = None,
    keyfile_dir: typing.Optional[pathlib.Path] = None,
) -> BackupCommand:
    """Translate a profile into the backup client's argument vector.

    Nothing is executed. Missing paths are skipped with an error; if none
    remain NoValidPathsError is raised before any keyfile is written.
    """
    is_dir = is_dir or os.path.isdir
    is_mount = is_mount or is_mount_point
    nested_mounts = nested_mounts or list_nested_mount_points

    config = profile.configuration
    args = [command.CLIENT_NAME, "backup"]

    archives = 0
    for path in config.path_list:
        if not is_dir(path):
            logger.error(f"Skipping invalid path (not a directory): {path}")
            continue

        args.append(f"{archive_name(path)}.pxar:{path}")
        args += get_mount_arguments(path, is_mount, nested_mounts)
        archives += 1

    if not archives:
        raise errors.NoValidPathsError("No valid backup paths found. Nothing to back up.")

    for pattern in config.exclude_list:
        args += ["--exclude", pattern]

    if config.skip_lost_and_found_enabled:
        args.append("--skip-lost-and-found")

    if config.change_detection_mode:
        args += ["--change-detection-mode", config.change_detection_mode]

    backup = BackupCommand(args)
    if profile.credentials and profile.credentials.encryption_enabled:
        try:
            backup.keyfile = write_keyfile(
                profile.name, profile.credentials.encryption_key, keyfile_dir
            )
        except OSError as err:
            raise errors.BackupExecutionError(
                f"Cannot create temporary keyfile: {err.strerror or err}"
            )
        args += ["--keyfile", str(backup.keyfile), "--crypt-mode", "encrypt"]

    return backup


def get_retention_arguments(config: model.ProfileConfiguration) -> list[str]:
    args: list[str] = []
    for tier, count in config.retention().items():
        if count > 0:
            args += [f"--keep-{tier}", str(count)]
    return args


def build_prune_command(
    config: model.ProfileConfiguration, hostname: str
) -> list[str]:
    return [
        command.CLIENT_NAME,
        "prune",
        f"host/{hostname}",
        *get_retention_arguments(config),
    ]


def get_execution_env(profile: model.Profile) -> dict[str, str]:
    """Environment for the backup client. Secrets travel here, never in argv."""
    config = profile.configuration
    env = dict(os.environ)
    env["PBS_REPOSITORY"] = config.repository()
    env["PBS_PASSWORD"] = profile.credentials.pbs_password if profile.credentials else ""

    if config.pbs_fingerprint:
        env["PBS_FINGERPRINT"] = config.pbs_fingerprint
    else:
        env.pop("PBS_FINGERPRINT", None)

    return env


def maximize_niceness():
    os.nice(20)


def run_command_politely(
    command: sh.Command,
    args: list[typing.Any],
    env: dict = {},
    okCodes: list[int] = [0],
):
    # Start the command
    running_proc = command(
        *args,
        _preexec_fn=maximize_niceness,
        _bg=True,
        _env=env,
        _out=sys.stdout,
        _err=sys.stderr,
        _ok_code=okCodes,
    )

    # Wait for it to finish; on interruption take the child down with us
    try:
        running_proc.wait()
    except (KeyboardInterrupt, errors.RunInterrupted):
        logger.warning("Interrupted, stopping the running process")
        if running_proc.is_alive():
            running_proc.kill()
        raise

    return running_proc
