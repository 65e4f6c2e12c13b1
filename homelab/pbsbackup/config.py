# Stdlib imports
import os
import pathlib
import re
import stat

# Vendor imports
import pydantic

# Local imports
from . import errors, log, model

logger = log.get_logger(__name__)

# Profile files must belong to this account
PRIVILEGED_UID = 0
PRIVILEGED_GID = 0

PROFILE_NAME_PATTERN = re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9._-]*$")

CONFIG_KEYS = frozenset(
    {
        "PBS_SERVER",
        "PBS_PORT",
        "PBS_DATASTORE",
        "PBS_AUTH_ID",
        "PBS_FINGERPRINT",
        "BACKUP_PATHS",
        "EXCLUDE_PATTERNS",
        "BACKUP_SCHEDULE",
        "KEEP_LAST",
        "KEEP_DAILY",
        "KEEP_WEEKLY",
        "KEEP_MONTHLY",
        "CHANGE_DETECTION_MODE",
        "SKIP_LOST_AND_FOUND",
        "VERBOSE",
        "LOCK_TIMEOUT",
        "NOTIFY_ON_FAILURE",
    }
)
CREDENTIAL_KEYS = frozenset({"PBS_PASSWORD", "ENCRYPTION_KEY"})

# A quoted value runs to the last quote on the line; an unquoted value stops at
# the first whitespace or comment character
_QUOTED_LINE = re.compile(r'^\s*([A-Z_]+)\s*=\s*"(.*)"\s*$')
_UNQUOTED_LINE = re.compile(r"^\s*([A-Z_]+)\s*=\s*([^\s#]*)")
_COMMENT_LINE = re.compile(r"^\s*#")
_ENCRYPTION_KEY_LINE = re.compile(r"^\s*ENCRYPTION_KEY\s*=")


class SystemPaths(pydantic.BaseModel):
    config_dir: pathlib.Path = pathlib.Path("/etc/pbs-backup")
    log_dir: pathlib.Path = pathlib.Path("/var/log/pbs-backup")
    lock_dir: pathlib.Path = pathlib.Path("/run/lock/pbs-backup")
    systemd_dir: pathlib.Path = pathlib.Path("/etc/systemd/system")

    def config_file(self, profile_name: str) -> pathlib.Path:
        return self.config_dir / f"{profile_name}.conf"

    def credentials_file(self, profile_name: str) -> pathlib.Path:
        return self.config_dir / f"{profile_name}.credentials"

    def log_file(self, profile_name: str) -> pathlib.Path:
        return self.log_dir / f"{profile_name}.log"

    def lock_file(self, profile_name: str) -> pathlib.Path:
        return self.lock_dir / f"{profile_name}.lock"


_default_config_contents = (
    """
# Proxmox Backup Server backup profile
#
# Values are read as KEY=value or KEY="value". Nothing in this file is ever
# executed; unknown keys are ignored.

# Connection
PBS_SERVER=""
PBS_PORT="8007"
PBS_DATASTORE=""
PBS_AUTH_ID="root@pam"
# Server certificate fingerprint (recommended)
PBS_FINGERPRINT=""

# Whitespace separated list of absolute directories. Each becomes one archive
BACKUP_PATHS=""
# Whitespace separated list of exclusion globs
EXCLUDE_PATTERNS=""

# systemd calendar expression (see `man systemd.time`)
BACKUP_SCHEDULE="*-*-* 02:00:00"

# Retention, 0 leaves a tier unmanaged
KEEP_LAST="3"
KEEP_DAILY="7"
KEEP_WEEKLY="4"
KEEP_MONTHLY="3"

# metadata or data
CHANGE_DETECTION_MODE="metadata"
SKIP_LOST_AND_FOUND="true"
VERBOSE="false"

# Seconds to wait for a concurrent run of this profile to finish
LOCK_TIMEOUT="300"

# Shell command run on failure; receives the error message as $1
NOTIFY_ON_FAILURE=""
""".strip()
    + "\n"
)

_default_credentials_contents = (
    """
# Proxmox Backup Server credentials (keep this file mode 0600, owned by root)

# Password or API token secret for PBS_AUTH_ID
PBS_PASSWORD=""
""".strip()
    + "\n"
)


def validate_profile_name(name: str) -> str:
    if not name:
        raise errors.ConfigError("Profile name cannot be empty")
    if not PROFILE_NAME_PATTERN.match(name):
        raise errors.ConfigError(
            f"Profile name contains invalid characters: '{name}' "
            "(allowed: alphanumeric, dash, underscore, dot; must start with alphanumeric)"
        )
    return name


def parse_key_value_file(
    path: pathlib.Path, allowed_keys: frozenset[str], label: str = "config"
) -> dict[str, str]:
    """Read KEY=value lines from `path` without evaluating any of them.

    Only keys from `allowed_keys` are returned. Other keys are reported and
    dropped, lines that are not assignments are skipped, and when a key
    appears more than once the last occurrence wins.
    """
    values: dict[str, str] = {}

    try:
        with path.open("r", encoding="utf-8") as handle:
            lines = [line.rstrip("\r\n") for line in handle]
    except UnicodeDecodeError as err:
        raise errors.ConfigError(
            f"The {label} file is not valid UTF-8 (byte {err.start}): {path}"
        )
    except OSError as err:
        raise errors.ConfigError(
            f"Cannot read {label} file: {err.strerror or err}: {path}"
        )

    for line in lines:
        if not line or _COMMENT_LINE.match(line):
            continue

        match = _QUOTED_LINE.match(line) or _UNQUOTED_LINE.match(line)
        if not match:
            continue

        key, value = match.group(1), match.group(2)
        if key not in allowed_keys:
            logger.warning(f"Unknown {label} key ignored: {key}")
            continue

        values[key] = value

    return values


def check_file_security(path: pathlib.Path, label: str):
    """Raise FilePermissionError unless `path` is a root owned file with mode 600 or stricter."""
    if not path.is_file():
        raise errors.FilePermissionError(f"{label} not found: {path}")

    info = path.stat()
    if info.st_uid != PRIVILEGED_UID or info.st_gid != PRIVILEGED_GID:
        raise errors.FilePermissionError(
            f"{label} must be owned by {PRIVILEGED_UID}:{PRIVILEGED_GID} "
            f"(currently {info.st_uid}:{info.st_gid}): {path}"
        )

    mode = stat.S_IMODE(info.st_mode)
    if mode & (stat.S_IRWXG | stat.S_IRWXO):
        raise errors.FilePermissionError(
            f"{label} has unsafe permissions ({mode:o}). Must be 600 or stricter: {path}"
        )


def load_configuration(path: pathlib.Path) -> model.ProfileConfiguration:
    return model.ProfileConfiguration.from_values(
        parse_key_value_file(path, CONFIG_KEYS, "config")
    )


def load_credentials(path: pathlib.Path) -> model.ProfileCredentials:
    return model.ProfileCredentials.from_values(
        parse_key_value_file(path, CREDENTIAL_KEYS, "credentials")
    )


def profile_exists(paths: SystemPaths, name: str) -> bool:
    return paths.config_file(name).is_file()


def list_profile_names(paths: SystemPaths) -> list[str]:
    if not paths.config_dir.is_dir():
        return []
    return sorted(
        entry.stem
        for entry in paths.config_dir.glob("*.conf")
        if entry.is_file() and PROFILE_NAME_PATTERN.match(entry.stem)
    )


def load_profile(
    name: str, paths: SystemPaths, check_permissions: bool = True
) -> model.Profile:
    """Load a profile's configuration and credentials.

    With `check_permissions` both files must pass `check_file_security` before
    either is read. Without it (display paths) a missing credentials file is
    tolerated and `credentials` is left as None.
    """
    validate_profile_name(name)
    config_file = paths.config_file(name)
    credentials_file = paths.credentials_file(name)

    if check_permissions:
        check_file_security(config_file, "Config file")
        check_file_security(credentials_file, "Credentials file")
    elif not config_file.is_file():
        raise errors.ConfigError(f"Profile '{name}' does not exist")

    credentials = None
    if check_permissions or credentials_file.is_file():
        credentials = load_credentials(credentials_file)

    return model.Profile(
        name=name,
        config_file=config_file,
        credentials_file=credentials_file,
        configuration=load_configuration(config_file),
        credentials=credentials,
    )


def secure_file(path: pathlib.Path):
    os.chown(path, PRIVILEGED_UID, PRIVILEGED_GID)
    path.chmod(0o600)


def write_template(path: pathlib.Path, contents: str, overwrite: bool = False) -> bool:
    """Write `contents` to `path` unless it already exists. Returns True if written."""
    if path.exists() and not overwrite:
        return False

    # New files are created 0600 from the start
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w") as handle:
        handle.write(contents)
    return True


def write_profile_templates(
    paths: SystemPaths, name: str, overwrite: bool = False
) -> dict[str, bool]:
    """Create the profile's config and credentials files from the templates.

    Existing files are left untouched unless `overwrite` is set. Both files
    are given the required owner and mode either way.
    """
    validate_profile_name(name)
    paths.config_dir.mkdir(parents=True, exist_ok=True)
    paths.config_dir.chmod(0o700)

    config_file = paths.config_file(name)
    credentials_file = paths.credentials_file(name)
    written = {
        "config": write_template(
            config_file, _default_config_contents, overwrite
        ),
        "credentials": write_template(
            credentials_file, _default_credentials_contents, overwrite
        ),
    }

    secure_file(config_file)
    secure_file(credentials_file)
    return written


def store_encryption_key(path: pathlib.Path, key: str):
    """Set ENCRYPTION_KEY in a credentials file, replacing any existing value."""
    if "\n" in key:
        raise errors.ConfigError("Encryption key must be a single line")

    key_line = f'ENCRYPTION_KEY="{key}"'
    lines = path.read_text().splitlines() if path.exists() else []

    replaced = False
    for index, line in enumerate(lines):
        if _ENCRYPTION_KEY_LINE.match(line):
            lines[index] = key_line
            replaced = True
    if not replaced:
        lines += ["", key_line]

    write_template(path, "\n".join(lines) + "\n", overwrite=True)
    secure_file(path)
