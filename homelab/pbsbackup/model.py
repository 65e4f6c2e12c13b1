### stdlib imports
import pathlib
import typing

### vendor imports
import pydantic

### local imports
from . import errors


RETENTION_TIERS = ("last", "daily", "weekly", "monthly")
DEFAULT_LOCK_TIMEOUT = 300


def _as_int(key: str, value: str) -> int:
    try:
        number = int(value.strip())
    except ValueError:
        raise errors.ConfigError(f"{key} must be an integer (got: '{value}')")
    if number < 0:
        raise errors.ConfigError(f"{key} must not be negative (got: '{value}')")
    return number


class ProfileConfiguration(pydantic.BaseModel):
    # Values are kept exactly as written in the file; typed accessors below
    # coerce them on demand
    pbs_server: str = ""
    pbs_port: str = "8007"
    pbs_datastore: str = ""
    pbs_auth_id: str = ""
    pbs_fingerprint: str = ""

    backup_paths: str = ""
    exclude_patterns: str = ""
    backup_schedule: str = "*-*-* 02:00:00"

    keep_last: str = "3"
    keep_daily: str = "7"
    keep_weekly: str = "4"
    keep_monthly: str = "3"

    change_detection_mode: str = "metadata"
    skip_lost_and_found: str = "true"
    verbose: str = "false"
    lock_timeout: str = str(DEFAULT_LOCK_TIMEOUT)
    notify_on_failure: str = ""

    @classmethod
    def from_values(cls, values: dict[str, str]) -> "ProfileConfiguration":
        return cls(**{key.lower(): value for key, value in values.items()})

    @property
    def path_list(self) -> list[str]:
        return self.backup_paths.split()

    @property
    def exclude_list(self) -> list[str]:
        return self.exclude_patterns.split()

    @property
    def skip_lost_and_found_enabled(self) -> bool:
        return self.skip_lost_and_found == "true"

    @property
    def verbose_enabled(self) -> bool:
        return self.verbose == "true"

    @property
    def lock_timeout_seconds(self) -> int:
        """LOCK_TIMEOUT as an int; blank means the default."""
        if not self.lock_timeout.strip():
            return DEFAULT_LOCK_TIMEOUT
        return _as_int("LOCK_TIMEOUT", self.lock_timeout)

    @property
    def port_number(self) -> int:
        return _as_int("PBS_PORT", self.pbs_port)

    def retention(self) -> dict[str, int]:
        """Map each retention tier to its count.

        A blank count is 0 (tier not managed). Anything else that is not a
        non-negative integer raises ConfigError.
        """
        counts = {}
        for tier in RETENTION_TIERS:
            value = getattr(self, f"keep_{tier}")
            counts[tier] = (
                _as_int(f"KEEP_{tier.upper()}", value) if value.strip() else 0
            )
        return counts

    def check_values(self):
        """Raise ConfigError if a numeric setting the runner depends on is malformed."""
        self.retention()
        self.lock_timeout_seconds

    def repository(self) -> str:
        return f"{self.pbs_auth_id}@{self.pbs_server}:{self.pbs_port}:{self.pbs_datastore}"


class ProfileCredentials(pydantic.BaseModel):
    pbs_password: str = ""
    encryption_key: str = ""

    @classmethod
    def from_values(cls, values: dict[str, str]) -> "ProfileCredentials":
        return cls(**{key.lower(): value for key, value in values.items()})

    @property
    def encryption_enabled(self) -> bool:
        return bool(self.encryption_key)


class Profile(pydantic.BaseModel):
    name: str
    config_file: pathlib.Path
    credentials_file: pathlib.Path
    configuration: ProfileConfiguration = pydantic.Field(
        default_factory=ProfileConfiguration
    )
    credentials: typing.Optional[ProfileCredentials] = None

    def missing_fields(self) -> list[str]:
        """Names of the required keys that are empty."""
        config = self.configuration
        required = {
            "PBS_SERVER": config.pbs_server,
            "PBS_DATASTORE": config.pbs_datastore,
            "PBS_AUTH_ID": config.pbs_auth_id,
            "PBS_PASSWORD": self.credentials.pbs_password
            if self.credentials
            else "",
            "BACKUP_PATHS": config.backup_paths,
        }
        return [key for key, value in required.items() if not value]
