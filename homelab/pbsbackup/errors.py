# Exit codes are a contract with the scheduler and monitoring layer
EXIT_OK = 0
EXIT_CONFIG = 1
EXIT_LOCK = 2
EXIT_BACKUP = 3
EXIT_PRUNE = 4


class PBSBackupError(Exception):
    exit_code = EXIT_CONFIG


class ConfigError(PBSBackupError):
    """Missing, malformed or insecure configuration."""


class FilePermissionError(ConfigError):
    """A profile file has the wrong owner or an unsafe mode."""


class NoValidPathsError(ConfigError):
    """None of the configured backup paths exist."""


class LockTimeoutError(PBSBackupError):
    exit_code = EXIT_LOCK


class BackupExecutionError(PBSBackupError):
    exit_code = EXIT_BACKUP


class PruneExecutionError(PBSBackupError):
    exit_code = EXIT_PRUNE


class RunInterrupted(PBSBackupError):
    def __init__(self, signum: int):
        super().__init__(f"Interrupted by signal {signum}")
        self.signum = signum
        self.exit_code = 128 + signum
