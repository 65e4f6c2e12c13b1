"""Shared fixtures and fakes for the backup profile tests."""
import os
import pathlib
import signal
import time

import pytest
import sh

from homelab.pbsbackup import command, errors
from homelab.pbsbackup import config as applicationConfig


@pytest.fixture(autouse=True)
def privileged_owner(monkeypatch):
    """Treat the user running the tests as the privileged account."""
    monkeypatch.setattr(applicationConfig, "PRIVILEGED_UID", os.getuid())
    monkeypatch.setattr(applicationConfig, "PRIVILEGED_GID", os.getgid())


@pytest.fixture(autouse=True)
def no_host_tools(monkeypatch):
    """Never touch the real scheduler or backup client from tests."""
    for name in (
        "client",
        "findmnt",
        "mountpoint",
        "systemctl",
        "systemd_analyze",
        "journalctl",
        "bash",
    ):
        monkeypatch.setattr(command, name, None)


@pytest.fixture
def paths(tmp_path):
    return applicationConfig.SystemPaths(
        config_dir=tmp_path / "etc",
        log_dir=tmp_path / "log",
        lock_dir=tmp_path / "lock",
        systemd_dir=tmp_path / "systemd",
    )


@pytest.fixture
def data_dirs(tmp_path):
    first = tmp_path / "data" / "first"
    second = tmp_path / "data" / "second"
    first.mkdir(parents=True)
    second.mkdir(parents=True)
    return [first, second]


def write_key_values(path: pathlib.Path, values: dict, mode: int = 0o600):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("".join(f'{key}="{value}"\n' for key, value in values.items()))
    path.chmod(mode)


def write_profile(paths, name, config=None, credentials=None, mode=0o600):
    write_key_values(paths.config_file(name), config or {}, mode)
    write_key_values(paths.credentials_file(name), credentials or {}, mode)


class FakeProcess:
    def __init__(self, error=None, signum=None):
        self.error = error
        self.signum = signum
        self.killed = False

    def wait(self):
        if self.signum is not None:
            # The handler installed by the runner raises out of the sleep
            os.kill(os.getpid(), self.signum)
            time.sleep(5)
        if self.error:
            raise self.error
        return self

    def is_alive(self):
        return self.signum is not None and not self.killed

    def kill(self):
        self.killed = True


class FakeFailure(sh.ErrorReturnCode):
    exit_code = 2


class FakeClient:
    """Stands in for the proxmox-backup-client sh.Command."""

    def __init__(self, fail_on=None, interrupt_on=None, signal_on=None):
        self.fail_on = fail_on
        self.interrupt_on = interrupt_on
        self.signal_on = signal_on
        self.calls = []
        self.keyfiles = []
        self.processes = []

    def __call__(self, *args, **kwargs):
        args = [str(arg) for arg in args]
        self.calls.append((args, kwargs))

        if "--keyfile" in args:
            keyfile = pathlib.Path(args[args.index("--keyfile") + 1])
            mode = keyfile.stat().st_mode & 0o777 if keyfile.exists() else None
            self.keyfiles.append((keyfile, mode))

        subcommand = args[0]
        if subcommand == self.fail_on:
            process = FakeProcess(
                FakeFailure(f"{command.CLIENT_NAME} {subcommand}".encode(), b"", b"")
            )
        elif subcommand == self.interrupt_on:
            process = FakeProcess(errors.RunInterrupted(signal.SIGTERM))
        elif subcommand == self.signal_on:
            process = FakeProcess(signum=signal.SIGTERM)
        else:
            process = FakeProcess()
        self.processes.append(process)
        return process

    @property
    def subcommands(self):
        return [args[0] for args, _ in self.calls]


class FakeShell:
    """Records notification commands passed to bash."""

    def __init__(self):
        self.calls = []

    def __call__(self, *args, **kwargs):
        self.calls.append((list(args), kwargs))
        return ""
