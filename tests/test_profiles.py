"""Tests for profile install, removal, listing and validation."""
import json
import os

import pytest
import sh

from conftest import write_profile
from homelab.pbsbackup import command, errors, profiles, systemd
from homelab.pbsbackup import config as applicationConfig


class CalendarRejected(sh.ErrorReturnCode):
    exit_code = 1


def install(paths, name="rpool", **kwargs):
    return profiles.install_profile(name, paths, reload_units=False, **kwargs)


class TestInstallProfile:
    """Test creation of profile files and units."""

    def test_creates_private_files(self, paths):
        result = install(paths)

        for path in (result.config_file, result.credentials_file):
            info = path.stat()
            assert info.st_mode & 0o777 == 0o600
            assert info.st_uid == applicationConfig.PRIVILEGED_UID
        assert paths.config_dir.stat().st_mode & 0o777 == 0o700
        assert result.config_written and result.credentials_written
        assert paths.log_dir.is_dir()

    def test_template_loads_with_defaults(self, paths):
        result = install(paths)

        configuration = applicationConfig.load_configuration(result.config_file)
        assert configuration.backup_schedule == "*-*-* 02:00:00"
        assert configuration.pbs_auth_id == "root@pam"
        assert configuration.retention() == {
            "last": 3,
            "daily": 7,
            "weekly": 4,
            "monthly": 3,
        }

    def test_reinstall_keeps_existing_files(self, paths):
        install(paths)
        config_file = paths.config_file("rpool")
        config_file.write_text('PBS_SERVER="edited"\nBACKUP_SCHEDULE="hourly"\n')
        config_file.chmod(0o644)
        before = config_file.read_bytes()

        result = install(paths)

        assert config_file.read_bytes() == before
        assert config_file.stat().st_mode & 0o777 == 0o600
        assert not result.config_written
        assert "OnCalendar=hourly" in result.timer_unit.read_text()

    def test_force_overwrites(self, paths):
        install(paths)
        paths.config_file("rpool").write_text('PBS_SERVER="edited"\n')

        result = install(paths, overwrite=True)

        assert result.config_written
        assert 'PBS_SERVER=""' in paths.config_file("rpool").read_text()

    def test_units_written(self, paths):
        result = install(paths)

        assert result.service_unit == paths.systemd_dir / "pbs-backup-rpool.service"
        assert result.timer_unit == paths.systemd_dir / "pbs-backup-rpool.timer"
        assert systemd.units_installed("rpool", paths) == {
            "service": True,
            "timer": True,
        }

    def test_invalid_name_rejected(self, paths):
        with pytest.raises(errors.ConfigError):
            install(paths, name="bad name")

        assert not paths.config_dir.exists()

    def test_generate_key(self, paths, monkeypatch):
        calls = []

        def fake_client(*args):
            calls.append(args)
            keyfile = args[2]
            with open(keyfile, "w") as handle:
                json.dump({"kdf": None, "data": "abc"}, handle, indent=2)

        monkeypatch.setattr(command, "client", fake_client)

        result = install(paths, generate_key=True)

        assert result.key_generated
        assert calls[0][:2] == ("key", "create")
        assert calls[0][3:] == ("--kdf", "none")
        assert not os.path.exists(calls[0][2])
        credentials = applicationConfig.load_credentials(result.credentials_file)
        assert json.loads(credentials.encryption_key) == {"kdf": None, "data": "abc"}
        assert "\n" not in credentials.encryption_key

    def test_generate_key_without_client(self, paths):
        with pytest.raises(errors.ConfigError):
            install(paths, generate_key=True)


class TestRemoveProfile:
    def test_removes_units_keeps_config(self, paths):
        install(paths)

        removed = profiles.remove_profile("rpool", paths, reload_units=False)

        assert len(removed) == 2
        assert systemd.units_installed("rpool", paths) == {
            "service": False,
            "timer": False,
        }
        assert paths.config_file("rpool").exists()
        assert paths.credentials_file("rpool").exists()

    def test_unknown_profile(self, paths):
        with pytest.raises(errors.ConfigError):
            profiles.remove_profile("absent", paths, reload_units=False)


class TestListProfiles:
    def test_lists_sorted(self, paths):
        write_profile(paths, "zeta", config={"PBS_SERVER": "z"})
        write_profile(paths, "alpha", config={"PBS_SERVER": "a"})
        (paths.config_dir / "notes.txt").write_text("ignored")

        names = [profile.name for profile in profiles.list_profiles(paths)]

        assert names == ["alpha", "zeta"]

    def test_empty_when_no_config_dir(self, paths):
        assert profiles.list_profiles(paths) == []


class TestValidateProfile:
    """Test the collected validation report."""

    def write_valid(self, paths, data_dirs, **overrides):
        config = {
            "PBS_SERVER": "pbs",
            "PBS_DATASTORE": "store",
            "PBS_AUTH_ID": "root@pam",
            "BACKUP_PATHS": " ".join(str(path) for path in data_dirs),
            "BACKUP_SCHEDULE": "daily",
        }
        config.update(overrides)
        write_profile(
            paths, "rpool", config=config, credentials={"PBS_PASSWORD": "pw"}
        )

    def test_valid_profile(self, paths, data_dirs):
        self.write_valid(paths, data_dirs)

        report = profiles.validate_profile("rpool", paths)

        assert report.ok
        assert report.categories() == set()
        assert any("Encryption: DISABLED" in warning for warning in report.warnings)
        assert any("systemd-analyze" in warning for warning in report.warnings)

    def test_loose_permissions(self, paths, data_dirs):
        self.write_valid(paths, data_dirs)
        paths.config_file("rpool").chmod(0o644)

        report = profiles.validate_profile("rpool", paths)

        assert not report.ok
        assert "permission" in report.categories()

    def test_bad_retention(self, paths, data_dirs):
        self.write_valid(paths, data_dirs, KEEP_DAILY="seven")

        report = profiles.validate_profile("rpool", paths)

        assert "retention" in report.categories()

    def test_blank_lock_timeout_passes(self, paths, data_dirs):
        self.write_valid(paths, data_dirs, LOCK_TIMEOUT="")

        report = profiles.validate_profile("rpool", paths)

        assert report.ok
        assert "LOCK_TIMEOUT: <default>" in report.passed

    def test_blank_port_rejected(self, paths, data_dirs):
        self.write_valid(paths, data_dirs, PBS_PORT="")

        report = profiles.validate_profile("rpool", paths)

        assert report.categories() == {"value"}

    def test_missing_path(self, paths, data_dirs, tmp_path):
        self.write_valid(paths, data_dirs, BACKUP_PATHS=f"{data_dirs[0]} {tmp_path}/gone")

        report = profiles.validate_profile("rpool", paths)

        assert report.categories() == {"path"}

    def test_empty_required_fields(self, paths, data_dirs):
        self.write_valid(paths, data_dirs, PBS_SERVER="")

        report = profiles.validate_profile("rpool", paths)

        assert report.categories() == {"required"}

    def test_missing_files(self, paths):
        report = profiles.validate_profile("rpool", paths)

        assert report.categories() == {"missing"}
        assert len(report.errors) == 2

    def test_invalid_schedule(self, paths, data_dirs, monkeypatch):
        def fake_analyze(*args):
            raise CalendarRejected("systemd-analyze calendar", b"", b"")

        monkeypatch.setattr(command, "systemd_analyze", fake_analyze)
        self.write_valid(paths, data_dirs, BACKUP_SCHEDULE="every tuesday-ish")

        report = profiles.validate_profile("rpool", paths)

        assert report.categories() == {"schedule"}


class TestProfileStatus:
    def test_status_without_systemd(self, paths):
        write_profile(paths, "rpool", config={"PBS_SERVER": "pbs"})
        paths.credentials_file("rpool").chmod(0o640)

        status = profiles.profile_status("rpool", paths)

        assert status.credentials_present
        assert status.credentials_mode == 0o640
        assert not status.credentials_secure
        assert status.timer == "disabled"
        assert status.next_run is None
        assert status.lock is None
        assert status.log_size is None


class TestProfileLogs:
    def test_tail_of_log_file(self, paths):
        paths.log_dir.mkdir(parents=True)
        paths.log_file("rpool").write_text("".join(f"line {n}\n" for n in range(10)))

        journal, lines = profiles.profile_logs("rpool", paths, lines=3)

        assert journal is None
        assert lines == ["line 7", "line 8", "line 9"]

    def test_no_log_file(self, paths):
        assert profiles.profile_logs("rpool", paths) == (None, None)


class TestCheckConnection:
    """Test the step-by-step connection check with the network faked."""

    def write(self, paths):
        write_profile(
            paths,
            "rpool",
            config={"PBS_SERVER": "pbs", "PBS_DATASTORE": "store", "PBS_AUTH_ID": "root@pam"},
            credentials={"PBS_PASSWORD": "pw"},
        )

    def test_unreachable_stops_early(self, paths, monkeypatch):
        self.write(paths)
        calls = []
        monkeypatch.setattr(command, "client", lambda *args, **kwargs: calls.append(args))
        monkeypatch.setattr(profiles, "check_reachable", lambda host, port: False)

        steps = list(profiles.check_connection("rpool", paths))

        assert [(step, ok) for step, ok, _ in steps] == [("reachability", False)]
        assert calls == []

    def test_all_steps_pass(self, paths, monkeypatch):
        self.write(paths)
        calls = []

        def fake_client(*args, **kwargs):
            calls.append((args, kwargs["_env"]["PBS_REPOSITORY"]))
            return ""

        monkeypatch.setattr(command, "client", fake_client)
        monkeypatch.setattr(profiles, "check_reachable", lambda host, port: True)

        steps = list(profiles.check_connection("rpool", paths))

        assert [(step, ok) for step, ok, _ in steps] == [
            ("reachability", True),
            ("authentication", True),
            ("datastore", True),
        ]
        assert calls == [
            (("login",), "root@pam@pbs:8007:store"),
            (("list",), "root@pam@pbs:8007:store"),
        ]

    def test_missing_password(self, paths, monkeypatch):
        write_profile(paths, "rpool", config={"PBS_SERVER": "pbs"})
        monkeypatch.setattr(command, "client", lambda *args, **kwargs: "")

        with pytest.raises(errors.ConfigError):
            list(profiles.check_connection("rpool", paths))
