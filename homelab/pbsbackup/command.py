### stdlib imports
import typing

### vendor imports
import sh

CLIENT_NAME = "proxmox-backup-client"


def _optional(name: str) -> typing.Optional[sh.Command]:
    try:
        return sh.Command(name)
    except sh.CommandNotFound:
        return None


# The backup client is only required for running, testing and key generation,
# so each command is looked up once here and may be None
client: typing.Optional[sh.Command] = _optional(CLIENT_NAME)

# Filesystem inspection, both read the kernel mount table
findmnt: typing.Optional[sh.Command] = _optional("findmnt")
mountpoint: typing.Optional[sh.Command] = _optional("mountpoint")

# Scheduler and journal
systemctl: typing.Optional[sh.Command] = _optional("systemctl")
systemd_analyze: typing.Optional[sh.Command] = _optional("systemd-analyze")
journalctl: typing.Optional[sh.Command] = _optional("journalctl")

# Used to run the user supplied failure notification
bash: typing.Optional[sh.Command] = _optional("bash")
