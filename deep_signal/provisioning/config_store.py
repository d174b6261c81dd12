"""
config_store.py — read and write the gateway config on a remote instance.

Reads try a fixed priority list of locations (the canonical file first, then
two legacy names) and fall back to a literal "{}". Writes always go to the
canonical path: the text travels verbatim inside a quoted here-document into a
temp file which is then renamed over the target.

Transport failures propagate as RemoteAccessError; retrying is the caller's
business.
"""

import logging
import posixpath
import secrets

from .errors import ConfigApplyError

log = logging.getLogger(__name__)

CONFIG_DIR = "/root/.openclaw"
CONFIG_PATH = f"{CONFIG_DIR}/openclaw.json"
LEGACY_CONFIG_PATHS = (f"{CONFIG_DIR}/config.json5", f"{CONFIG_DIR}/config.json")
READ_PRIORITY = (CONFIG_PATH, *LEGACY_CONFIG_PATHS)
SOUL_PATH = f"{CONFIG_DIR}/SOUL.md"

HEREDOC_MARKER = "EOFCONFIG"


def read_command(paths=READ_PRIORITY) -> str:
    attempts = [f"cat {p} 2>/dev/null" for p in paths]
    return " || ".join(attempts + ['echo "{}"'])


def heredoc_marker(content: str, marker: str = HEREDOC_MARKER) -> str:
    """marker, or a random one when some line of content equals it."""
    lines = content.splitlines()
    while marker in lines:
        marker = f"EOF_{secrets.token_hex(6).upper()}"
    return marker


def write_command(path: str, content: str) -> str:
    """Shell command that atomically replaces path with content."""
    marker = heredoc_marker(content)
    body = content if content.endswith("\n") else content + "\n"
    tmp = f"{path}.tmp"
    # The here-document body starts on the line after the command, so the
    # rename is chained on the first line and only runs if cat succeeded.
    return (
        f"mkdir -p {posixpath.dirname(path)} && "
        f"cat > {tmp} << '{marker}' && mv -f {tmp} {path}\n"
        f"{body}"
        f"{marker}\n"
    )


class RemoteConfigStore:
    def __init__(self, shell):
        self.shell = shell

    def read(self) -> str | None:
        """Raw text of the first config file found, or None when it is blank."""
        result = self.shell.run(read_command())
        text = result.stdout.strip()
        return text or None

    def write(self, text: str):
        self.write_file(CONFIG_PATH, text)

    def write_file(self, path: str, content: str):
        result = self.shell.run(write_command(path, content))
        if not result.ok:
            raise ConfigApplyError(
                f"Writing {path} failed (exit {result.exit_status}): {result.stderr.strip()[:200]}"
            )
        log.info(f"  Wrote {path} ({len(content)} bytes)")
