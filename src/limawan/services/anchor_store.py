"""Anchor state store.

Owns the three persisted artifacts of a deployment:
- the shared main pf configuration (/etc/pf.conf), edited in place
- the anchor ruleset file (/etc/pf.anchors/limawan), rewritten wholesale
- the pf.conf backup (/etc/pf.conf.bak), taken before the first change

Reference-block edits are plain text operations so that unrelated
content in pf.conf, including its formatting, is left untouched.
"""

import difflib
import re
import shutil
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional

from limawan.core.config import AnchorConfig
from limawan.core.exceptions import ConfigIOError, NoBackupError
from limawan.core.files import write_atomic
from limawan.core.output import Console, console as default_console


REFERENCE_MARKER = "# LimaWAN Port Forwarding Anchor"


class ReferenceChange(str, Enum):
    """Outcome of ensure_anchor_referenced."""
    CHANGED = "changed"
    ALREADY_PRESENT = "already_present"


@dataclass
class BackupHandle:
    """A pf.conf snapshot on disk."""
    path: Path
    created: bool  # False when an older backup was preserved


@dataclass
class RestoreResult:
    """Result of restoring pf.conf from its backup."""
    backup_path: Path
    restored_path: Path


# =============================================================================
# Text operations
# =============================================================================

def _anchor_line_pattern(anchor_name: str) -> re.Pattern:
    return re.compile(rf'^\s*anchor\s+"{re.escape(anchor_name)}"(?=\s|\{{|$)')


def render_reference_block(anchor_name: str, anchor_path: Path) -> str:
    """The block pf.conf needs to load the anchor from its file."""
    return (
        f"{REFERENCE_MARKER}\n"
        f'anchor "{anchor_name}" {{\n'
        f'    load anchor "{anchor_name}" from "{anchor_path}"\n'
        "}\n"
    )


def count_references(text: str, anchor_name: str) -> int:
    """Number of `anchor "NAME"` lines in a pf configuration."""
    pattern = _anchor_line_pattern(anchor_name)
    return sum(1 for line in text.splitlines() if pattern.match(line))


def add_reference(text: str, anchor_name: str, anchor_path: Path) -> str:
    """Append the reference block, separated by one blank line."""
    block = render_reference_block(anchor_name, anchor_path)
    if not text:
        return block
    if not text.endswith("\n"):
        text += "\n"
    return text + "\n" + block


def remove_reference(text: str, anchor_name: str) -> str:
    """Remove every reference block for ``anchor_name``.

    A block is the marker comment (when directly above), the
    `anchor "NAME"` line and, if that line opens a brace, everything up
    to the matching `}` line. One adjacent blank line goes with it: the
    preceding one if present, otherwise the following one.
    """
    pattern = _anchor_line_pattern(anchor_name)
    lines = text.splitlines(keepends=True)
    out: list[str] = []
    i = 0

    while i < len(lines):
        line = lines[i]
        if (
            line.rstrip("\r\n") == REFERENCE_MARKER
            and i + 1 < len(lines)
            and pattern.match(lines[i + 1])
        ):
            i += 1
            line = lines[i]
        elif not pattern.match(line):
            out.append(line)
            i += 1
            continue

        end = i
        if line.rstrip().endswith("{"):
            j = i + 1
            while j < len(lines) and lines[j].strip() != "}":
                j += 1
            # Unterminated block: only drop the anchor line itself
            if j < len(lines):
                end = j
        i = end + 1

        if out and not out[-1].strip():
            out.pop()
        elif i < len(lines) and not lines[i].strip():
            i += 1

    return "".join(out)


# =============================================================================
# Store
# =============================================================================

class AnchorStore:
    """Read/write access to pf.conf, the anchor file and the backup."""

    def __init__(
        self,
        anchor_name: str,
        anchor_path: Path,
        main_conf_path: Path,
        backup_path: Path,
        *,
        console: Console = default_console,
    ) -> None:
        self.anchor_name = anchor_name
        self.anchor_path = Path(anchor_path)
        self.main_conf_path = Path(main_conf_path)
        self.backup_path = Path(backup_path)
        self.console = console

    @classmethod
    def from_config(cls, config: AnchorConfig, console: Console = default_console) -> "AnchorStore":
        """Build a store from the [anchor] configuration section."""
        return cls(
            config.name,
            config.path,
            config.main_conf_path,
            config.backup_path,
            console=console,
        )

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def anchor_file_exists(self) -> bool:
        return self.anchor_path.is_file()

    def backup_exists(self) -> bool:
        return self.backup_path.is_file()

    def read_main_config(self) -> str:
        """Current pf.conf text ('' if the file does not exist)."""
        if not self.main_conf_path.exists():
            return ""
        return self._read_text(self.main_conf_path)

    def read_anchor_ruleset(self) -> Optional[str]:
        """Current anchor file text, or None if absent."""
        if not self.anchor_file_exists():
            return None
        return self._read_text(self.anchor_path)

    def is_referenced(self) -> bool:
        """True if pf.conf names the anchor."""
        return count_references(self.read_main_config(), self.anchor_name) > 0

    # -------------------------------------------------------------------------
    # Mutations
    # -------------------------------------------------------------------------

    def ensure_main_config(self) -> bool:
        """Create an empty pf.conf if there is none.

        Returns:
            True if the file had to be created
        """
        if self.main_conf_path.exists():
            return False
        self.console.info("No existing PF configuration found, creating empty one")
        try:
            self.main_conf_path.parent.mkdir(parents=True, exist_ok=True)
            self.main_conf_path.touch(mode=0o644)
        except OSError as e:
            raise ConfigIOError(
                f"Cannot create {self.main_conf_path}",
                path=self.main_conf_path,
                hint="Run as root",
                details=[str(e)],
            ) from e
        return True

    def backup_main_config(self) -> BackupHandle:
        """Snapshot pf.conf before the first change.

        An existing backup is kept as-is: it is the oldest known-good state.
        A missing pf.conf is created empty first (first-run case).

        Raises:
            ConfigIOError: If pf.conf cannot be read or the backup written
        """
        if self.backup_exists():
            self.console.info(f"Preserving existing backup {self.backup_path}")
            return BackupHandle(path=self.backup_path, created=False)

        self.ensure_main_config()
        try:
            self.backup_path.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(self.main_conf_path, self.backup_path)
        except OSError as e:
            raise ConfigIOError(
                f"Cannot back up {self.main_conf_path} to {self.backup_path}",
                path=self.main_conf_path,
                hint="Run as root",
                details=[str(e)],
            ) from e

        self.console.success(f"PF configuration backed up to {self.backup_path}")
        return BackupHandle(path=self.backup_path, created=True)

    def write_anchor_ruleset(self, text: str) -> None:
        """Replace the anchor file with ``text`` (parent created if missing)."""
        self._write(self.anchor_path, text)
        self.console.success(f"PF anchor rules written to {self.anchor_path}")

    def ensure_anchor_referenced(self) -> ReferenceChange:
        """Append the reference block to pf.conf unless already present."""
        text = self.read_main_config()
        if count_references(text, self.anchor_name):
            self.console.info(f"Anchor \"{self.anchor_name}\" already referenced in {self.main_conf_path}")
            return ReferenceChange.ALREADY_PRESENT

        self._write(self.main_conf_path, add_reference(text, self.anchor_name, self.anchor_path))
        self.console.success(f"Anchor \"{self.anchor_name}\" added to {self.main_conf_path}")
        return ReferenceChange.CHANGED

    def reference_diff(self, *, add: bool) -> str:
        """Unified diff of the pf.conf edit that adding or removing the reference would make."""
        before = self.read_main_config()
        if add:
            after = before if count_references(before, self.anchor_name) else add_reference(
                before, self.anchor_name, self.anchor_path
            )
        else:
            after = remove_reference(before, self.anchor_name)
        name = str(self.main_conf_path)
        return "".join(difflib.unified_diff(
            before.splitlines(keepends=True),
            after.splitlines(keepends=True),
            fromfile=name,
            tofile=name,
        ))

    def remove_anchor_reference(self) -> bool:
        """Remove the reference block from pf.conf.

        Returns:
            True if pf.conf changed
        """
        text = self.read_main_config()
        if not count_references(text, self.anchor_name):
            self.console.verbose(f"No anchor reference in {self.main_conf_path}")
            return False

        self._write(self.main_conf_path, remove_reference(text, self.anchor_name))
        self.console.success(f"Anchor \"{self.anchor_name}\" removed from {self.main_conf_path}")
        return True

    def delete_anchor_file(self) -> bool:
        """Delete the anchor file, and its directory if that leaves it empty.

        Returns:
            True if the file existed
        """
        existed = self.anchor_file_exists()
        try:
            if existed:
                self.anchor_path.unlink()
                self.console.success(f"Anchor file removed: {self.anchor_path}")

            anchor_dir = self.anchor_path.parent
            if anchor_dir.is_dir() and not any(anchor_dir.iterdir()):
                anchor_dir.rmdir()
                self.console.verbose(f"Removed empty anchor directory: {anchor_dir}")
        except OSError as e:
            raise ConfigIOError(
                f"Cannot remove anchor file {self.anchor_path}",
                path=self.anchor_path,
                details=[str(e)],
            ) from e
        return existed

    def restore_from_backup(self) -> RestoreResult:
        """Copy the backup over pf.conf, byte for byte.

        Raises:
            NoBackupError: If no backup exists
            ConfigIOError: If the copy fails
        """
        if not self.backup_exists():
            raise NoBackupError(
                f"No backup configuration found: {self.backup_path}",
                hint="The backup may have been removed by hand; repair pf.conf manually",
            )

        try:
            content = self.backup_path.read_bytes()
        except OSError as e:
            raise ConfigIOError(
                f"Cannot read backup {self.backup_path}",
                path=self.backup_path,
                details=[str(e)],
            ) from e

        self._write(self.main_conf_path, content)
        self.console.success(f"Backup configuration restored from {self.backup_path}")
        return RestoreResult(backup_path=self.backup_path, restored_path=self.main_conf_path)

    def delete_backup(self) -> bool:
        """Remove the backup file. Returns True if it existed."""
        if not self.backup_exists():
            return False
        try:
            self.backup_path.unlink()
        except OSError as e:
            raise ConfigIOError(
                f"Cannot remove backup {self.backup_path}",
                path=self.backup_path,
                details=[str(e)],
            ) from e
        self.console.success(f"Backup file removed: {self.backup_path}")
        return True

    # -------------------------------------------------------------------------
    # Private Helpers
    # -------------------------------------------------------------------------

    def _read_text(self, path: Path) -> str:
        try:
            return path.read_text()
        except OSError as e:
            raise ConfigIOError(
                f"Cannot read {path}",
                path=path,
                hint="Run as root",
                details=[str(e)],
            ) from e

    def _write(self, path: Path, content: str | bytes) -> None:
        try:
            write_atomic(path, content)
        except OSError as e:
            raise ConfigIOError(
                f"Cannot write {path}",
                path=path,
                hint="Run as root",
                details=[str(e)],
            ) from e
