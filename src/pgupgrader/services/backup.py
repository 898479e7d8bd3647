"""Backup/restore of the data directory to an isolated staging location."""

import os
import shutil
import tempfile
import uuid
from typing import Optional

from pgupgrader.constants import DIR_MODE
from pgupgrader.errors import TransferError


class BackupService:
    """Snapshots a directory tree to staging and restores it verbatim."""

    def __init__(self, logger, console, filesystem_service, staging_root: Optional[str] = None):
        self.logger = logger
        self.console = console
        self.filesystem_service = filesystem_service
        self.staging_root = staging_root

    def create_staging(self, run_id: str) -> str:
        try:
            if self.staging_root:
                os.makedirs(self.staging_root, exist_ok=True)
            staging_path = tempfile.mkdtemp(prefix=f"pgupgrader-{run_id}-", dir=self.staging_root)
        except OSError as exc:
            raise TransferError(f"Could not create staging directory: {exc}") from exc

        self.filesystem_service.set_permissions(staging_path, DIR_MODE)
        self.logger.info("Staging directory: %s", staging_path)
        return staging_path

    def snapshot(self, src_dir: str, staging_path: Optional[str] = None, run_id: str = "run") -> str:
        """Copy the whole tree of ``src_dir`` into an empty staging directory."""
        if staging_path is None:
            staging_path = self.create_staging(run_id)

        if not self.filesystem_service.is_empty_dir(staging_path):
            raise TransferError(f"Staging path must be an empty directory: {staging_path}")

        self.console.print(f"[blue]Backing up {src_dir} to {staging_path}...[/blue]")
        try:
            self.filesystem_service.copy_contents(src_dir, staging_path)
        except (OSError, shutil.Error) as exc:
            raise TransferError(f"Failed to back up {src_dir} to {staging_path}: {exc}") from exc

        self.console.print("[green]Backup complete.[/green]")
        return staging_path

    def restore(self, staging_path: str, dst_dir: str, atomic: bool = False):
        """Put the staged tree back into ``dst_dir``.

        The default clears ``dst_dir`` and copies into it. A failure half way
        leaves ``dst_dir`` partially restored; the staging copy stays intact.
        With ``atomic`` the tree is copied to a sibling first and swapped in
        with ``rename``, so ``dst_dir`` is either untouched or fully restored.
        """
        if not os.path.isdir(staging_path):
            raise TransferError(f"Staging path is missing: {staging_path}")

        if atomic and os.path.ismount(dst_dir):
            self.logger.warning(
                "%s is a mount point and cannot be swapped atomically; restoring in place.",
                dst_dir,
            )
            atomic = False

        try:
            if atomic:
                self._restore_by_swap(staging_path, dst_dir)
            else:
                self.filesystem_service.clear_contents(dst_dir)
                self.filesystem_service.copy_contents(staging_path, dst_dir)
        except (OSError, shutil.Error) as exc:
            raise TransferError(f"Failed to restore {dst_dir} from {staging_path}: {exc}") from exc

    def _restore_by_swap(self, staging_path: str, dst_dir: str):
        dst_dir = os.path.normpath(dst_dir)
        parent = os.path.dirname(dst_dir)
        base = os.path.basename(dst_dir)
        incoming = tempfile.mkdtemp(prefix=f".{base}.restore-", dir=parent)

        try:
            self.filesystem_service.copy_contents(staging_path, incoming)
        except (OSError, shutil.Error):
            self.filesystem_service.cleanup_dir(incoming)
            raise

        discarded = os.path.join(parent, f".{base}.discard-{uuid.uuid4().hex[:8]}")
        os.rename(dst_dir, discarded)
        try:
            os.rename(incoming, dst_dir)
        except OSError:
            os.rename(discarded, dst_dir)
            self.filesystem_service.cleanup_dir(incoming)
            raise

        self.filesystem_service.cleanup_dir(discarded)
        self.logger.info("Swapped restored tree into %s", dst_dir)

    def reclaim(self, staging_path: Optional[str]):
        if staging_path:
            self.filesystem_service.cleanup_dir(staging_path)
            self.logger.info("Reclaimed staging directory %s", staging_path)
