"""Filesystem helpers for pgupgrader."""

import logging
import os
import shutil
import sys

from rich.console import Console


class FileSystemService:
    """Encapsulates file and directory side effects."""

    def __init__(self, logger: logging.Logger, console: Console):
        self.logger = logger
        self.console = console

    def set_permissions(self, path: str, mode: int):
        if sys.platform == "win32":
            return

        try:
            os.chmod(path, mode)
        except OSError as exc:
            self.logger.warning("Could not set permissions on %s: %s", path, exc)

    def is_empty_dir(self, path: str) -> bool:
        return os.path.isdir(path) and not os.listdir(path)

    def clear_contents(self, path: str):
        """Delete everything inside ``path`` but keep ``path`` itself (it may be a mount point)."""
        for entry in os.scandir(path):
            if entry.is_dir(follow_symlinks=False):
                shutil.rmtree(entry.path)
            else:
                os.unlink(entry.path)

    def copy_contents(self, src: str, dst: str):
        """Copy the contents of ``src`` into existing ``dst`` like ``cp -a src/* dst/``.

        Modes and timestamps always survive; ownership survives where the
        process is allowed to chown. Symlinks are copied as links.
        """
        for entry in os.scandir(src):
            target = os.path.join(dst, entry.name)
            if entry.is_dir(follow_symlinks=False):
                shutil.copytree(entry.path, target, symlinks=True, copy_function=shutil.copy2)
            else:
                shutil.copy2(entry.path, target, follow_symlinks=False)

        shutil.copystat(src, dst)
        self.copy_ownership(src, dst)

    def copy_ownership(self, src: str, dst: str):
        if not hasattr(os, "lchown"):
            return

        pairs = [(src, dst)]
        for current_root, dirs, files in os.walk(src):
            relative = os.path.relpath(current_root, src)
            for name in dirs + files:
                pairs.append(
                    (os.path.join(current_root, name), os.path.normpath(os.path.join(dst, relative, name)))
                )

        skipped = 0
        for source_path, target_path in pairs:
            stat = os.lstat(source_path)
            try:
                os.lchown(target_path, stat.st_uid, stat.st_gid)
            except PermissionError:
                skipped += 1

        if skipped:
            self.logger.warning(
                "Ownership could not be preserved for %s path(s) under %s; run as root to keep it.",
                skipped,
                dst,
            )

    def cleanup_dir(self, path: str):
        if os.path.exists(path):
            try:
                shutil.rmtree(path)
                self.logger.debug("Removed directory: %s", path)
            except OSError as exc:
                message = f"Warning: Could not remove {path}: {exc}"
                self.console.print(f"[yellow]{message}[/yellow]")
                self.logger.warning(message)
