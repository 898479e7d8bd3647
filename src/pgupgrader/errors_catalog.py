"""Actionable error catalog for pgupgrader."""

from typing import Dict

_ERROR_MESSAGES: Dict[str, Dict[str, str]] = {
    "missing_input": {
        "what": "Missing required input: {name}.",
        "next": "Pass `--{option}`, set it in the config file, or export `{envvar}`.",
    },
    "data_dir_not_found": {
        "what": "Data directory not found: {path}",
        "next": "Point `--data-dir` at an existing PostgreSQL data directory.",
    },
    "data_dir_not_writable": {
        "what": "Data directory is not writable: {path}",
        "next": "Run as root or as the owner of the data directory.",
    },
    "invalid_version": {
        "what": "Invalid version identifier `{value}` for {label}.",
        "next": "Use a Docker image tag such as `13`, `16.4` or `16-bookworm`.",
    },
    "run_locked": {
        "what": "Another upgrade run already holds the lock for {path}.",
        "next": "Wait for the other run to finish. Concurrent runs on one data directory are unsupported.",
    },
    "rolled_back": {
        "what": "Upgrade failed during {phase}; the data directory was restored from backup.",
        "next": "Inspect the log for the cause, fix it, and run the upgrade again.",
    },
    "rollback_failed": {
        "what": "Upgrade failed and the data directory could NOT be restored automatically.",
        "next": "Restore it manually from the preserved backup at `{staging_path}` before starting PostgreSQL.",
    },
}


def actionable_error(code: str, **kwargs: str) -> str:
    if code not in _ERROR_MESSAGES:
        raise KeyError(f"Unknown error catalog key: {code}")

    template = _ERROR_MESSAGES[code]
    what = template["what"].format(**kwargs)
    next_step = template["next"].format(**kwargs)
    return f"{what} Suggested action: {next_step}"
