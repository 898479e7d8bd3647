"""Bounded-retry readiness polling for started instances."""

import time
from typing import Callable

from pgupgrader.errors import NotReadyError


class ReadinessPoller:
    """Blocks until a probe reports ready or the retry budget is spent.

    The budget is fixed per poller; callers only choose which instance to poll.
    """

    def __init__(
        self,
        logger,
        console,
        probe: Callable[[str], bool],
        max_retries: int,
        interval_seconds: float,
    ):
        if max_retries < 1:
            raise ValueError("max_retries must be at least 1")
        self.logger = logger
        self.console = console
        self.probe = probe
        self.max_retries = max_retries
        self.interval_seconds = interval_seconds

    def wait(self, container_name: str) -> int:
        """Return the attempt number that succeeded; raise ``NotReadyError`` otherwise."""
        self.console.print(f"[yellow]Waiting for {container_name} to be ready...[/yellow]")

        for attempt in range(1, self.max_retries + 1):
            if self.probe(container_name):
                self.logger.info("%s is ready (attempt %s/%s).", container_name, attempt, self.max_retries)
                self.console.print(f"[green]{container_name} is ready.[/green]")
                return attempt

            self.logger.debug("%s not ready yet (attempt %s/%s).", container_name, attempt, self.max_retries)
            if attempt < self.max_retries:
                time.sleep(self.interval_seconds)

        raise NotReadyError(
            f"{container_name} did not become ready after {self.max_retries} attempts "
            f"({self.interval_seconds:g}s apart)."
        )
