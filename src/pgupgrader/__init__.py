"""
pgupgrader - In-place PostgreSQL major-version upgrades using Docker
"""

__version__ = "0.1.0"

from .core import PostgresUpgrader, UpgraderError
from .models import Outcome, UpgradeResult

__all__ = ["PostgresUpgrader", "UpgraderError", "Outcome", "UpgradeResult"]
