"""
Steward - local-first PRD state tracking.

Tracks task/progress state per repository and carries it between machines
through versioned sync bundles, without a central server.
"""

__version__ = "0.9.0"

from steward.core.config.models import StewardConfig
from steward.core.sync.schema import SyncBundle

__all__ = ["StewardConfig", "SyncBundle", "__version__"]
