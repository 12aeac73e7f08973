# hypercorn_core/config.py
from __future__ import annotations
from dataclasses import dataclass
import os


@dataclass
class NodeConfig:
    """
    Runtime configuration for a node.

    Every field can be supplied through the environment:
        HYPERCORN_STORAGE            root directory of the node
        HYPERCORN_STORAGE_PROVIDER   sqlite | memory
        HYPERCORN_TRANSPORT          local | http | kafka
        HYPERCORN_LOG_LEVEL          DEBUG | INFO | WARNING | ...
        HYPERCORN_FETCH_TIMEOUT      seconds a lookup waits for entries from a peer
    """
    storage: str = "data"
    storage_provider: str = "sqlite"
    transport: str = "local"
    log_level: str = "INFO"
    fetch_timeout: float = 2.0

    @classmethod
    def from_env(cls) -> "NodeConfig":
        return cls(
            storage=os.getenv("HYPERCORN_STORAGE", "data"),
            storage_provider=os.getenv("HYPERCORN_STORAGE_PROVIDER", "sqlite").lower(),
            transport=os.getenv("HYPERCORN_TRANSPORT", "local").lower(),
            log_level=os.getenv("HYPERCORN_LOG_LEVEL", "INFO").upper(),
            fetch_timeout=float(os.getenv("HYPERCORN_FETCH_TIMEOUT", "2.0")),
        )
