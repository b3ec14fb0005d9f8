# Ampel: configuration
# Override paths and behavior via config.yaml or the AMPEL_DB environment variable.

import logging
import os
import sys
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Optional

import yaml

CONFIG_PATH = Path(__file__).parent / "config.yaml"


@dataclass
class Config:
    """Runtime configuration for the notes session and board server."""

    # Storage
    db_path: str = "~/.local/share/ampel/notes.db"

    # Logging
    log_level: str = "INFO"

    # Re-read affected documents right before committing a cascade
    recheck_cascades: bool = False

    # Board server
    server_host: str = "127.0.0.1"
    server_port: int = 3000
    api_secret_env: str = "AMPEL_API_SECRET"

    def resolve_paths(self):
        """Apply the environment override and expand ~."""
        env = os.environ.get("AMPEL_DB")
        if env:
            self.db_path = env
        self.db_path = str(Path(self.db_path).expanduser())

    @property
    def api_secret(self) -> str:
        return os.environ.get(self.api_secret_env, "")

    @classmethod
    def load(cls, path: Optional[str] = None) -> "Config":
        """Load config from YAML file, falling back to defaults."""
        cfg_path = Path(path) if path else CONFIG_PATH
        if cfg_path.exists():
            try:
                with open(cfg_path, "r") as f:
                    data = yaml.safe_load(f) or {}
                known = {f.name for f in fields(cls)}
                cfg = cls(**{k: v for k, v in data.items() if k in known})
            except (yaml.YAMLError, TypeError) as e:
                logging.getLogger(__name__).warning(f"Ignoring bad config {cfg_path}: {e}")
                cfg = cls()
        else:
            cfg = cls()
        cfg.resolve_paths()
        return cfg


def setup_logging(cfg: Config, name: str = "ampel") -> None:
    logging.basicConfig(
        level=getattr(logging, str(cfg.log_level).upper(), logging.INFO),
        format=f"%(asctime)s [{name}] %(levelname)s: %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )
