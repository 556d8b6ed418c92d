from __future__ import annotations

from dataclasses import dataclass
import json
import logging
from pathlib import Path

logger = logging.getLogger(__name__)

DEFAULT_ARTIFACT = Path("sandbox.config.json")
URL_KEY = "WORDPRESS_URL"
ID_KEY = "SANDBOX_ID"


@dataclass(frozen=True)
class BuildArtifact:
    sandbox_url: str | None
    environment_id: str


def write_artifact(path: Path, *, sandbox_url: str, environment_id: str) -> Path:
    path.write_text(json.dumps({URL_KEY: sandbox_url, ID_KEY: environment_id}, indent=2) + "\n", encoding="utf-8")
    logger.info("Wrote build artifact %s (environment_id=%s)", path, environment_id)
    return path


def read_artifact(path: Path) -> BuildArtifact | None:
    """Return the persisted environment, or None when there is nothing to clean up."""
    if not path.exists():
        logger.info("No build artifact at %s", path)
        return None
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ValueError(f"Invalid JSON in {path}: {exc.msg}") from exc
    if not isinstance(payload, dict) or not payload.get(ID_KEY):
        logger.info("No %s in %s", ID_KEY, path)
        return None
    return BuildArtifact(sandbox_url=payload.get(URL_KEY), environment_id=str(payload[ID_KEY]))


def remove_artifact(path: Path) -> bool:
    if not path.exists():
        return False
    path.unlink()
    logger.info("Removed build artifact %s", path)
    return True
