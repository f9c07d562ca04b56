"""Durable resume position for long-running pipeline runs."""

import logging
import os
from pathlib import Path

from pydantic import ValidationError

from beverage_sync.schemas.run import Checkpoint, utc_now_iso

logger = logging.getLogger(__name__)


class CheckpointStore:
    """
    JSON checkpoint file for one run kind.

    Writes go to a sibling temp file and are renamed into place, so a
    crash mid-write leaves either the old or the new checkpoint.
    """

    def __init__(self, path: Path):
        self.path = path

    def load(self) -> Checkpoint | None:
        """Return the saved checkpoint, or None if absent or unreadable."""
        if not self.path.exists():
            return None
        try:
            return Checkpoint.model_validate_json(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError, ValidationError) as e:
            logger.warning(f"Ignoring unreadable checkpoint {self.path}: {e}")
            return None

    def save(self, checkpoint: Checkpoint) -> Checkpoint:
        checkpoint.last_batch_at = utc_now_iso()
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_name(f"{self.path.name}.tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            f.write(checkpoint.model_dump_json(by_alias=True, indent=2))
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, self.path)
        return checkpoint

    def clear(self) -> None:
        try:
            self.path.unlink()
            logger.info(f"Checkpoint cleared: {self.path}")
        except FileNotFoundError:
            pass

    def exists(self) -> bool:
        return self.path.exists()
