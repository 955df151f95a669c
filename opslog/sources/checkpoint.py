"""Checkpoint management for the batch classifier.

A checkpoint is the ordered list of fully processed messages written so far. It is
stored as a JSON array, one element per message::

    [{"message": {...}, "classification": {...}, "timestamp": "...", "processed_at": "..."}, ...]

The file is always rewritten whole and atomically, so a crash between writes leaves
the previous checkpoint intact.
"""

import logging
import os
from pathlib import Path
from typing import List, Optional, Sequence, Union

from pydantic import ValidationError

from opslog.errors import DataIntegrityError
from opslog.models.records import ClassifiedMessage
from opslog.utils.atomic_json import read_json, write_json_atomic

logger = logging.getLogger(__name__)


class CheckpointStore:
    """File-backed checkpoint for one classification run.

    Within a run the stored sequence only grows: ``save`` refuses a sequence shorter
    than the one it last wrote.

    Parameters:
        path: Location of the checkpoint JSON file.
    """

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        self._last_length: Optional[int] = None

    def exists(self) -> bool:
        return self.path.exists()

    def load(self) -> List[ClassifiedMessage]:
        """Load the stored sequence; an absent file is an empty checkpoint.

        Raises:
            DataIntegrityError: If the file is not a valid checkpoint array.
        """
        try:
            data = read_json(str(self.path), default=[])
        except ValueError as e:
            raise DataIntegrityError(f"Checkpoint {self.path} is not valid JSON: {e}") from e
        if not isinstance(data, list):
            raise DataIntegrityError(f"Checkpoint {self.path} must contain a JSON array")
        try:
            entries = [ClassifiedMessage.model_validate(item) for item in data]
        except ValidationError as e:
            raise DataIntegrityError(f"Checkpoint {self.path} has invalid entries: {e}") from e
        self._last_length = len(entries)
        logger.info(f"Loaded checkpoint {self.path} with {len(entries)} entries")
        return entries

    def save(self, entries: Sequence[ClassifiedMessage]) -> None:
        """Atomically rewrite the checkpoint with `entries`."""
        if self._last_length is not None and len(entries) < self._last_length:
            raise DataIntegrityError(
                f"Refusing to shrink checkpoint {self.path} from {self._last_length} to {len(entries)} entries"
            )
        payload = [entry.model_dump(mode="json") for entry in entries]
        write_json_atomic(str(self.path), payload)
        self._last_length = len(entries)
        logger.debug(f"Checkpoint saved: {self.path} ({len(entries)} entries)")

    def delete(self) -> None:
        """Remove the checkpoint file, if present."""
        if self.path.exists():
            os.remove(self.path)
            logger.info(f"Deleted checkpoint {self.path}")
        self._last_length = None
