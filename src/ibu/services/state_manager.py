"""State manager for the persisted upgrade resource."""

import json
from pathlib import Path
from typing import Optional
import logging

from pydantic import ValidationError

from ibu.models.upgrade import ImageBasedUpgrade


class StateManager:
    """Singleton holder of the one ImageBasedUpgrade resource.

    Manages:
    - The in-memory resource served by GET /imagebasedupgrade
    - Its persisted copy, which survives agent restarts and reboots

    Only the stage controller writes through this class.
    """

    _instance: Optional["StateManager"] = None

    def __new__(cls, state_file_path: Optional[Path] = None):
        """Implement singleton pattern."""
        if cls._instance is None:
            cls._instance = super().__new__(cls)
            cls._instance._initialized = False
        return cls._instance

    def __init__(self, state_file_path: Optional[Path] = None):
        """Initialize state manager (only once due to singleton).

        Args:
            state_file_path: Where the resource is persisted
        """
        if self._initialized:
            return

        self.logger = logging.getLogger("ibu.state_manager")
        self.state_file_path = Path(state_file_path or "./tmp/ibu.json")
        self._resource = ImageBasedUpgrade()

        self._initialized = True
        self.logger.info("StateManager initialized")

    def get_resource(self) -> ImageBasedUpgrade:
        """Return a private copy of the current resource."""
        return self._resource.model_copy(deep=True)

    def save_resource(self, resource: ImageBasedUpgrade) -> None:
        """Replace the resource and persist it.

        Raises:
            OSError: If the state file cannot be written
        """
        try:
            self.state_file_path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self.state_file_path.with_suffix(".tmp")
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(resource.model_dump(mode="json", by_alias=True), f, indent=2)
            tmp_path.replace(self.state_file_path)
        except Exception as e:
            self.logger.error(f"Failed to save state file: {e}", exc_info=True)
            raise

        self._resource = resource.model_copy(deep=True)
        self.logger.debug(
            f"Saved resource: generation={resource.metadata.generation}, "
            f"stage={resource.spec.stage.value}"
        )

    def load_state(self) -> Optional[ImageBasedUpgrade]:
        """Load the persisted resource.

        Returns:
            The resource if the file exists and is valid, None otherwise
        """
        if not self.state_file_path.exists():
            self.logger.debug("No state file found")
            return None

        try:
            with open(self.state_file_path, "r", encoding="utf-8") as f:
                data = json.load(f)
            resource = ImageBasedUpgrade.model_validate(data)
        except (json.JSONDecodeError, ValidationError, OSError) as e:
            self.logger.error(f"Failed to load state file: {e}", exc_info=True)
            # Corrupted state file, start over from a fresh resource
            self.state_file_path.unlink(missing_ok=True)
            return None

        self._resource = resource
        self.logger.info(
            f"Loaded resource: generation={resource.metadata.generation}, "
            f"stage={resource.spec.stage.value}"
        )
        return resource.model_copy(deep=True)
