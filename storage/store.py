"""
Durable JSON store for the engine state.

load() runs the whole recovery path: read, detect version, migrate,
validate, and fall back to a default state on irrecoverable corruption.
The corrupt file is copied into BACKUP_DIR before anything overwrites it.
"""

import json
import logging
import os
import shutil
import tempfile
import threading
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

import config
from core.errors import MigrationFailure, PersistenceFailure
from core.state import EngineState
from storage.migration import CURRENT_VERSION, detect_version, migrate
from storage.validation import validate_state
from tracking.clock import utc_now

logger = logging.getLogger(__name__)


@dataclass
class LoadResult:
    """
    Outcome of StateStore.load().

    Attributes:
        state: The state to run with (default state after a fallback).
        migrated_from: Source version if a migration ran, else None.
        warnings: Entries filtered or clamped during validation.
        errors: Why the payload was rejected (non-empty iff fell_back).
        suggestions: Housekeeping hints from validation.
        fell_back: True if the payload was replaced by the default state.
        backup_path: Where the rejected or pre-migration payload was copied.
        is_new: True if there was no persisted state yet.
    """

    state: EngineState
    migrated_from: Optional[int] = None
    warnings: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    suggestions: List[str] = field(default_factory=list)
    fell_back: bool = False
    backup_path: Optional[Path] = None
    is_new: bool = False


class StateStore:
    """Reads and writes the versioned state document."""

    def __init__(self, path: Optional[Path] = None, backup_dir: Optional[Path] = None):
        self.path: Path = Path(path) if path is not None else config.STATE_FILE
        self.backup_dir: Path = Path(backup_dir) if backup_dir is not None else config.BACKUP_DIR
        self._lock = threading.Lock()

    def exists(self) -> bool:
        return self.path.exists()

    def read_raw(self) -> Optional[Any]:
        """
        Read the persisted payload without interpreting it.

        Returns:
            Parsed JSON, or None if no state file exists.

        Raises:
            MigrationFailure: If the file can't be read or isn't valid JSON.
        """
        if not self.path.exists():
            return None
        try:
            with open(self.path, 'r') as f:
                return json.load(f)
        except json.JSONDecodeError as e:
            raise MigrationFailure(f"State file is not valid JSON: {e}") from e
        except (IOError, OSError) as e:
            raise MigrationFailure(f"State file could not be read: {e}") from e

    def write(self, payload: Dict[str, Any]) -> None:
        """
        Save the payload atomically (temp file + rename).

        Raises:
            PersistenceFailure: If the write fails; the previous file is
                left in place.
        """
        with self._lock:
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                temp_fd, temp_path = tempfile.mkstemp(
                    suffix='.tmp',
                    prefix='orchard_state_',
                    dir=self.path.parent
                )
                try:
                    with os.fdopen(temp_fd, 'w') as f:
                        json.dump(payload, f, indent=2)

                    # Atomic rename (POSIX) or replace (cross-platform)
                    try:
                        os.replace(temp_path, self.path)
                    except OSError:
                        if self.path.exists():
                            self.path.unlink()
                        os.rename(temp_path, self.path)

                    logger.debug(f"Saved engine state to {self.path}")
                except Exception:
                    # Clean up temp file on error
                    try:
                        os.unlink(temp_path)
                    except OSError:
                        pass
                    raise
            except (IOError, OSError, TypeError, ValueError) as e:
                logger.error(f"Failed to save engine state to {self.path}: {e}")
                raise PersistenceFailure(
                    f"Failed to save engine state: {e}", {"path": str(self.path)}
                ) from e

    def save(self, state: EngineState) -> None:
        self.write(state.to_dict())

    def preserve(self, label: str, now: Optional[datetime] = None) -> Optional[Path]:
        """
        Copy the current state file into the backup directory.

        Returns:
            Backup path, or None if there was nothing to copy or the copy failed.
        """
        if not self.path.exists():
            return None
        stamp = (now or utc_now()).strftime("%Y%m%dT%H%M%S")
        target = self.backup_dir / f"{self.path.stem}.{label}-{stamp}{self.path.suffix}"
        try:
            self.backup_dir.mkdir(parents=True, exist_ok=True)
            shutil.copy2(self.path, target)
        except (IOError, OSError) as e:
            logger.error(f"Could not preserve {self.path} as {target}: {e}")
            return None
        logger.info(f"Preserved state file as {target}")
        return target

    def preserve_corrupt(self, now: Optional[datetime] = None) -> Optional[Path]:
        return self.preserve("corrupt", now)

    def load(self, now: Optional[datetime] = None) -> LoadResult:
        """
        Load, migrate and validate the persisted state.

        Never raises for bad data: unreadable or structurally corrupt
        payloads are preserved in BACKUP_DIR and replaced by the default
        state, with the reasons in LoadResult.errors.
        """
        now = now or utc_now()
        try:
            raw = self.read_raw()
            if raw is None:
                logger.info("No saved state found; starting fresh")
                return LoadResult(state=EngineState(), is_new=True)

            version = detect_version(raw)
            migrated = migrate(raw, now)
        except MigrationFailure as e:
            return self._fall_back([e.message], now)

        result = validate_state(migrated)
        if not result.is_valid:
            return self._fall_back(result.errors, now, warnings=result.warnings)

        load_result = LoadResult(
            state=result.state,
            warnings=result.warnings,
            suggestions=result.suggestions,
        )
        if version != CURRENT_VERSION:
            load_result.migrated_from = version
            load_result.backup_path = self.preserve(f"v{version}", now)
            logger.info(f"Migrated saved state from v{version} to v{CURRENT_VERSION}")
        return load_result

    def _fall_back(self, errors: List[str], now: datetime, warnings: Optional[List[str]] = None) -> LoadResult:
        logger.error(f"Saved state is unusable, falling back to defaults: {errors}")
        backup = self.preserve_corrupt(now)
        return LoadResult(
            state=EngineState(),
            warnings=list(warnings or []),
            errors=list(errors),
            fell_back=True,
            backup_path=backup,
        )
