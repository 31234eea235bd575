"""JSON persistence of ``IterationState``, one file per change."""

from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path

from pydantic import ValidationError

from maker_checker.errors import StateCorruptionError
from maker_checker.models.state import IterationState, change_key

log = logging.getLogger(__name__)


def atomic_write_text(path: Path, text: str) -> None:
    """Write *text* to a temp file beside *path*, then rename it into place."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path: Path | None = None
    try:
        with tempfile.NamedTemporaryFile(
            mode="w",
            encoding="utf-8",
            dir=path.parent,
            delete=False,
            prefix=f"{path.name}.",
            suffix=".tmp",
        ) as tmp_file:
            tmp_path = Path(tmp_file.name)
            tmp_file.write(text)
            tmp_file.flush()
            os.fsync(tmp_file.fileno())
        os.replace(tmp_path, path)
        tmp_path = None
    finally:
        if tmp_path is not None:
            tmp_path.unlink(missing_ok=True)


class StateStore:
    """Reads and writes ``<root>/state/<repo>_<change>.json``.

    Stop requests are marker files next to the state so that an operator
    command issued from another process is seen at the top of the next
    iteration.
    """

    def __init__(self, root: Path) -> None:
        self.root = root / "state"

    def path(self, repository: str, change_id: int) -> Path:
        return self.root / f"{change_key(repository, change_id)}.json"

    def _stop_marker(self, repository: str, change_id: int) -> Path:
        return self.root / f"{change_key(repository, change_id)}.stop"

    def save(self, state: IterationState) -> None:
        atomic_write_text(self.path(state.repository, state.change_id), state.model_dump_json(indent=2))

    def _read(self, path: Path) -> IterationState:
        try:
            return IterationState.model_validate_json(path.read_text(encoding="utf-8"))
        except (ValidationError, ValueError, UnicodeDecodeError) as exc:
            raise StateCorruptionError(f"{path}: {exc}") from exc

    def load(self, repository: str, change_id: int) -> IterationState | None:
        """Return the saved state, or None when there is none or it cannot be decoded."""
        path = self.path(repository, change_id)
        if not path.exists():
            return None
        try:
            return self._read(path)
        except StateCorruptionError as exc:
            log.warning("Ignoring corrupt state file, starting fresh: %s", exc)
            return None

    def delete(self, repository: str, change_id: int) -> None:
        self.path(repository, change_id).unlink(missing_ok=True)
        self.clear_stop(repository, change_id)

    def list_active(self) -> list[IterationState]:
        """Every readable saved state whose loop has not reached a terminal phase."""
        if not self.root.is_dir():
            return []
        active: list[IterationState] = []
        for path in sorted(self.root.glob("*.json")):
            try:
                state = self._read(path)
            except StateCorruptionError as exc:
                log.warning("Skipping corrupt state file: %s", exc)
                continue
            if not state.is_terminal:
                active.append(state)
        return active

    # -- stop requests ------------------------------------------------------

    def request_stop(self, repository: str, change_id: int) -> None:
        marker = self._stop_marker(repository, change_id)
        marker.parent.mkdir(parents=True, exist_ok=True)
        marker.touch()

    def stop_requested(self, repository: str, change_id: int) -> bool:
        return self._stop_marker(repository, change_id).exists()

    def clear_stop(self, repository: str, change_id: int) -> None:
        self._stop_marker(repository, change_id).unlink(missing_ok=True)
