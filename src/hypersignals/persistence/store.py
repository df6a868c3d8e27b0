"""State document store: a load/save port and its JSON file adapter."""

from __future__ import annotations

import json
import os
import re
import tempfile
from pathlib import Path
from typing import Any, Callable, Protocol, TypeVar

from pydantic import BaseModel, ValidationError

from hypersignals.errors import NotFoundError
from hypersignals.utils.logging import get_logger

logger = get_logger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

LEARNING_KEY = "learning-state"
PAPER_KEY = "paper-trading"
COIN_CONFIGS_KEY = "coin-configs"

_KEY_PATTERN = re.compile(r"^[A-Za-z0-9_.-]+$")


class StateStore(Protocol):
    def load(self, key: str) -> dict[str, Any]:
        """Return the stored document or raise ``NotFoundError``."""
        ...

    def save(self, key: str, document: dict[str, Any]) -> None: ...


class JsonFileStateStore:
    """One ``<key>.json`` file per document under ``data_dir``."""

    def __init__(self, data_dir: Path) -> None:
        self._data_dir = data_dir
        self._data_dir.mkdir(parents=True, exist_ok=True)

    def load(self, key: str) -> dict[str, Any]:
        path = self._path_for(key)
        if not path.exists():
            raise NotFoundError(f"state_not_found: {key}")
        return json.loads(path.read_text(encoding="utf-8"))

    def save(self, key: str, document: dict[str, Any]) -> None:
        """Write atomically via a temp file in the same directory."""
        path = self._path_for(key)
        fd, tmp_name = tempfile.mkstemp(dir=self._data_dir, prefix=f".{key}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(json.dumps(document, ensure_ascii=True))
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def _path_for(self, key: str) -> Path:
        if not _KEY_PATTERN.match(key):
            raise ValueError(f"invalid_state_key: {key}")
        return self._data_dir / f"{key}.json"


def load_or_default(
    store: StateStore,
    key: str,
    model: type[ModelT],
    default_factory: Callable[[], ModelT],
) -> ModelT:
    """Load and validate a document, falling back to its default state.

    A missing document is the normal first-run case. Unreadable or invalid
    documents are logged and replaced by the default.
    """
    try:
        return model.model_validate(store.load(key))
    except NotFoundError:
        logger.info("state_default_used", key=key)
    except (OSError, ValueError, ValidationError) as exc:
        logger.warning("state_load_failed", key=key, error=str(exc))
    return default_factory()


def save_quietly(store: StateStore, key: str, state: BaseModel) -> bool:
    """Persist a document; failures are logged, never raised."""
    try:
        store.save(key, state.model_dump(mode="json"))
    except (OSError, ValueError, TypeError) as exc:
        logger.warning("state_save_failed", key=key, error=str(exc))
        return False
    return True
