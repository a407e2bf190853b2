"""Content-addressed evidence snapshots kept as local JSON files."""

import hashlib
import json
import logging
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

CONTENT_ID_PREFIX = "bafy"


def canonical_json(document: dict[str, Any]) -> str:
    return json.dumps(document, sort_keys=True, separators=(",", ":"))


def content_id_for(document: dict[str, Any]) -> str:
    digest = hashlib.sha256(canonical_json(document).encode("utf-8")).hexdigest()
    return f"{CONTENT_ID_PREFIX}{digest[:56]}"


class LocalSnapshotStore:
    """Same document in, same id out; ``get`` returns the document unchanged."""

    def __init__(self, directory: str | Path) -> None:
        self.directory = Path(directory)

    def _path(self, content_id: str) -> Path:
        if not content_id.startswith(CONTENT_ID_PREFIX) or not content_id[len(CONTENT_ID_PREFIX):].isalnum():
            raise ValueError(f"invalid content id: {content_id!r}")
        return self.directory / f"{content_id}.json"

    def put(self, document: dict[str, Any]) -> str:
        body = canonical_json(document)
        content_id = content_id_for(document)
        path = self._path(content_id)
        if not path.exists():
            self.directory.mkdir(parents=True, exist_ok=True)
            path.write_text(body, encoding="utf-8")
        logger.debug("Snapshot stored", extra={"content_id": content_id})
        return content_id

    def get(self, content_id: str) -> dict[str, Any]:
        """Raises FileNotFoundError for unknown ids."""
        return json.loads(self._path(content_id).read_text(encoding="utf-8"))
