"""
Vault Storage — persisted state document and its schema migrations.

The persisted document is ``{"state": {...}, "version": N}`` where state
holds exactly providers, apiKeys and selectedProviderId.

Schema versions:
    1  legacy "service" shape: services, serviceId, selectedServiceId
    2  current: providers, providerId, selectedProviderId

Each migration is a pure function from version N to N+1; ``migrate`` chains
them until the current version.
"""
import os
import logging
import tempfile
from pathlib import Path
from typing import Any, Callable, Optional, Protocol, Union

import orjson

from .conf import SCHEMA_VERSION
from .exceptions import VaultError

logger = logging.getLogger("navigator.keyvault")


class StateStorage(Protocol):
    async def load(self) -> Optional[dict]:
        ...

    async def save(self, document: dict) -> None:
        ...


# ---------------------------------------------------------------------------
# Migrations
# ---------------------------------------------------------------------------

def migrate_v1_to_v2(state: dict) -> dict:
    """Rename the legacy service concept onto providers."""
    keys = []
    for key in state.get("apiKeys") or []:
        record = {k: v for k, v in key.items() if k != "serviceId"}
        record["providerId"] = key.get("providerId", key.get("serviceId"))
        keys.append(record)
    return {
        "providers": list(state.get("providers", state.get("services")) or []),
        "apiKeys": keys,
        "selectedProviderId": state.get(
            "selectedProviderId", state.get("selectedServiceId")
        ),
    }


MIGRATIONS: dict[int, Callable[[dict], dict]] = {
    1: migrate_v1_to_v2,
}


def _detect_version(document: dict, state: dict) -> int:
    version = document.get("version")
    if isinstance(version, int):
        return max(version, 1)
    return SCHEMA_VERSION if "providers" in state else 1


def migrate(document: Optional[dict]) -> dict:
    """Bring a persisted document up to the current schema.

    Args:
        document: the raw persisted document, wrapped (``{"state", "version"}``)
            or bare legacy state.

    Returns:
        state dict at SCHEMA_VERSION.

    Raises:
        VaultError: the document was written by a newer schema.
    """
    if not document:
        return {}
    state = document.get("state")
    if not isinstance(state, dict):
        state = document
    version = _detect_version(document, state)
    if version > SCHEMA_VERSION:
        raise VaultError(
            f"Vault state schema v{version} is newer than supported v{SCHEMA_VERSION}"
        )
    while version < SCHEMA_VERSION:
        logger.info("Migrating vault state from v%d to v%d", version, version + 1)
        state = MIGRATIONS[version](state)
        version += 1
    return state


def wrap(state: dict) -> dict:
    return {"state": state, "version": SCHEMA_VERSION}


# ---------------------------------------------------------------------------
# Backends
# ---------------------------------------------------------------------------

class JsonFileStorage:
    """Stores the state document as a JSON file, replaced atomically."""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)

    async def load(self) -> Optional[dict]:
        if not self.path.exists():
            return None
        data = self.path.read_bytes()
        if not data.strip():
            return None
        return orjson.loads(data)

    async def save(self, document: dict) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(
            dir=self.path.parent, prefix=f".{self.path.name}.", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "wb") as fp:
                fp.write(orjson.dumps(document))
            os.chmod(tmp, 0o600)
            os.replace(tmp, self.path)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise


class MemoryStorage:
    """Keeps the serialized document in memory; for ephemeral vaults."""

    def __init__(self, document: Optional[dict] = None):
        self._blob: Optional[bytes] = orjson.dumps(document) if document else None

    async def load(self) -> Optional[dict[str, Any]]:
        return orjson.loads(self._blob) if self._blob else None

    async def save(self, document: dict) -> None:
        self._blob = orjson.dumps(document)
