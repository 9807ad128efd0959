"""
Import / export of the vault.

Export writes a versioned JSON document with every provider and every key in
plaintext, so a backup can be restored on a machine with another master key.
Import validates the whole document before anything is touched, re-seals
every key and merges with the current state by id (imported records win).

Document layout::

    {
      "version": "2.0.0",
      "exportedAt": "...",
      "providers": [...], "services": [...],        # services: legacy copy
      "apiKeys": [{"id", "providerId", "serviceId", "key", "name", "note",
                   "expiresAt", "createdAt", "updatedAt"}]
    }

Security Note:
    Export documents hold plaintext keys. Never log them.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional, TypeVar, Union
from datetime import datetime
from collections.abc import Iterable

import orjson
from pydantic import BaseModel, ConfigDict
from pydantic import ValidationError as ModelValidationError
from pydantic.alias_generators import to_camel

from .conf import EXPORT_VERSION
from .crypto.gateway import SecretCodec
from .crypto.secret import Envelope, parse_secret
from .exceptions import InvalidFileFormat
from .files import FileSaver
from .models import ApiKey, Provider, as_utc, generate_id, utcnow
from .store import VaultStore

logger = logging.getLogger("navigator.keyvault")

R = TypeVar("R")


def to_iso(value: Optional[datetime]) -> Optional[str]:
    """UTC timestamp in the ``2024-01-31T12:00:00.000Z`` form."""
    if value is None:
        return None
    value = as_utc(value)
    return value.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def merge_by_id(existing: Iterable[R], imported: Iterable[R]) -> list[R]:
    """Combine two record sets keyed by ``id``; imported records win."""
    merged: dict[str, R] = {}
    for record in existing:
        merged[record.id] = record
    for record in imported:
        merged[record.id] = record
    return list(merged.values())


class ExportedKey(BaseModel):
    """One key record of an export document."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: Optional[str] = None
    provider_id: Optional[str] = None
    service_id: Optional[str] = None
    key: str
    name: Optional[str] = None
    note: Optional[str] = None
    expires_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass
class ImportSummary:
    providers: int
    keys: int
    total_providers: int
    total_keys: int


class ImportExportMerger:
    """Versioned export and merge-by-id import of the vault."""

    def __init__(
        self,
        store: VaultStore,
        codec: SecretCodec,
        files: Optional[FileSaver] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._store = store
        self._codec = codec
        self._files = files
        self._clock = clock

    # ------------------------------------------------------------------
    # Export
    # ------------------------------------------------------------------

    @staticmethod
    def _provider_record(provider: Provider) -> dict:
        return {
            "id": provider.id,
            "name": provider.name,
            "baseUrl": provider.base_url,
            "apiType": provider.api_type.value,
            "createdAt": to_iso(provider.created_at),
            "updatedAt": to_iso(provider.updated_at),
        }

    async def _key_record(self, key: ApiKey) -> dict:
        # open() falls back to the stored value when this key cannot be decrypted
        plaintext = await self._codec.open(key.key)
        record = {
            "id": key.id,
            "providerId": key.provider_id,
            "serviceId": key.provider_id,
            "key": plaintext,
            "name": key.name,
            "note": key.note,
            "expiresAt": to_iso(key.expires_at),
            "createdAt": to_iso(key.created_at),
            "updatedAt": to_iso(key.updated_at),
        }
        return {k: v for k, v in record.items() if v is not None}

    async def export_document(self) -> dict:
        providers = [self._provider_record(p) for p in self._store.providers]
        keys = await asyncio.gather(
            *(self._key_record(k) for k in self._store.api_keys)
        )
        return {
            "version": EXPORT_VERSION,
            "exportedAt": to_iso(self._clock()),
            "providers": providers,
            "services": providers,
            "apiKeys": list(keys),
        }

    def export_file_name(self) -> str:
        return f"keyvault-backup-{self._clock():%Y-%m-%d}.json"

    async def export_data(self) -> str:
        """Build the export document and hand it to the file capability.

        Returns:
            whatever the file capability reports (the saved path).
        """
        if self._files is None:
            raise RuntimeError("No file capability configured for export")
        document = await self.export_document()
        content = orjson.dumps(document, option=orjson.OPT_INDENT_2).decode("utf-8")
        saved = await self._files.save_file(self.export_file_name(), content)
        logger.info(
            "Vault exported: %d provider(s), %d key(s)",
            len(document["providers"]), len(document["apiKeys"]),
        )
        return saved

    # ------------------------------------------------------------------
    # Import
    # ------------------------------------------------------------------

    @staticmethod
    def parse_document(content: Union[str, bytes, dict]) -> tuple[list[Provider], list[ExportedKey]]:
        """Validate an export document.

        Raises:
            InvalidFileFormat: on any structural problem.
        """
        if isinstance(content, dict):
            data: Any = content
        else:
            try:
                data = orjson.loads(content)
            except orjson.JSONDecodeError as err:
                raise InvalidFileFormat(f"Not a JSON document: {err}") from err
        if not isinstance(data, dict):
            raise InvalidFileFormat("Document root must be an object")
        if not data.get("version"):
            raise InvalidFileFormat("Missing version marker")
        raw_providers = data.get("providers")
        if raw_providers is None:
            raw_providers = data.get("services")
        if not isinstance(raw_providers, list):
            raise InvalidFileFormat("Missing provider list")
        raw_keys = data.get("apiKeys")
        if not isinstance(raw_keys, list):
            raise InvalidFileFormat("Missing apiKeys list")
        try:
            providers = [Provider.model_validate(p) for p in raw_providers]
            keys = [ExportedKey.model_validate(k) for k in raw_keys]
        except ModelValidationError as err:
            raise InvalidFileFormat(f"Invalid record: {err}") from err
        return providers, keys

    async def _reseal(self, value: str) -> str:
        """Seal imported key material.

        An envelope in the document is opened first; if this vault cannot
        decrypt it, it is kept as is (it is ciphertext already).
        """
        if isinstance(parse_secret(value), Envelope):
            opened = await self._codec.open(value)
            if opened == value:
                logger.warning("Imported key is an envelope this vault cannot open, kept sealed")
                return value
            value = opened
        return await self._codec.seal(value)

    async def import_data(self, content: Union[str, bytes, dict]) -> ImportSummary:
        """Validate, re-seal and merge an export document into the vault.

        Nothing is changed unless the whole document is valid.

        Raises:
            InvalidFileFormat: the document is malformed.
        """
        providers, records = self.parse_document(content)
        merged_providers = merge_by_id(self._store.providers, providers)
        provider_ids = {p.id for p in merged_providers}

        now = self._clock()
        resolved = []
        for record in records:
            provider_id = record.provider_id or record.service_id
            if not provider_id:
                raise InvalidFileFormat("Key record without providerId")
            if provider_id not in provider_ids:
                raise InvalidFileFormat(
                    f"Key record references unknown provider {provider_id}"
                )
            resolved.append((record, provider_id))

        sealed = await asyncio.gather(
            *(self._reseal(record.key) for record, _ in resolved)
        )
        imported_keys = []
        for (record, provider_id), key in zip(resolved, sealed):
            created = record.created_at or now
            imported_keys.append(ApiKey(
                id=record.id or generate_id(),
                provider_id=provider_id,
                key=key,
                name=record.name,
                note=record.note,
                expires_at=record.expires_at,
                # cached models and test results are never imported
                models=None,
                models_updated_at=None,
                created_at=created,
                updated_at=record.updated_at or created,
            ))

        merged_keys = merge_by_id(self._store.api_keys, imported_keys)
        self._store.forget(k.id for k in imported_keys)
        await self._store.import_data(merged_providers, merged_keys)
        logger.info(
            "Vault import merged %d provider(s), %d key(s)",
            len(providers), len(imported_keys),
        )
        return ImportSummary(
            providers=len(providers),
            keys=len(imported_keys),
            total_providers=len(merged_providers),
            total_keys=len(merged_keys),
        )
