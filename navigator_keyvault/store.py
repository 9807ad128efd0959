"""
VaultStore — providers, keys and their mutation contracts.

Provides the state operations of the key vault:
- ``add_provider`` / ``update_provider`` / ``delete_provider`` (cascades keys)
- ``add_key`` / ``update_key`` / ``update_key_models`` / ``delete_key``
- ``import_data``: atomic wholesale replace, used by the import merger
- ``load()``: factory that reads and migrates the persisted document

Key material is sealed through the ``SecretCodec`` before it is stored; the
store never keeps plaintext in its persisted state.

Security Note:
    Never log key values. Only log ids and operation names.
"""
import logging
from typing import Any, Callable, Optional, TypeVar, Union
from datetime import datetime
from collections.abc import Iterable

from pydantic import BaseModel
from pydantic import ValidationError as ModelValidationError

from .crypto.gateway import SecretCodec
from .exceptions import NotFound, ValidationError
from .models import (
    ApiKey,
    ApiModel,
    KeyForm,
    KeyPatch,
    Provider,
    ProviderForm,
    ProviderPatch,
    ProviderWithKeys,
    generate_id,
    utcnow,
)
from .state import VaultState
from .status import build_provider_with_keys
from .storage import StateStorage, migrate, wrap

logger = logging.getLogger("navigator.keyvault")

M = TypeVar("M", bound=BaseModel)


def coerce(model: type[M], data: Union[M, dict, None], **kwargs: Any) -> M:
    """Validate input into ``model``, raising the vault ValidationError."""
    if isinstance(data, model):
        return data
    try:
        return model.model_validate({**(data or {}), **kwargs})
    except ModelValidationError as err:
        raise ValidationError(str(err)) from err


class VaultStore:
    """Owns provider/key state and persists its minimal subset."""

    def __init__(
        self,
        codec: SecretCodec,
        storage: Optional[StateStorage] = None,
        clock: Callable[[], datetime] = utcnow,
        state: Optional[VaultState] = None,
    ):
        self._codec = codec
        self._storage = storage
        self._clock = clock
        self._state = state if state is not None else VaultState()

    # ------------------------------------------------------------------
    # Factory
    # ------------------------------------------------------------------

    @classmethod
    async def load(
        cls,
        codec: SecretCodec,
        storage: StateStorage,
        clock: Callable[[], datetime] = utcnow,
    ) -> "VaultStore":
        """Read the persisted document, migrate it and build the store.

        Records that fail validation, and keys whose provider is missing,
        are logged and skipped.
        """
        raw = migrate(await storage.load())
        providers: list[Provider] = []
        for record in raw.get("providers") or []:
            try:
                providers.append(Provider.model_validate(record))
            except ModelValidationError as err:
                logger.error("Skipping unreadable provider record: %s", err)
        provider_ids = {p.id for p in providers}
        keys: list[ApiKey] = []
        for record in raw.get("apiKeys") or []:
            try:
                key = ApiKey.model_validate(record)
            except ModelValidationError as err:
                logger.error("Skipping unreadable key record: %s", err)
                continue
            if key.provider_id not in provider_ids:
                logger.warning(
                    "Dropping key id=%s: provider %s does not exist",
                    key.id, key.provider_id,
                )
                continue
            keys.append(key)
        selected = raw.get("selectedProviderId")
        if selected not in provider_ids:
            selected = None
        state = VaultState({
            "providers": providers,
            "apiKeys": keys,
            "selectedProviderId": selected,
        })
        store = cls(codec, storage=storage, clock=clock, state=state)
        logger.info(
            "Vault loaded: %d provider(s), %d key(s)", len(providers), len(keys),
        )
        return store

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    @property
    def state(self) -> VaultState:
        return self._state

    def snapshot(self) -> dict:
        """The persisted surface: providers, apiKeys and selectedProviderId."""
        return {
            "providers": [p.to_document() for p in self._state["providers"]],
            "apiKeys": [k.to_document() for k in self._state["apiKeys"]],
            "selectedProviderId": self._state["selectedProviderId"],
        }

    async def persist(self) -> None:
        if self._storage is None:
            return
        try:
            await self._storage.save(wrap(self.snapshot()))
        except Exception as err:
            logger.error("Failed to persist vault state: %s", err)
            return
        self._state.is_changed = False

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def providers(self) -> list[Provider]:
        return list(self._state["providers"])

    @property
    def api_keys(self) -> list[ApiKey]:
        return list(self._state["apiKeys"])

    @property
    def selected_provider_id(self) -> Optional[str]:
        return self._state["selectedProviderId"]

    def get_provider(self, provider_id: str) -> Provider:
        for provider in self._state["providers"]:
            if provider.id == provider_id:
                return provider
        raise NotFound(f"Provider {provider_id} not found")

    def get_key(self, key_id: str) -> ApiKey:
        for key in self._state["apiKeys"]:
            if key.id == key_id:
                return key
        raise NotFound(f"Key {key_id} not found")

    def keys_for(self, provider_id: str) -> list[ApiKey]:
        return [k for k in self._state["apiKeys"] if k.provider_id == provider_id]

    def providers_with_keys(self, now: Optional[datetime] = None) -> list[ProviderWithKeys]:
        now = now or self._clock()
        keys = self._state["apiKeys"]
        return [
            build_provider_with_keys(p, keys, now) for p in self._state["providers"]
        ]

    def selected_provider(self, now: Optional[datetime] = None) -> Optional[ProviderWithKeys]:
        selected = self.selected_provider_id
        if selected is None:
            return None
        return build_provider_with_keys(
            self.get_provider(selected), self._state["apiKeys"], now or self._clock(),
        )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _replace(self, field: str, record_id: str, record: BaseModel) -> None:
        self._state[field] = [
            record if r.id == record_id else r for r in self._state[field]
        ]

    def forget(self, key_ids: Iterable[str]) -> None:
        """Drop volatile per-key entries (revealed plaintext, test results)."""
        key_ids = set(key_ids)
        for value in self._state.session_objects().values():
            if isinstance(value, dict):
                for key_id in key_ids:
                    value.pop(key_id, None)

    # ------------------------------------------------------------------
    # Providers
    # ------------------------------------------------------------------

    async def add_provider(
        self, form: Union[ProviderForm, dict, None] = None, **kwargs: Any
    ) -> Provider:
        """Create a provider and select it."""
        data = coerce(ProviderForm, form, **kwargs)
        now = self._clock()
        provider = Provider(
            id=generate_id(),
            name=data.name,
            base_url=data.base_url,
            api_type=data.api_type,
            created_at=now,
            updated_at=now,
        )
        self._state["providers"] = [*self._state["providers"], provider]
        self._state["selectedProviderId"] = provider.id
        await self.persist()
        logger.debug("Provider added: id=%s", provider.id)
        return provider

    async def update_provider(
        self, provider_id: str, patch: Union[ProviderPatch, dict, None] = None, **kwargs: Any
    ) -> Provider:
        changes = coerce(ProviderPatch, patch, **kwargs).model_dump(
            exclude_unset=True, exclude_none=True
        )
        current = self.get_provider(provider_id)
        updated = current.model_copy(update={**changes, "updated_at": self._clock()})
        self._replace("providers", provider_id, updated)
        await self.persist()
        logger.debug("Provider updated: id=%s fields=%s", provider_id, sorted(changes))
        return updated

    async def delete_provider(self, provider_id: str) -> list[str]:
        """Delete a provider and every key that references it.

        Returns:
            ids of the deleted keys.
        """
        self.get_provider(provider_id)
        removed = [k.id for k in self.keys_for(provider_id)]
        self._state["providers"] = [
            p for p in self._state["providers"] if p.id != provider_id
        ]
        self._state["apiKeys"] = [
            k for k in self._state["apiKeys"] if k.provider_id != provider_id
        ]
        if self._state["selectedProviderId"] == provider_id:
            self._state["selectedProviderId"] = None
        self.forget(removed)
        await self.persist()
        logger.debug(
            "Provider deleted: id=%s cascaded_keys=%d", provider_id, len(removed),
        )
        return removed

    async def select_provider(self, provider_id: Optional[str]) -> None:
        if provider_id is not None:
            self.get_provider(provider_id)
        self._state["selectedProviderId"] = provider_id
        await self.persist()

    # ------------------------------------------------------------------
    # Keys
    # ------------------------------------------------------------------

    async def add_key(
        self, provider_id: str, form: Union[KeyForm, dict, None] = None, **kwargs: Any
    ) -> ApiKey:
        """Seal the key material and store a new key under ``provider_id``."""
        data = coerce(KeyForm, form, **kwargs)
        self.get_provider(provider_id)
        sealed = await self._codec.seal(data.key)
        now = self._clock()
        key = ApiKey(
            id=generate_id(),
            provider_id=provider_id,
            key=sealed,
            name=data.name,
            note=data.note,
            expires_at=data.expires_at,
            created_at=now,
            updated_at=now,
        )
        self._state["apiKeys"] = [*self._state["apiKeys"], key]
        await self.persist()
        logger.debug("Key added: id=%s provider=%s", key.id, provider_id)
        return key

    async def update_key(
        self, key_id: str, patch: Union[KeyPatch, dict, None] = None, **kwargs: Any
    ) -> ApiKey:
        """Patch a key.

        The key material is re-sealed only when ``key`` is part of the
        patch; otherwise the stored ciphertext is left untouched.
        """
        changes = coerce(KeyPatch, patch, **kwargs).model_dump(exclude_unset=True)
        current = self.get_key(key_id)
        if "key" in changes:
            if changes["key"] is None:
                raise ValidationError("key cannot be empty")
            changes["key"] = await self._codec.seal(changes["key"])
        updated = current.model_copy(update={**changes, "updated_at": self._clock()})
        self._replace("apiKeys", key_id, updated)
        await self.persist()
        logger.debug("Key updated: id=%s fields=%s", key_id, sorted(changes))
        return updated

    async def update_key_models(
        self, key_id: str, models: Iterable[Union[ApiModel, dict]]
    ) -> ApiKey:
        validated = [coerce(ApiModel, m) for m in models]
        current = self.get_key(key_id)
        now = self._clock()
        updated = current.model_copy(update={
            "models": validated,
            "models_updated_at": now,
            "updated_at": now,
        })
        self._replace("apiKeys", key_id, updated)
        await self.persist()
        logger.debug("Key models updated: id=%s count=%d", key_id, len(validated))
        return updated

    async def delete_key(self, key_id: str) -> None:
        self.get_key(key_id)
        self._state["apiKeys"] = [k for k in self._state["apiKeys"] if k.id != key_id]
        self.forget([key_id])
        await self.persist()
        logger.debug("Key deleted: id=%s", key_id)

    # ------------------------------------------------------------------
    # Bulk
    # ------------------------------------------------------------------

    async def import_data(
        self, providers: Iterable[Provider], api_keys: Iterable[ApiKey]
    ) -> None:
        """Replace providers and keys wholesale."""
        providers = list(providers)
        api_keys = list(api_keys)
        remaining = {k.id for k in api_keys}
        self.forget(k.id for k in self._state["apiKeys"] if k.id not in remaining)
        self._state["providers"] = providers
        self._state["apiKeys"] = api_keys
        if self._state["selectedProviderId"] not in {p.id for p in providers}:
            self._state["selectedProviderId"] = None
        await self.persist()
        logger.info(
            "Vault data replaced: %d provider(s), %d key(s)",
            len(providers), len(api_keys),
        )
