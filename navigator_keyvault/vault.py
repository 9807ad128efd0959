"""
KeyVault service object.

Wires the store, the secret codec, the auth session guard, the connectivity
tester and the import/export merger around injected capabilities (crypto,
persistence, network, files, clipboard).  Every access goes through a
``KeyVault`` instance; there is no module level state.

Disclosed plaintext (a revealed key, the key shown in an edit form) is kept
only in the volatile part of the vault state and is dropped when the key is
hidden, the form is closed, the key is deleted or the vault is locked.
"""
import time
import asyncio
import logging
from typing import Any, Callable, Optional, Union
from datetime import datetime

from .conf import DEFAULT_TEST_MESSAGE, VaultConfig
from .crypto.gateway import CryptoGateway, SecretCodec
from .crypto.local import LocalCryptoGateway
from .exceptions import CryptoFailure, NotFound, ValidationError
from .files import Clipboard, DirectoryFileSaver, FileSaver
from .models import (
    ApiKey,
    ApiModel,
    KeyForm,
    KeyPatch,
    Provider,
    ProviderForm,
    ProviderPatch,
    ProviderWithKeys,
    utcnow,
)
from .network.http import AiohttpTransport, HttpTransport
from .network.tester import (
    DECRYPTION_FAILED,
    MODEL_TEST_FAILED,
    REQUEST_FAILED,
    ApiTestResult,
    ConnectivityTestClient,
    ModelTestResult,
    ProbeStatus,
)
from .session import AuthOutcome, AuthSessionGuard, SensitiveAction
from .storage import JsonFileStorage, StateStorage
from .store import VaultStore
from .transfer import ImportExportMerger, ImportSummary

logger = logging.getLogger("navigator.keyvault")

# volatile state entries, all keyed by key id
REVEALED = "revealed"
EDITING = "editing"
KEY_TESTS = "keyTests"
MODEL_TESTS = "modelTests"
MODEL_CANCELS = "modelCancels"
DELETE_TARGET = "deleteTarget"


class KeyVault:
    """Local API credential vault."""

    def __init__(
        self,
        store: VaultStore,
        codec: SecretCodec,
        guard: AuthSessionGuard,
        tester: Optional[ConnectivityTestClient] = None,
        merger: Optional[ImportExportMerger] = None,
        clipboard: Optional[Clipboard] = None,
        notices: Optional[list[str]] = None,
        transport: Optional[HttpTransport] = None,
    ):
        self.store = store
        self.codec = codec
        self.guard = guard
        self.tester = tester
        self.merger = merger or ImportExportMerger(store, codec)
        self.clipboard = clipboard
        self.notices: list[str] = notices if notices is not None else []
        self._transport = transport

    @classmethod
    async def open(
        cls,
        config: Optional[VaultConfig] = None,
        *,
        crypto: Optional[CryptoGateway] = None,
        storage: Optional[StateStorage] = None,
        transport: Optional[HttpTransport] = None,
        files: Optional[FileSaver] = None,
        clipboard: Optional[Clipboard] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> "KeyVault":
        """Build a vault from its capabilities, loading the persisted state.

        Missing capabilities default to the local ones configured by
        ``config`` (read from the environment when not given).
        """
        config = config or VaultConfig.from_env()
        crypto = crypto or LocalCryptoGateway(config.data_dir, config.cipher_backend)
        storage = storage or JsonFileStorage(config.state_path)
        files = files or DirectoryFileSaver(config.export_dir)
        transport = transport or AiohttpTransport(retries=config.http_retries)
        notices: list[str] = []
        codec = SecretCodec(crypto, on_degraded=notices.append)
        store = await VaultStore.load(codec, storage, clock=clock)
        return cls(
            store=store,
            codec=codec,
            guard=AuthSessionGuard(crypto, session_ttl=config.session_ttl, clock=clock),
            tester=ConnectivityTestClient(transport),
            merger=ImportExportMerger(store, codec, files=files, clock=clock),
            clipboard=clipboard,
            notices=notices,
            transport=transport,
        )

    async def close(self) -> None:
        self.lock()
        if isinstance(self._transport, AiohttpTransport):
            await self._transport.close()

    async def __aenter__(self) -> "KeyVault":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    def _volatile(self, name: str) -> dict:
        return self.store.state.volatile(name)

    # ------------------------------------------------------------------
    # Providers and keys
    # ------------------------------------------------------------------

    async def add_provider(self, form: Union[ProviderForm, dict, None] = None, **kwargs: Any) -> Provider:
        return await self.store.add_provider(form, **kwargs)

    async def update_provider(
        self, provider_id: str, patch: Union[ProviderPatch, dict, None] = None, **kwargs: Any
    ) -> Provider:
        return await self.store.update_provider(provider_id, patch, **kwargs)

    async def delete_provider(self, provider_id: str) -> list[str]:
        self.store.get_provider(provider_id)
        self._forget_deleted([k.id for k in self.store.keys_for(provider_id)])
        return await self.store.delete_provider(provider_id)

    async def select_provider(self, provider_id: Optional[str]) -> None:
        await self.store.select_provider(provider_id)

    async def add_key(
        self, provider_id: str, form: Union[KeyForm, dict, None] = None, **kwargs: Any
    ) -> ApiKey:
        return await self.store.add_key(provider_id, form, **kwargs)

    async def update_key(
        self, key_id: str, patch: Union[KeyPatch, dict, None] = None, **kwargs: Any
    ) -> ApiKey:
        key = await self.store.update_key(key_id, patch, **kwargs)
        # a revealed value may be stale now
        self._volatile(REVEALED).pop(key_id, None)
        return key

    def providers_with_keys(self, now: Optional[datetime] = None) -> list[ProviderWithKeys]:
        return self.store.providers_with_keys(now)

    def selected_provider(self, now: Optional[datetime] = None) -> Optional[ProviderWithKeys]:
        return self.store.selected_provider(now)

    # ------------------------------------------------------------------
    # Password and session
    # ------------------------------------------------------------------

    async def has_password(self) -> bool:
        return await self.guard.has_password()

    async def requires_auth(self) -> bool:
        return await self.guard.require_auth()

    async def submit_password(self, password: str) -> AuthOutcome:
        return await self.guard.submit_password(password)

    async def setup_password(self, password: str, confirm: Optional[str] = None) -> AuthOutcome:
        return await self.guard.complete_setup(password, confirm)

    async def change_password(
        self, old_password: str, new_password: str, confirm: Optional[str] = None
    ) -> None:
        await self.guard.change_password(old_password, new_password, confirm)

    def cancel_auth(self) -> None:
        self.guard.cancel()

    def lock(self) -> None:
        """Close the session window and drop every disclosed plaintext."""
        self.guard.reset()
        self._volatile(REVEALED).clear()
        self._volatile(EDITING).clear()
        self.store.state.session_objects().pop(DELETE_TARGET, None)

    # ------------------------------------------------------------------
    # Sensitive actions
    # ------------------------------------------------------------------

    async def _reveal_current(self, key_id: str) -> str:
        """Decrypt the key as stored now, not as it was when the action was requested.

        Raises:
            NotFound: the key was deleted while the action was pending.
        """
        return await self.codec.reveal(self.store.get_key(key_id).key)

    def _forget_deleted(self, key_ids: list[str]) -> None:
        """Stop in-flight work and pending actions on keys about to be deleted."""
        for key_id in key_ids:
            self.cancel_model_test(key_id)
        self.guard.discard(key_ids)
        if self.delete_target in key_ids:
            self.cancel_delete()

    async def view_key(self, key_id: str) -> AuthOutcome:
        """Reveal a key's plaintext (kept until ``hide_key``)."""
        self.store.get_key(key_id)
        revealed = self._volatile(REVEALED)

        async def reveal() -> str:
            plaintext = await self._reveal_current(key_id)
            self._volatile(REVEALED)[key_id] = plaintext
            return plaintext

        if key_id in revealed:
            return AuthOutcome(
                state=self.guard.state,
                completed=True,
                result=revealed[key_id],
                action=SensitiveAction.VIEW,
                key_id=key_id,
            )
        return await self.guard.request(SensitiveAction.VIEW, key_id, reveal)

    def hide_key(self, key_id: str) -> None:
        self._volatile(REVEALED).pop(key_id, None)

    def revealed_key(self, key_id: str) -> Optional[str]:
        return self._volatile(REVEALED).get(key_id)

    async def copy_key(self, key_id: str) -> AuthOutcome:
        """Decrypt a key and hand it to the clipboard capability."""
        self.store.get_key(key_id)
        if self.clipboard is None:
            raise RuntimeError("No clipboard capability configured")

        async def copy() -> bool:
            plaintext = await self._reveal_current(key_id)
            copied = await self.clipboard.write_text(plaintext)
            if not copied:
                logger.warning("Clipboard rejected key id=%s", key_id)
            return copied

        return await self.guard.request(SensitiveAction.COPY, key_id, copy)

    async def edit_key(self, key_id: str) -> AuthOutcome:
        """Open the edit context for a key; the result is its plaintext."""
        self.store.get_key(key_id)

        async def open_form() -> str:
            plaintext = await self._reveal_current(key_id)
            self._volatile(EDITING)[key_id] = plaintext
            return plaintext

        return await self.guard.request(SensitiveAction.EDIT, key_id, open_form)

    def editing_key(self, key_id: str) -> Optional[str]:
        return self._volatile(EDITING).get(key_id)

    async def save_edit(
        self, key_id: str, patch: Union[KeyPatch, dict, None] = None, **kwargs: Any
    ) -> ApiKey:
        if key_id not in self._volatile(EDITING):
            raise ValidationError(f"Key {key_id} is not open for editing")
        key = await self.update_key(key_id, patch, **kwargs)
        self.close_edit(key_id)
        return key

    def close_edit(self, key_id: Optional[str] = None) -> None:
        editing = self._volatile(EDITING)
        if key_id is None:
            editing.clear()
        else:
            editing.pop(key_id, None)

    async def delete_key(self, key_id: str) -> AuthOutcome:
        """Ask to delete a key; ``confirm_delete`` performs it."""
        self.store.get_key(key_id)

        async def ask() -> str:
            self.store.get_key(key_id)
            self.store.state[DELETE_TARGET] = key_id
            return key_id

        return await self.guard.request(SensitiveAction.DELETE, key_id, ask)

    @property
    def delete_target(self) -> Optional[str]:
        return self.store.state.session_objects().get(DELETE_TARGET)

    async def confirm_delete(self) -> None:
        key_id = self.store.state.session_objects().pop(DELETE_TARGET, None)
        if key_id is None:
            raise ValidationError("No key is waiting for delete confirmation")
        self._forget_deleted([key_id])
        await self.store.delete_key(key_id)

    def cancel_delete(self) -> None:
        self.store.state.session_objects().pop(DELETE_TARGET, None)

    # ------------------------------------------------------------------
    # Connectivity tests
    # ------------------------------------------------------------------

    def _require_tester(self) -> ConnectivityTestClient:
        if self.tester is None:
            raise RuntimeError("No network capability configured")
        return self.tester

    def _has_key(self, key_id: str) -> bool:
        try:
            self.store.get_key(key_id)
        except NotFound:
            return False
        return True

    async def test_key(self, key_id: str) -> ApiTestResult:
        """Probe a stored key against its provider.

        On success the reported models are cached on the key.
        """
        tester = self._require_tester()
        key = self.store.get_key(key_id)
        provider = self.store.get_provider(key.provider_id)
        self._volatile(KEY_TESTS)[key_id] = ApiTestResult(status=ProbeStatus.LOADING)
        try:
            plaintext = await self.codec.reveal(key.key)
            result = await tester.test_api_key(provider.base_url, plaintext, provider.api_type)
        except CryptoFailure as err:
            logger.error("Key test id=%s: stored key cannot be decrypted: %s", key_id, err)
            result = ApiTestResult(
                status=ProbeStatus.ERROR, message=DECRYPTION_FAILED, details=str(err),
            )
        except Exception as err:
            logger.exception("Key test id=%s failed", key_id)
            result = ApiTestResult(
                status=ProbeStatus.ERROR, message=REQUEST_FAILED, details=str(err),
            )
        if not self._has_key(key_id):
            # deleted while the probe was in flight
            return result
        self._volatile(KEY_TESTS)[key_id] = result
        if result.status is ProbeStatus.SUCCESS and result.models:
            await self.store.update_key_models(key_id, result.models)
        logger.info(
            "Key test id=%s provider=%s: %s", key_id, provider.id, result.message,
        )
        return result

    def key_test_result(self, key_id: str) -> Optional[ApiTestResult]:
        return self._volatile(KEY_TESTS).get(key_id)

    async def test_model(
        self,
        key_id: str,
        model_id: str,
        message: str = DEFAULT_TEST_MESSAGE,
    ) -> ModelTestResult:
        """Send one message to a model with the stored key.

        ``cancel_model_test`` stops it before dispatch, or discards its
        response when it is already in flight.
        """
        tester = self._require_tester()
        key = self.store.get_key(key_id)
        provider = self.store.get_provider(key.provider_id)
        cancel = asyncio.Event()
        self._volatile(MODEL_CANCELS).setdefault(key_id, {})[model_id] = cancel
        self._volatile(MODEL_TESTS).setdefault(key_id, {})[model_id] = ModelTestResult(
            status=ProbeStatus.LOADING
        )
        try:
            plaintext = await self.codec.reveal(key.key)
            result = await tester.test_model(provider, plaintext, model_id, message, cancel)
        except CryptoFailure as err:
            logger.error("Model test id=%s: stored key cannot be decrypted: %s", key_id, err)
            result = ModelTestResult(
                status=ProbeStatus.ERROR,
                message=DECRYPTION_FAILED,
                error=str(err),
                timestamp=time.time(),
            )
        except Exception as err:
            logger.exception("Model test id=%s model=%s failed", key_id, model_id)
            result = ModelTestResult(
                status=ProbeStatus.ERROR,
                message=MODEL_TEST_FAILED,
                error=str(err),
                timestamp=time.time(),
            )
        finally:
            cancels = self._volatile(MODEL_CANCELS).get(key_id, {})
            if cancels.get(model_id) is cancel:
                cancels.pop(model_id)
        if self._has_key(key_id):
            self._volatile(MODEL_TESTS).setdefault(key_id, {})[model_id] = result
        return result

    def cancel_model_test(self, key_id: str, model_id: Optional[str] = None) -> int:
        """Signal in-flight model tests of a key; returns how many were signalled."""
        cancels = self._volatile(MODEL_CANCELS).get(key_id, {})
        targets = [cancels[model_id]] if model_id in cancels else (
            list(cancels.values()) if model_id is None else []
        )
        for event in targets:
            event.set()
        return len(targets)

    def model_test_result(self, key_id: str, model_id: str) -> Optional[ModelTestResult]:
        return self._volatile(MODEL_TESTS).get(key_id, {}).get(model_id)

    def clear_model_test_results(self, key_id: Optional[str] = None) -> None:
        tests = self._volatile(MODEL_TESTS)
        if key_id is None:
            tests.clear()
        else:
            tests.pop(key_id, None)

    async def update_key_models(self, key_id: str, models: list[Union[ApiModel, dict]]) -> ApiKey:
        return await self.store.update_key_models(key_id, models)

    # ------------------------------------------------------------------
    # Import / export
    # ------------------------------------------------------------------

    async def export_data(self) -> str:
        return await self.merger.export_data()

    async def import_data(self, content: Union[str, bytes, dict]) -> ImportSummary:
        return await self.merger.import_data(content)
