"""
Tests for vault export and merge-by-id import.
"""
import orjson
import pytest

from navigator_keyvault.crypto import LocalCryptoGateway, SecretCodec, is_envelope
from navigator_keyvault.exceptions import InvalidFileFormat
from navigator_keyvault.storage import MemoryStorage
from navigator_keyvault.store import VaultStore
from navigator_keyvault.transfer import ImportExportMerger, merge_by_id, to_iso

from .conftest import FakeClock, MemoryFiles

TS = "2024-01-01T00:00:00.000Z"
UNREADABLE = '{"nonce": "AAAAAAAAAAAAAAAA", "ciphertext": "QUJDREVGR0hJSktMTU5PUFFS"}'


class Record:
    def __init__(self, id, tag):
        self.id = id
        self.tag = tag


def provider_doc(provider_id, name=None):
    return {
        "id": provider_id,
        "name": name or provider_id.upper(),
        "baseUrl": f"https://{provider_id}.example.com/v1",
        "apiType": "openai",
        "createdAt": TS,
        "updatedAt": TS,
    }


def key_doc(key_id, provider_id, key="sk-imported", **extra):
    return {
        "id": key_id,
        "providerId": provider_id,
        "key": key,
        "createdAt": TS,
        "updatedAt": TS,
        **extra,
    }


def document(providers, keys, version="2.0.0"):
    return orjson.dumps({
        "version": version,
        "exportedAt": TS,
        "providers": providers,
        "apiKeys": keys,
    }).decode("utf-8")


@pytest.fixture
def files():
    return MemoryFiles()


@pytest.fixture
def merger(store, codec, files, clock):
    return ImportExportMerger(store, codec, files=files, clock=clock)


async def seed(store, provider_id="a"):
    return await store.add_provider(
        name=provider_id.upper(), base_url=f"https://{provider_id}.example.com"
    )


class TestMergeById:

    def test_imported_records_win(self):
        existing = [Record("a", "old"), Record("b", "old")]
        imported = [Record("b", "new"), Record("c", "new")]
        merged = {r.id: r.tag for r in merge_by_id(existing, imported)}
        assert merged == {"a": "old", "b": "new", "c": "new"}

    def test_merge_is_idempotent(self):
        existing = [Record("a", "old")]
        imported = [Record("a", "new")]
        once = merge_by_id(existing, imported)
        twice = merge_by_id(once, imported)
        assert [(r.id, r.tag) for r in twice] == [("a", "new")]


class TestExport:

    @pytest.mark.asyncio
    async def test_document_layout(self, store, merger):
        provider = await seed(store)
        key = await store.add_key(provider.id, key="sk-secret", name="prod")
        exported = await merger.export_document()

        assert exported["version"] == "2.0.0"
        assert exported["exportedAt"] == "2024-01-01T12:00:00.000Z"
        assert exported["providers"] == exported["services"]
        assert exported["providers"][0]["baseUrl"] == "https://a.example.com"
        record = exported["apiKeys"][0]
        assert record["id"] == key.id
        assert record["providerId"] == provider.id
        assert record["serviceId"] == provider.id
        assert record["key"] == "sk-secret"
        assert record["name"] == "prod"
        assert "note" not in record
        assert "models" not in record

    @pytest.mark.asyncio
    async def test_undecryptable_key_is_exported_as_stored(self, store, merger):
        provider = await seed(store)
        good = await store.add_key(provider.id, key="sk-good")
        bad = await store.add_key(provider.id, key="sk-bad")
        store.state["apiKeys"] = [
            k.model_copy(update={"key": UNREADABLE}) if k.id == bad.id else k
            for k in store.api_keys
        ]
        exported = await merger.export_document()
        keys = {k["id"]: k["key"] for k in exported["apiKeys"]}
        assert keys[good.id] == "sk-good"
        assert keys[bad.id] == UNREADABLE

    @pytest.mark.asyncio
    async def test_export_data_saves_file(self, store, merger, files):
        await seed(store)
        name = await merger.export_data()
        assert name == "keyvault-backup-2024-01-01.json"
        saved = orjson.loads(files.saved[name])
        assert saved["providers"][0]["name"] == "A"

    @pytest.mark.asyncio
    async def test_export_without_file_capability(self, store, codec):
        with pytest.raises(RuntimeError):
            await ImportExportMerger(store, codec).export_data()

    def test_to_iso(self, clock):
        assert to_iso(clock()) == "2024-01-01T12:00:00.000Z"
        assert to_iso(None) is None


class TestImport:

    @pytest.mark.asyncio
    async def test_merge_last_write_wins(self, store, merger, codec):
        await merger.import_data(document(
            [provider_doc("a"), provider_doc("b")],
            [key_doc("k1", "a", "sk-1"), key_doc("k2", "b", "sk-2")],
        ))
        summary = await merger.import_data(document(
            [provider_doc("b", "Bee"), provider_doc("c")],
            [key_doc("k2", "b", "sk-2b"), key_doc("k3", "c", "sk-3")],
        ))

        assert summary.providers == 2
        assert summary.keys == 2
        assert summary.total_providers == 3
        assert summary.total_keys == 3
        providers = {p.id: p.name for p in store.providers}
        assert providers == {"a": "A", "b": "Bee", "c": "C"}
        keys = {k.id: await codec.reveal(k.key) for k in store.api_keys}
        assert keys == {"k1": "sk-1", "k2": "sk-2b", "k3": "sk-3"}

    @pytest.mark.asyncio
    async def test_imported_keys_are_sealed(self, store, merger, storage):
        await merger.import_data(document([provider_doc("a")], [key_doc("k1", "a", "sk-plain")]))
        key = store.get_key("k1")
        assert is_envelope(key.key)
        assert "sk-plain" not in str(await storage.load())

    @pytest.mark.asyncio
    async def test_models_are_dropped(self, store, merger):
        await merger.import_data(document(
            [provider_doc("a")],
            [key_doc("k1", "a", models=[{"id": "gpt-4o", "name": "gpt-4o"}],
                     modelsUpdatedAt=TS)],
        ))
        key = store.get_key("k1")
        assert key.models is None
        assert key.models_updated_at is None

    @pytest.mark.asyncio
    async def test_import_clears_volatile_results(self, store, merger):
        await merger.import_data(document([provider_doc("a")], [key_doc("k1", "a")]))
        store.state.volatile("keyTests")["k1"] = "stale"
        await merger.import_data(document([provider_doc("a")], [key_doc("k1", "a", "sk-new")]))
        assert "k1" not in store.state.volatile("keyTests")

    @pytest.mark.asyncio
    async def test_legacy_services_document(self, store, merger):
        content = orjson.dumps({
            "version": "1.0.0",
            "services": [provider_doc("s1")],
            "apiKeys": [{"id": "k1", "serviceId": "s1", "key": "sk-old"}],
        })
        await merger.import_data(content)
        key = store.get_key("k1")
        assert key.provider_id == "s1"
        assert key.created_at == key.updated_at

    @pytest.mark.asyncio
    async def test_key_without_id_gets_one(self, store, merger):
        await merger.import_data(document([provider_doc("a")], [{"providerId": "a", "key": "sk-x"}]))
        assert len(store.api_keys) == 1
        assert store.api_keys[0].id

    @pytest.mark.asyncio
    async def test_key_may_reference_existing_provider(self, store, merger):
        await merger.import_data(document([provider_doc("a")], []))
        await merger.import_data(document([], [key_doc("k1", "a")]))
        assert store.get_key("k1").provider_id == "a"

    @pytest.mark.asyncio
    async def test_unreadable_envelope_kept_sealed(self, store, merger):
        await merger.import_data(document([provider_doc("a")], [key_doc("k1", "a", UNREADABLE)]))
        assert store.get_key("k1").key == UNREADABLE

    @pytest.mark.asyncio
    async def test_envelope_from_this_vault_is_resealed(self, store, merger, codec):
        sealed = await codec.seal("sk-inner")
        await merger.import_data(document([provider_doc("a")], [key_doc("k1", "a", sealed)]))
        stored = store.get_key("k1").key
        assert is_envelope(stored)
        assert await codec.reveal(stored) == "sk-inner"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("content", [
        "not json at all",
        "[1, 2, 3]",
        orjson.dumps({"providers": [], "apiKeys": []}),
        orjson.dumps({"version": "2.0.0", "apiKeys": []}),
        orjson.dumps({"version": "2.0.0", "providers": []}),
        orjson.dumps({"version": "2.0.0", "providers": {}, "apiKeys": []}),
        orjson.dumps({"version": "2.0.0", "providers": [{"id": "x"}], "apiKeys": []}),
        orjson.dumps({"version": "2.0.0", "providers": [], "apiKeys": [{"id": "k"}]}),
        orjson.dumps({"version": "2.0.0", "providers": [], "apiKeys": [{"key": "sk"}]}),
        orjson.dumps({
            "version": "2.0.0", "providers": [],
            "apiKeys": [{"providerId": "ghost", "key": "sk"}],
        }),
    ])
    async def test_invalid_documents_change_nothing(self, store, merger, storage, content):
        await merger.import_data(document([provider_doc("a")], [key_doc("k1", "a")]))
        before = await storage.load()
        with pytest.raises(InvalidFileFormat):
            await merger.import_data(content)
        assert await storage.load() == before
        assert [p.id for p in store.providers] == ["a"]
        assert [k.id for k in store.api_keys] == ["k1"]


class TestPortability:
    """A backup restores on a vault with another master key."""

    @pytest.mark.asyncio
    async def test_restore_on_other_machine(self, tmp_path, store, merger, files):
        provider = await seed(store)
        await store.add_key(provider.id, key="sk-portable", note="ci")
        name = await merger.export_data()

        clock = FakeClock()
        other_codec = SecretCodec(LocalCryptoGateway(tmp_path / "other"))
        other_store = VaultStore(other_codec, storage=MemoryStorage(), clock=clock)
        other = ImportExportMerger(other_store, other_codec, clock=clock)
        await other.import_data(files.saved[name])

        restored = other_store.api_keys[0]
        assert restored.note == "ci"
        assert await other_codec.reveal(restored.key) == "sk-portable"
        assert other_store.get_provider(provider.id).name == "A"
