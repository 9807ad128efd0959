"""Shared fixtures and fakes for the key vault tests."""
import pytest
import orjson
from datetime import datetime, timedelta, timezone

from navigator_keyvault.crypto import LocalCryptoGateway, SecretCodec
from navigator_keyvault.exceptions import NetworkFailure
from navigator_keyvault.network.http import HttpResponse
from navigator_keyvault.storage import MemoryStorage
from navigator_keyvault.store import VaultStore


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class StubTransport:
    """HttpTransport returning queued responses and recording requests.

    Queued items may be an HttpResponse, an exception to raise, or a
    callable receiving the request and returning one of those.
    """

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests = []

    def queue(self, *responses) -> None:
        self.responses.extend(responses)

    async def request(self, request):
        self.requests.append(request)
        if not self.responses:
            raise NetworkFailure("no response queued")
        item = self.responses.pop(0)
        if callable(item) and not isinstance(item, BaseException):
            item = item(request)
        if isinstance(item, BaseException):
            raise item
        return item


class MemoryFiles:
    def __init__(self):
        self.saved = {}

    async def save_file(self, file_name: str, content: str) -> str:
        self.saved[file_name] = content
        return file_name


class MemoryClipboard:
    def __init__(self):
        self.text = None

    async def write_text(self, text: str) -> bool:
        self.text = text
        return True


class BrokenEncryptGateway(LocalCryptoGateway):
    """Local gateway whose encryption always fails."""

    async def encrypt(self, plaintext: str) -> str:
        raise RuntimeError("keystore unavailable")


def json_response(status: int, payload, status_text: str = "") -> HttpResponse:
    return HttpResponse(
        status=status,
        status_text=status_text,
        headers={"Content-Type": "application/json"},
        body=orjson.dumps(payload).decode("utf-8"),
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def crypto(tmp_path):
    return LocalCryptoGateway(tmp_path / "vault")


@pytest.fixture
def codec(crypto):
    return SecretCodec(crypto)


@pytest.fixture
def storage():
    return MemoryStorage()


@pytest.fixture
def store(codec, storage, clock):
    return VaultStore(codec, storage=storage, clock=clock)


@pytest.fixture
def transport():
    return StubTransport()
