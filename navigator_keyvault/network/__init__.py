"""Network capability and the connectivity tests built on it."""

from .http import AiohttpTransport, HttpRequest, HttpResponse, HttpTransport
from .tester import (
    ApiTestResult,
    ConnectivityTestClient,
    ModelTestResult,
    ProbeStatus,
    smart_join_url,
)

__all__ = [
    "AiohttpTransport",
    "ApiTestResult",
    "ConnectivityTestClient",
    "HttpRequest",
    "HttpResponse",
    "HttpTransport",
    "ModelTestResult",
    "ProbeStatus",
    "smart_join_url",
]
