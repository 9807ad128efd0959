"""
Connectivity tests for stored keys.

Protocol variants:
- openai:  GET {base}/v1/models with bearer auth
- claude:  GET {base}/v1/models with x-api-key, falling back to a one-token
           POST {base}/v1/messages probe (the official API has no model list)
- generic: GET {base} with bearer auth; 200 and 401 both prove reachability

``test_model`` sends a single-turn message through the provider's chat
protocol and returns the reply text.

Security Note:
    Never log the key or request headers.
"""
import re
import time
import asyncio
import logging
from enum import Enum
from dataclasses import dataclass
from typing import Any, Optional, Union

import orjson
from pydantic import ValidationError as ModelValidationError

from ..conf import (
    ANTHROPIC_VERSION,
    CLAUDE_PROBE_MODEL,
    DEFAULT_TEST_MESSAGE,
    LIST_TIMEOUT,
    MODEL_TEST_MAX_TOKENS,
    MODEL_TEST_TEMPERATURE,
    MODEL_TIMEOUT,
    PROBE_TIMEOUT,
    REACHABILITY_TIMEOUT,
)
from ..exceptions import NetworkFailure
from ..models import ApiModel, ApiType, Provider
from .http import HttpRequest, HttpResponse, HttpTransport

logger = logging.getLogger("navigator.keyvault")

_VERSION_SUFFIX = re.compile(r"/v\d+$")
_VERSION_PREFIX = re.compile(r"^/v\d+(?=/|$)")

# result codes
VALID_KEY = "valid-key"
INVALID_KEY = "invalid-key"
REQUEST_FAILED = "request-failed"
CONNECTION_FAILED = "connection-failed"
PROVIDER_REACHABLE = "provider-reachable"
PROVIDER_UNREACHABLE = "provider-unreachable"
MODEL_TEST_SUCCESS = "model-test-success"
MODEL_TEST_FAILED = "model-test-failed"
RATE_LIMITED = "rate-limited"
TEST_CANCELLED = "test-cancelled"
DECRYPTION_FAILED = "decryption-failed"


class ProbeStatus(str, Enum):
    IDLE = "idle"
    LOADING = "loading"
    SUCCESS = "success"
    ERROR = "error"


@dataclass
class ApiTestResult:
    status: ProbeStatus
    message: Optional[str] = None
    details: Optional[str] = None
    models: Optional[list[ApiModel]] = None


@dataclass
class ModelTestResult:
    status: ProbeStatus
    message: Optional[str] = None
    response: Optional[str] = None
    error: Optional[str] = None
    timestamp: Optional[float] = None


def smart_join_url(base_url: str, path: str) -> str:
    """Join a base endpoint and a path without doubling the API version.

    When ``base_url`` already ends in a version segment (``/v1``,
    ``/api/coding/v3``...) a leading version segment of ``path`` is dropped.
    """
    base = base_url.rstrip("/")
    if _VERSION_SUFFIX.search(base):
        path = _VERSION_PREFIX.sub("", path, count=1)
    if not path:
        return base
    return f"{base}{'' if path.startswith('/') else '/'}{path}"


def normalize_model(raw: Any) -> Optional[ApiModel]:
    """Build an ApiModel from one entry of a model-list response."""
    if not isinstance(raw, dict) or not raw.get("id"):
        return None
    modalities = raw.get("modalities") if isinstance(raw.get("modalities"), dict) else {}
    model_id = str(raw["id"])
    created = raw.get("created")
    try:
        return ApiModel.model_validate({
            "id": model_id,
            "name": raw.get("name") or raw.get("display_name") or model_id,
            "owned_by": raw.get("owned_by"),
            "task_type": raw.get("task_type"),
            "input_modalities": raw.get("input_modalities") or modalities.get("input_modalities"),
            "output_modalities": raw.get("output_modalities") or modalities.get("output_modalities"),
            "token_limits": raw.get("token_limits") if isinstance(raw.get("token_limits"), dict) else None,
            "domain": raw.get("domain"),
            "version": raw.get("version"),
            "created": created if isinstance(created, int) else None,
        })
    except ModelValidationError as err:
        logger.debug("Skipping unreadable model entry id=%s: %s", model_id, err)
        return None


class UnexpectedResponse(ValueError):
    """A 200 response whose JSON body does not have the expected shape."""


def _parse_models(response: HttpResponse) -> list[ApiModel]:
    data = response.json()
    if not isinstance(data, dict):
        raise UnexpectedResponse("Model list response is not an object")
    entries = data.get("data")
    if entries is None:
        return []
    if not isinstance(entries, list):
        raise UnexpectedResponse("Model list \"data\" is not an array")
    models = []
    for entry in entries:
        model = normalize_model(entry)
        if model is not None:
            models.append(model)
    return models


def _error_message(response: HttpResponse) -> str:
    """Server-provided error message when the body is JSON, else the status line."""
    try:
        data = response.json()
    except orjson.JSONDecodeError:
        return response.status_line
    if isinstance(data, dict):
        error = data.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        if isinstance(error, str) and error:
            return error
        if data.get("message"):
            return str(data["message"])
    return response.status_line


def _cancelled() -> ModelTestResult:
    return ModelTestResult(
        status=ProbeStatus.ERROR,
        message=TEST_CANCELLED,
        error="The test was cancelled",
        timestamp=time.time(),
    )


class ConnectivityTestClient:
    """Protocol-aware key and model tests over an HttpTransport."""

    def __init__(self, transport: HttpTransport):
        self._transport = transport

    # ------------------------------------------------------------------
    # Key tests
    # ------------------------------------------------------------------

    async def test_api_key(
        self,
        base_url: str,
        api_key: str,
        api_type: Union[ApiType, str] = ApiType.OPENAI,
    ) -> ApiTestResult:
        try:
            api_type = ApiType(api_type)
        except ValueError:
            api_type = ApiType.OPENAI
        if api_type is ApiType.CLAUDE:
            return await self._test_claude(base_url, api_key)
        if api_type is ApiType.GENERIC:
            return await self._test_generic(base_url, api_key)
        return await self._test_openai(base_url, api_key)

    def _models_success(self, response: HttpResponse) -> ApiTestResult:
        models = _parse_models(response)
        return ApiTestResult(
            status=ProbeStatus.SUCCESS,
            message=VALID_KEY,
            details=f"{len(models)} model(s) found",
            models=models,
        )

    def _classify(self, response: HttpResponse) -> ApiTestResult:
        if response.status == 401:
            return ApiTestResult(
                status=ProbeStatus.ERROR,
                message=INVALID_KEY,
                details="Authentication failed",
            )
        return ApiTestResult(
            status=ProbeStatus.ERROR,
            message=REQUEST_FAILED,
            details=response.status_line,
        )

    async def _test_openai(self, base_url: str, api_key: str) -> ApiTestResult:
        url = smart_join_url(base_url, "/v1/models")
        try:
            response = await self._transport.request(HttpRequest(
                url=url,
                method="GET",
                headers={
                    "Authorization": f"Bearer {api_key}",
                    "Content-Type": "application/json",
                },
                timeout=LIST_TIMEOUT,
            ))
        except NetworkFailure as err:
            logger.info("OpenAI key test could not reach %s: %s", url, err)
            return ApiTestResult(
                status=ProbeStatus.ERROR, message=CONNECTION_FAILED, details=str(err),
            )
        if response.status != 200:
            return self._classify(response)
        try:
            return self._models_success(response)
        except orjson.JSONDecodeError:
            return ApiTestResult(
                status=ProbeStatus.ERROR,
                message=REQUEST_FAILED,
                details="Model list response is not valid JSON",
            )
        except UnexpectedResponse as err:
            logger.info("OpenAI key test got an unexpected model list from %s: %s", url, err)
            return ApiTestResult(
                status=ProbeStatus.ERROR,
                message=REQUEST_FAILED,
                details=f"Unexpected response shape: {err}",
            )

    async def _test_claude(self, base_url: str, api_key: str) -> ApiTestResult:
        headers = {"x-api-key": api_key, "anthropic-version": ANTHROPIC_VERSION}
        # Anthropic-compatible services often expose a model list
        try:
            response = await self._transport.request(HttpRequest(
                url=smart_join_url(base_url, "/v1/models"),
                method="GET",
                headers=headers,
                timeout=LIST_TIMEOUT,
            ))
            if response.status == 200:
                return self._models_success(response)
            logger.debug("Claude model list returned %s, probing messages", response.status)
        except (NetworkFailure, orjson.JSONDecodeError, UnexpectedResponse) as err:
            logger.debug("Claude model list unavailable (%s), probing messages", err)

        url = smart_join_url(base_url, "/v1/messages")
        try:
            response = await self._transport.request(HttpRequest(
                url=url,
                method="POST",
                headers={**headers, "Content-Type": "application/json"},
                body=orjson.dumps({
                    "model": CLAUDE_PROBE_MODEL,
                    "max_tokens": 1,
                    "messages": [{"role": "user", "content": "Hi"}],
                }).decode("utf-8"),
                timeout=PROBE_TIMEOUT,
            ))
        except NetworkFailure as err:
            logger.info("Claude key test could not reach %s: %s", url, err)
            return ApiTestResult(
                status=ProbeStatus.ERROR, message=CONNECTION_FAILED, details=str(err),
            )
        if response.status == 200:
            return ApiTestResult(
                status=ProbeStatus.SUCCESS,
                message=VALID_KEY,
                details="Connected to the messages endpoint",
            )
        return self._classify(response)

    async def _test_generic(self, base_url: str, api_key: str) -> ApiTestResult:
        try:
            response = await self._transport.request(HttpRequest(
                url=base_url,
                method="GET",
                headers={"Authorization": f"Bearer {api_key}"},
                timeout=REACHABILITY_TIMEOUT,
            ))
        except NetworkFailure as err:
            return ApiTestResult(
                status=ProbeStatus.ERROR, message=PROVIDER_UNREACHABLE, details=str(err),
            )
        if response.status in (200, 401):
            # 401: the endpoint is live and rejected this key
            return ApiTestResult(
                status=ProbeStatus.SUCCESS,
                message=PROVIDER_REACHABLE,
                details=(
                    "Endpoint reachable, key may be invalid"
                    if response.status == 401 else "Endpoint healthy"
                ),
            )
        return ApiTestResult(
            status=ProbeStatus.ERROR,
            message=PROVIDER_UNREACHABLE,
            details=response.status_line,
        )

    # ------------------------------------------------------------------
    # Model tests
    # ------------------------------------------------------------------

    def _model_request(
        self, provider: Provider, api_key: str, model_id: str, message: str
    ) -> HttpRequest:
        if provider.api_type is ApiType.CLAUDE:
            return HttpRequest(
                url=smart_join_url(provider.base_url, "/v1/messages"),
                method="POST",
                headers={
                    "x-api-key": api_key,
                    "anthropic-version": ANTHROPIC_VERSION,
                    "Content-Type": "application/json",
                },
                body=orjson.dumps({
                    "model": model_id,
                    "max_tokens": MODEL_TEST_MAX_TOKENS,
                    "messages": [{"role": "user", "content": message}],
                    "temperature": MODEL_TEST_TEMPERATURE,
                }).decode("utf-8"),
                timeout=MODEL_TIMEOUT,
            )
        return HttpRequest(
            url=smart_join_url(provider.base_url, "/v1/chat/completions"),
            method="POST",
            headers={
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
            },
            body=orjson.dumps({
                "model": model_id,
                "messages": [{"role": "user", "content": message}],
                "max_tokens": MODEL_TEST_MAX_TOKENS,
                "temperature": MODEL_TEST_TEMPERATURE,
            }).decode("utf-8"),
            timeout=MODEL_TIMEOUT,
        )

    @staticmethod
    def _reply_text(api_type: ApiType, data: Any) -> str:
        if not isinstance(data, dict):
            raise UnexpectedResponse("Reply is not an object")
        if api_type is ApiType.CLAUDE:
            # {"content": [{"type": "text", "text": ...}]}
            content = data.get("content") or []
            if not isinstance(content, list):
                raise UnexpectedResponse("Reply \"content\" is not an array")
            if not content:
                return ""
            if not isinstance(content[0], dict):
                raise UnexpectedResponse("Reply content block is not an object")
            text = content[0].get("text") or ""
        else:
            # {"choices": [{"message": {"content": ...}}]}
            choices = data.get("choices") or []
            if not isinstance(choices, list):
                raise UnexpectedResponse("Reply \"choices\" is not an array")
            if not choices:
                return ""
            if not isinstance(choices[0], dict):
                raise UnexpectedResponse("Reply choice is not an object")
            message = choices[0].get("message") or {}
            if not isinstance(message, dict):
                raise UnexpectedResponse("Reply message is not an object")
            text = message.get("content") or ""
        if not isinstance(text, str):
            raise UnexpectedResponse("Reply text is not a string")
        return text

    async def test_model(
        self,
        provider: Provider,
        api_key: str,
        model_id: str,
        message: str = DEFAULT_TEST_MESSAGE,
        cancel: Optional[asyncio.Event] = None,
    ) -> ModelTestResult:
        """Send one message to ``model_id`` and return its reply.

        ``cancel`` is checked right before the request is dispatched.  A
        cancellation that arrives while the request is in flight only stops
        the local processing of its response.
        """
        request = self._model_request(provider, api_key, model_id, message)
        if cancel is not None and cancel.is_set():
            return _cancelled()
        try:
            response = await self._transport.request(request)
        except NetworkFailure as err:
            return ModelTestResult(
                status=ProbeStatus.ERROR,
                message=MODEL_TEST_FAILED,
                error=str(err),
                timestamp=time.time(),
            )
        if cancel is not None and cancel.is_set():
            return _cancelled()
        if response.status == 200:
            try:
                data = response.json()
            except orjson.JSONDecodeError:
                return ModelTestResult(
                    status=ProbeStatus.ERROR,
                    message=MODEL_TEST_FAILED,
                    error="Response is not valid JSON",
                    timestamp=time.time(),
                )
            try:
                reply = self._reply_text(provider.api_type, data)
            except UnexpectedResponse as err:
                logger.info("Model test for %s got an unexpected reply: %s", model_id, err)
                return ModelTestResult(
                    status=ProbeStatus.ERROR,
                    message=MODEL_TEST_FAILED,
                    error=f"Unexpected response shape: {err}",
                    timestamp=time.time(),
                )
            return ModelTestResult(
                status=ProbeStatus.SUCCESS,
                message=MODEL_TEST_SUCCESS,
                response=reply,
                timestamp=time.time(),
            )
        if response.status == 401:
            return ModelTestResult(
                status=ProbeStatus.ERROR,
                message=INVALID_KEY,
                error="Authentication failed",
                timestamp=time.time(),
            )
        if response.status == 429:
            return ModelTestResult(
                status=ProbeStatus.ERROR,
                message=RATE_LIMITED,
                error="Too many requests, try again later",
                timestamp=time.time(),
            )
        return ModelTestResult(
            status=ProbeStatus.ERROR,
            message=MODEL_TEST_FAILED,
            error=_error_message(response),
            timestamp=time.time(),
        )
