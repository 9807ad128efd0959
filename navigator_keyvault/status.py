"""
Expiry status of keys and their display ordering.

All functions are pure: the current time is always passed in.
"""
import math
from typing import Optional
from datetime import datetime, timedelta
from collections.abc import Iterable

from .conf import EXPIRING_SOON_DAYS
from .models import (
    ApiKey,
    ApiKeyWithStatus,
    KeyStatus,
    Provider,
    ProviderWithKeys,
    as_utc,
)

_DAY = timedelta(days=1)


def days_until_expiry(key: ApiKey, now: datetime) -> Optional[int]:
    """Whole days left before ``key`` expires, rounded up; None if it never does."""
    if key.expires_at is None:
        return None
    return math.ceil((key.expires_at - as_utc(now)) / _DAY)


def key_status(key: ApiKey, now: datetime) -> KeyStatus:
    days = days_until_expiry(key, now)
    if days is None:
        return KeyStatus.VALID
    if days <= 0:
        return KeyStatus.EXPIRED
    if days <= EXPIRING_SOON_DAYS:
        return KeyStatus.EXPIRING_SOON
    return KeyStatus.VALID


def with_status(key: ApiKey, now: datetime) -> ApiKeyWithStatus:
    return ApiKeyWithStatus(
        **dict(key),
        status=key_status(key, now),
        days_until_expiry=days_until_expiry(key, now),
    )


def sort_keys(keys: Iterable[ApiKeyWithStatus]) -> list[ApiKeyWithStatus]:
    """Valid keys first, newest first inside each group.

    Ties keep their original order (``sorted`` is stable).
    """
    return sorted(
        keys,
        key=lambda k: (k.status != KeyStatus.VALID, -k.created_at.timestamp()),
    )


def build_provider_with_keys(
    provider: Provider,
    keys: Iterable[ApiKey],
    now: datetime,
) -> ProviderWithKeys:
    """Attach a provider's keys, with status and in display order."""
    provider_keys = sort_keys(
        with_status(k, now) for k in keys if k.provider_id == provider.id
    )
    return ProviderWithKeys(
        **dict(provider),
        keys=provider_keys,
        valid_count=sum(1 for k in provider_keys if k.status == KeyStatus.VALID),
        expired_count=sum(1 for k in provider_keys if k.status == KeyStatus.EXPIRED),
    )
