from typing import Any, Optional
from collections.abc import Iterator, MutableMapping

# The only fields that ever reach disk.
PERSISTED_FIELDS = frozenset({'providers', 'apiKeys', 'selectedProviderId'})


class VaultState(MutableMapping[str, Any]):
    """Vault dict-like state.

    Persisted fields (providers, apiKeys, selectedProviderId) are stored in
    _data, which is the whole persisted surface.  Everything else (revealed
    plaintext, edit form context, test results) is volatile and stored in
    _objects; it never reaches the storage backend and is dropped by
    ``invalidate()``.
    """

    _internal_attrs = frozenset({'_data', '_objects', '_changed', 'is_changed'})

    def __init__(self, data: Optional[dict] = None) -> None:
        object.__setattr__(self, '_data', {
            'providers': [],
            'apiKeys': [],
            'selectedProviderId': None,
        })
        object.__setattr__(self, '_objects', {})
        object.__setattr__(self, '_changed', False)
        if data:
            for key, value in data.items():
                if key in PERSISTED_FIELDS:
                    self._data[key] = value

    def __repr__(self) -> str:
        return (
            f'<KeyVault-State [changed:{self._changed}] '
            f'providers={len(self._data["providers"])}, '
            f'keys={len(self._data["apiKeys"])}, '
            f'objects={list(self._objects.keys())}>'
        )

    # --- Routing helpers ---

    def _get_value(self, key: str) -> Any:
        if key in self._data:
            return self._data[key]
        if key in self._objects:
            return self._objects[key]
        raise KeyError(key)

    def _set_value(self, key: str, value: Any) -> None:
        """Persisted fields go to _data and flag a change, the rest to _objects."""
        if key in PERSISTED_FIELDS:
            self._data[key] = value
            self._changed = True
        else:
            self._objects[key] = value

    def _del_value(self, key: str) -> None:
        if key in PERSISTED_FIELDS:
            raise KeyError(f"{key} is a persisted field and cannot be removed")
        del self._objects[key]

    # --- Properties ---

    @property
    def is_changed(self) -> bool:
        return self._changed

    @is_changed.setter
    def is_changed(self, value: bool) -> None:
        self._changed = value

    def volatile(self, key: str) -> dict:
        """Return (creating it if needed) a volatile per-id mapping."""
        if key in PERSISTED_FIELDS:
            raise KeyError(f"{key} is a persisted field")
        return self._objects.setdefault(key, {})

    def session_data(self) -> dict:
        """Return only the persisted surface."""
        return self._data

    def session_objects(self) -> dict:
        """Return volatile objects (not persisted)."""
        return self._objects

    def invalidate(self) -> None:
        """Drop every volatile object (revealed secrets included)."""
        self._objects = {}

    # --- Magic Methods ---

    def __len__(self) -> int:
        return len(self._data) + len(self._objects)

    def __iter__(self) -> Iterator[str]:
        yield from self._data
        yield from self._objects

    def __contains__(self, key: object) -> bool:
        return key in self._data or key in self._objects

    def __getitem__(self, key: str) -> Any:
        return self._get_value(key)

    def __setitem__(self, key: str, value: Any) -> None:
        self._set_value(key, value)

    def __delitem__(self, key: str) -> None:
        self._del_value(key)

    def __getattr__(self, key: str) -> Any:
        if key.startswith('_'):
            raise AttributeError(key)
        try:
            return self._get_value(key)
        except KeyError:
            raise AttributeError(key) from None

    def __setattr__(self, key: str, value: Any) -> None:
        if key in self._internal_attrs or key.startswith('_'):
            object.__setattr__(self, key, value)
        else:
            self._set_value(key, value)
