"""
AuthSessionGuard — password gate for sensitive key operations.

A verified password opens a session window of ``session_ttl`` seconds during
which sensitive actions (view, copy, edit, delete) run without prompting.
The session lives in memory only; a restart always starts locked.

State machine for a sensitive action::

    LOCKED --request, auth required--> PENDING_AUTH
    LOCKED --request, no password----> PASSWORD_SETUP
    PENDING_AUTH --wrong password----> PENDING_AUTH (AuthFailure raised)
    PENDING_AUTH --right password----> action runs, session refreshed, LOCKED
    PASSWORD_SETUP --setup done------> action runs, session opened, LOCKED

The deferred action is a coroutine function; its result is returned to the
caller that completes the authentication.
"""
import logging
from enum import Enum
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Iterable, Optional
from datetime import datetime

from .conf import MIN_PASSWORD_LENGTH, SESSION_TTL
from .crypto.gateway import CryptoGateway
from .exceptions import AuthFailure, PasswordNotConfigured, ValidationError
from .models import utcnow

logger = logging.getLogger("navigator.keyvault")

Handler = Callable[[], Awaitable[Any]]


class SensitiveAction(str, Enum):
    VIEW = "view"
    COPY = "copy"
    EDIT = "edit"
    DELETE = "delete"


class GuardState(str, Enum):
    LOCKED = "locked"
    PENDING_AUTH = "pending-auth"
    PASSWORD_SETUP = "password-setup"


@dataclass
class PendingAction:
    action: SensitiveAction
    key_id: str
    handler: Handler


@dataclass
class AuthOutcome:
    """Result of a guarded request.

    ``completed`` is True when the action ran; ``result`` then holds its
    return value.  Otherwise ``state`` tells the caller which prompt to show.
    """
    state: GuardState
    completed: bool = False
    result: Any = None
    action: Optional[SensitiveAction] = None
    key_id: Optional[str] = None


def validate_new_password(
    password: str,
    confirm: Optional[str] = None,
    min_length: int = MIN_PASSWORD_LENGTH,
) -> None:
    """Raises:
        ValidationError: password too short or confirmation mismatch.
    """
    if len(password or "") < min_length:
        raise ValidationError(
            f"Password must be at least {min_length} characters"
        )
    if confirm is not None and password != confirm:
        raise ValidationError("Password confirmation does not match")


class AuthSessionGuard:
    """Gates sensitive actions behind a time-limited password session."""

    def __init__(
        self,
        crypto: CryptoGateway,
        session_ttl: int = SESSION_TTL,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._crypto = crypto
        self._ttl = session_ttl
        self._clock = clock
        self._last_auth_time: Optional[datetime] = None
        self._pending: Optional[PendingAction] = None
        self._state = GuardState.LOCKED

    @property
    def state(self) -> GuardState:
        return self._state

    @property
    def pending(self) -> Optional[PendingAction]:
        return self._pending

    @property
    def last_auth_time(self) -> Optional[datetime]:
        return self._last_auth_time

    def session_alive(self) -> bool:
        if self._last_auth_time is None:
            return False
        elapsed = (self._clock() - self._last_auth_time).total_seconds()
        return elapsed < self._ttl

    async def has_password(self) -> bool:
        return await self._crypto.has_password()

    async def require_auth(self) -> bool:
        """True when a password is configured and the session is stale."""
        if not await self._crypto.has_password():
            return False
        return not self.session_alive()

    def mark_authenticated(self) -> None:
        self._last_auth_time = self._clock()

    def reset(self) -> None:
        """Close the session window and drop any pending action."""
        self._last_auth_time = None
        self.cancel()

    def cancel(self) -> None:
        self._pending = None
        self._state = GuardState.LOCKED

    def discard(self, key_ids: Iterable[str]) -> bool:
        """Drop the pending action when it targets one of ``key_ids``."""
        if self._pending is None or self._pending.key_id not in set(key_ids):
            return False
        logger.debug(
            "Pending %s on key=%s dropped, key deleted",
            self._pending.action.value, self._pending.key_id,
        )
        self.cancel()
        return True

    async def _run(self, pending: PendingAction) -> AuthOutcome:
        self._pending = None
        self._state = GuardState.LOCKED
        result = await pending.handler()
        return AuthOutcome(
            state=GuardState.LOCKED,
            completed=True,
            result=result,
            action=pending.action,
            key_id=pending.key_id,
        )

    async def request(
        self, action: SensitiveAction, key_id: str, handler: Handler
    ) -> AuthOutcome:
        """Run ``handler`` now if the session allows it, else defer it."""
        action = SensitiveAction(action)
        pending = PendingAction(action=action, key_id=key_id, handler=handler)
        if not await self._crypto.has_password():
            self._pending = pending
            self._state = GuardState.PASSWORD_SETUP
            logger.debug("Action %s on key=%s needs password setup", action.value, key_id)
            return AuthOutcome(state=self._state, action=action, key_id=key_id)
        if not self.session_alive():
            self._pending = pending
            self._state = GuardState.PENDING_AUTH
            logger.debug("Action %s on key=%s waiting for password", action.value, key_id)
            return AuthOutcome(state=self._state, action=action, key_id=key_id)
        return await self._run(pending)

    async def verify(self, password: str) -> bool:
        """Verify a password and refresh the session on success."""
        if not password:
            raise AuthFailure("Password is required")
        if not await self._crypto.verify_password(password):
            logger.info("Vault password verification failed")
            return False
        self.mark_authenticated()
        return True

    async def submit_password(self, password: str) -> AuthOutcome:
        """Complete a PENDING_AUTH request.

        Raises:
            AuthFailure: wrong password; the action stays pending.
        """
        if not await self.verify(password):
            raise AuthFailure("Invalid password")
        if self._pending is None:
            return AuthOutcome(state=GuardState.LOCKED)
        return await self._run(self._pending)

    async def complete_setup(
        self, password: str, confirm: Optional[str] = None
    ) -> AuthOutcome:
        """Configure the first password, open a session, run the deferred action."""
        if await self._crypto.has_password():
            raise AuthFailure("A password is already configured")
        validate_new_password(password, confirm)
        await self._crypto.setup_password(password)
        self.mark_authenticated()
        logger.info("Vault password set up")
        if self._pending is None:
            self._state = GuardState.LOCKED
            return AuthOutcome(state=GuardState.LOCKED)
        return await self._run(self._pending)

    async def change_password(
        self, old_password: str, new_password: str, confirm: Optional[str] = None
    ) -> None:
        if not await self._crypto.has_password():
            raise PasswordNotConfigured("Password not set up")
        if not old_password:
            raise ValidationError("Current password is required")
        validate_new_password(new_password, confirm)
        await self._crypto.change_password(old_password, new_password)
        self.mark_authenticated()
        logger.info("Vault password changed")
