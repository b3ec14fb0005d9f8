"""
Identity provider: who is using the notes app right now.

A principal is absent (nobody signed in), a guest (anonymous placeholder
identity) or full (linked account). Signing in from a guest keeps the guest's
uid so data written as a guest stays reachable. Signing out drops back to a
fresh guest so the app stays usable.
"""
import logging
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional

logger = logging.getLogger(__name__)


class PrincipalKind(Enum):
    ABSENT = "absent"
    GUEST = "guest"
    FULL = "full"


@dataclass(frozen=True)
class Principal:
    uid: Optional[str]
    kind: PrincipalKind
    display_name: str = ""

    @property
    def has_access(self) -> bool:
        """Only full principals may see or change notes."""
        return self.kind == PrincipalKind.FULL and bool(self.uid)


ABSENT = Principal(uid=None, kind=PrincipalKind.ABSENT)


def _new_uid() -> str:
    return uuid.uuid4().hex[:20]


class IdentityProvider:
    """In-process identity provider with change notifications."""

    def __init__(self, principal: Principal = ABSENT):
        self._current = principal
        self._subscribers: List[Callable[[Principal], None]] = []

    @property
    def current(self) -> Principal:
        return self._current

    def subscribe(self, callback: Callable[[Principal], None]) -> Callable[[], None]:
        """Register a change callback. Returns an unsubscribe callable."""
        self._subscribers.append(callback)

        def unsubscribe():
            if callback in self._subscribers:
                self._subscribers.remove(callback)
        return unsubscribe

    def _set(self, principal: Principal) -> None:
        if principal == self._current:
            return
        logger.info(f"Principal {self._current.kind.value} -> {principal.kind.value}")
        self._current = principal
        for callback in list(self._subscribers):
            try:
                callback(principal)
            except Exception:
                logger.exception("Error in identity change callback")

    def ensure_guest(self) -> Principal:
        """Make sure somebody is signed in, anonymously if need be."""
        if self._current.kind == PrincipalKind.ABSENT:
            self._set(Principal(uid=_new_uid(), kind=PrincipalKind.GUEST))
        return self._current

    def sign_in(self, display_name: str = "") -> Principal:
        """
        Attach a full identity.

        A guest is linked in place (uid preserved); an absent principal gets a
        new uid; a full principal is left as is.
        """
        current = self._current
        if current.kind == PrincipalKind.FULL:
            return current
        uid = current.uid if current.kind == PrincipalKind.GUEST else _new_uid()
        self._set(Principal(uid=uid, kind=PrincipalKind.FULL, display_name=display_name))
        return self._current

    def sign_out(self) -> Principal:
        """Sign out and continue as a fresh guest."""
        self._set(ABSENT)
        return self.ensure_guest()
