import datetime
import logging
import secrets
import threading
from dataclasses import dataclass

from .errors import ConfigurationError
from .messages import build_logout_request
from .timeutil import utcnow

logger = logging.getLogger(__name__)

DEFAULT_LIFETIME = datetime.timedelta(hours=8)


@dataclass(frozen=True)
class SessionHandle:
    id: str
    idp_key: str
    name_id: str
    session_index: str
    expires_at: datetime.datetime

    @property
    def key(self):
        return (self.idp_key, self.name_id, self.session_index)


class SessionBinding:
    """Application sessions backed by validated assertions.

    A session lives until the assertion stops being valid unless the host
    application passes an explicit ``lifetime`` to :meth:`bind`.
    """

    def __init__(self, correlation_store=None, clock=utcnow, default_lifetime=DEFAULT_LIFETIME):
        self.correlation_store = correlation_store
        self.clock = clock
        self.default_lifetime = default_lifetime
        self._sessions = {}
        self._by_key = {}
        self._lock = threading.Lock()

    def bind(self, identity, context, lifetime=None):
        if identity.idp_key != context.idp_key:
            raise ConfigurationError(
                f"Identity from IdP {identity.idp_key} cannot bind to {context.idp_key}",
                idp_key=context.idp_key,
            )
        now = self.clock()
        if lifetime is not None:
            if not isinstance(lifetime, datetime.timedelta):
                lifetime = datetime.timedelta(seconds=lifetime)
            expires_at = now + lifetime
        else:
            expires_at = identity.not_on_or_after or now + self.default_lifetime

        handle = SessionHandle(
            id=secrets.token_urlsafe(32),
            idp_key=identity.idp_key,
            name_id=identity.name_id,
            session_index=identity.session_index,
            expires_at=expires_at,
        )
        with self._lock:
            previous = self._by_key.pop(handle.key, None)
            if previous is not None:
                self._sessions.pop(previous, None)
            self._sessions[handle.id] = (handle, identity)
            self._by_key[handle.key] = handle.id
        logger.info(f"[saml2] bound session for IdP {handle.idp_key} until {expires_at.isoformat()}")
        return handle

    def get(self, handle_id):
        """Return ``(handle, identity)`` for a live session, else None."""
        with self._lock:
            entry = self._sessions.get(handle_id)
            if entry is None:
                return None
            handle, identity = entry
            if self.clock() >= handle.expires_at:
                self._drop(handle)
                return None
            return entry

    def _drop(self, handle):
        self._sessions.pop(handle.id, None)
        if self._by_key.get(handle.key) == handle.id:
            del self._by_key[handle.key]

    def unbind(self, handle, context=None, relay_state=None):
        """End the session; returns the IdP logout redirect when SLO applies."""
        with self._lock:
            entry = self._sessions.get(handle.id)
            self._drop(handle)
        if entry is None:
            return None
        _, identity = entry
        logger.info(f"[saml2] unbound session for IdP {handle.idp_key}")

        if context is None or not context.idp.slo_url:
            return None
        target, request_id = build_logout_request(
            context,
            identity.name_id,
            session_index=identity.session_index,
            relay_state=relay_state,
            name_id_format=identity.name_id_format,
        )
        if self.correlation_store is not None:
            self.correlation_store.issue(request_id, context.idp_key, kind="logout")
        return target

    def unbind_matching(self, idp_key, name_id, session_indexes=()):
        """Drop sessions named by an IdP-initiated LogoutRequest."""
        with self._lock:
            doomed = [
                handle for handle, _ in self._sessions.values()
                if handle.idp_key == idp_key and handle.name_id == name_id
                and (not session_indexes or handle.session_index in session_indexes)
            ]
            for handle in doomed:
                self._drop(handle)
        if doomed:
            logger.info(f"[saml2] IdP {idp_key} ended {len(doomed)} session(s)")
        return len(doomed)

    def __len__(self):
        with self._lock:
            return len(self._sessions)
