import logging
import threading
import time
from dataclasses import dataclass

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PendingRequest:
    request_id: str
    idp_key: str
    kind: str
    expires_at: float


class CorrelationStore:
    """Request IDs awaiting an answer from an IdP, shared by all requests.

    ``consume`` is the only way a record leaves the store before it expires,
    and it is atomic: of two concurrent validations of the same response at
    most one wins.
    """

    def __init__(self, ttl=600, clock=time.time):
        self.ttl = ttl
        self._clock = clock
        self._pending = {}
        self._seen_assertions = {}
        self._lock = threading.Lock()

    def issue(self, request_id, idp_key, kind="authn"):
        record = PendingRequest(request_id, idp_key, kind, self._clock() + self.ttl)
        with self._lock:
            self._purge()
            self._pending[request_id] = record
        return record

    def _matches(self, record, idp_key, kind):
        return (
            record is not None
            and record.idp_key == idp_key
            and record.kind == kind
            and record.expires_at > self._clock()
        )

    def is_pending(self, request_id, idp_key, kind="authn"):
        with self._lock:
            return self._matches(self._pending.get(request_id), idp_key, kind)

    def consume(self, request_id, idp_key, kind="authn"):
        with self._lock:
            record = self._pending.get(request_id)
            if not self._matches(record, idp_key, kind):
                return False
            del self._pending[request_id]
            return True

    def remember_assertion(self, assertion_id, expires_at):
        """Record *assertion_id*; False when it was already seen."""
        with self._lock:
            self._purge()
            if assertion_id in self._seen_assertions:
                return False
            self._seen_assertions[assertion_id] = expires_at
            return True

    def forget_assertion(self, assertion_id):
        with self._lock:
            self._seen_assertions.pop(assertion_id, None)

    def _purge(self):
        now = self._clock()
        for key in [k for k, r in self._pending.items() if r.expires_at <= now]:
            del self._pending[key]
        for key in [k for k, exp in self._seen_assertions.items() if exp <= now]:
            del self._seen_assertions[key]

    def __len__(self):
        with self._lock:
            return len(self._pending)
