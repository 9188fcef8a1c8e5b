import logging

from .backend import default_backend
from .constants import BINDING_HTTP_POST, BINDING_HTTP_REDIRECT
from .messages import build_authn_request, build_logout_response
from .metadata import publish_metadata
from .responses import ResponseValidator
from .timeutil import utcnow

logger = logging.getLogger(__name__)


class Saml2Auth:
    """SAML operations bound to one resolved IdP for the current request."""

    def __init__(self, context, correlation_store, sessions, backend=None, clock=utcnow):
        self.context = context
        self.correlation_store = correlation_store
        self.sessions = sessions
        self.backend = backend or default_backend
        self.validator = ResponseValidator(context, correlation_store, backend=self.backend, clock=clock)

    @property
    def idp_key(self):
        return self.context.idp_key

    def login(self, return_to=None, binding=BINDING_HTTP_REDIRECT, force_authn=False, is_passive=False):
        target, request_id = build_authn_request(
            self.context,
            relay_state=return_to,
            binding=binding,
            force_authn=force_authn,
            is_passive=is_passive,
            backend=self.backend,
        )
        self.correlation_store.issue(request_id, self.idp_key)
        return target

    def acs(self, saml_response, lifetime=None):
        """Validate the posted response and open a session; returns ``(handle, identity)``."""
        identity = self.validator.validate_response(saml_response, binding=BINDING_HTTP_POST)
        handle = self.sessions.bind(identity, self.context, lifetime=lifetime)
        return handle, identity

    def sls(self, saml_request=None, saml_response=None, binding=BINDING_HTTP_REDIRECT,
            query_string=None, relay_state=None):
        """Handle a LogoutResponse (returns None) or an IdP LogoutRequest (returns the reply)."""
        if saml_response:
            self.validator.validate_logout_response(saml_response, binding, query_string)
            return None

        info = self.validator.validate_logout_request(saml_request, binding, query_string)
        self.sessions.unbind_matching(self.idp_key, info.name_id, info.session_indexes)
        target, _ = build_logout_response(self.context, info.id, relay_state=relay_state,
                                          backend=self.backend)
        return target

    def logout(self, handle, return_to=None):
        return self.sessions.unbind(handle, self.context, relay_state=return_to)

    def metadata(self):
        return publish_metadata(self.context.sp, self.context.settings.want_assertions_signed)
