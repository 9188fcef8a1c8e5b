import logging

from flask import session, url_for
from werkzeug.middleware.proxy_fix import ProxyFix

from .auth import Saml2Auth
from .backend import default_backend
from .commands import saml2_cli
from .config import DEFAULTS, Settings, load_idps
from .correlation import CorrelationStore
from .metadata import IdpMetadataCache, MetadataRefresher
from .resolver import NOT_FOUND, IdpResolver
from .session import SessionBinding
from .tenants import SqliteTenantRepository, StaticTenantRepository
from .views import SESSION_KEY, bp

logger = logging.getLogger(__name__)


class Saml2:
    """Flask extension exposing a multi-tenant SAML2 service provider.

    Configuration lives under ``app.config["SAML2"]``; see ``config.DEFAULTS``
    for the recognised keys.
    """

    def __init__(self, app=None, repository=None, correlation_store=None, sessions=None,
                 metadata_cache=None, backend=None):
        self.repository = repository
        self.correlation_store = correlation_store
        self.sessions = sessions
        self.metadata_cache = metadata_cache
        self.backend = backend or default_backend
        self.config = None
        self.settings = None
        self.resolver = None
        self.refresher = None
        if app is not None:
            self.init_app(app)

    def init_app(self, app):
        config = dict(DEFAULTS)
        config.update(app.config.get("SAML2") or {})
        self.config = config
        self.settings = Settings.from_mapping(config)

        if self.repository is None:
            if config["tenant_db"]:
                self.repository = SqliteTenantRepository(config["tenant_db"])
            else:
                self.repository = StaticTenantRepository(load_idps(config["idps"]))
        if self.correlation_store is None:
            self.correlation_store = CorrelationStore(ttl=self.settings.request_ttl_seconds)
        if self.sessions is None:
            self.sessions = SessionBinding(self.correlation_store)
        if self.metadata_cache is None:
            self.metadata_cache = IdpMetadataCache(ttl=self.settings.metadata_ttl_seconds)
        self.resolver = IdpResolver(self.repository, self.settings, self.metadata_cache,
                                    sp_defaults=self._sp_defaults)
        self.refresher = MetadataRefresher(self.metadata_cache, self._metadata_urls)
        if config["metadata_refresh"]:
            self.refresher.start()

        if config["proxy_vars"]:
            app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1, x_port=1)
        if config["use_routes"]:
            app.register_blueprint(bp, url_prefix=config["routes_prefix"])
        app.cli.add_command(saml2_cli)
        app.extensions["saml2"] = self

    def _metadata_urls(self):
        return [t.idp.metadata_url for t in self.repository.all() if t.idp.metadata_url]

    def _sp_defaults(self, idp_key):
        if not self.config["use_routes"]:
            return {}
        return {
            "entity_id": url_for("saml2.metadata", idp_key=idp_key, _external=True),
            "acs_url": url_for("saml2.acs", idp_key=idp_key, _external=True),
            "sls_url": url_for("saml2.sls", idp_key=idp_key, _external=True),
        }

    def auth_for(self, hint):
        """Resolve *hint* to a request-scoped :class:`Saml2Auth`, or None."""
        context = self.resolver.resolve(hint)
        if context is NOT_FOUND:
            return None
        return Saml2Auth(context, self.correlation_store, self.sessions, backend=self.backend)

    def current_session(self):
        """``(handle, identity)`` of the signed-in user, if any."""
        handle_id = session.get(SESSION_KEY)
        if not handle_id:
            return None
        return self.sessions.get(handle_id)

    def current_identity(self):
        current = self.current_session()
        return current[1] if current else None
