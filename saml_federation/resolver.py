import logging
from dataclasses import dataclass, replace

from .config import IdpConfig, Settings, SpConfig
from .errors import ResolutionNotFound

logger = logging.getLogger(__name__)


class _NotFound:
    def __bool__(self):
        return False

    def __repr__(self):
        return "NOT_FOUND"


NOT_FOUND = _NotFound()


@dataclass(frozen=True)
class ResolvedContext:
    """Everything one request needs to talk to its IdP.

    Created per request and never shared between requests.
    """

    idp: IdpConfig
    sp: SpConfig
    settings: Settings
    hint: str = None

    @property
    def idp_key(self):
        return self.idp.key


class IdpResolver:
    def __init__(self, repository, settings, metadata_cache=None, sp_defaults=None):
        self.repository = repository
        self.settings = settings
        self.metadata_cache = metadata_cache
        # callable(idp_key) -> {"entity_id": ..., "acs_url": ..., "sls_url": ...}
        self.sp_defaults = sp_defaults

    def resolve(self, hint):
        tenant = self.repository.find_by_hint(hint)
        if tenant is None:
            logger.debug(f"[saml2] IdP is not resolved for hint {hint!r}, skipping initialization")
            return NOT_FOUND

        idp = self._with_cached_metadata(tenant.idp)
        sp = self.settings.sp
        if self.sp_defaults is not None:
            sp = sp.with_defaults(self.sp_defaults(idp.key))
        logger.debug(f"[saml2] resolved IdP {idp.key} from hint {hint!r}")
        return ResolvedContext(idp=idp, sp=sp, settings=self.settings, hint=hint)

    def resolve_or_raise(self, hint):
        context = self.resolve(hint)
        if context is NOT_FOUND:
            raise ResolutionNotFound(f"No IdP configured for {hint!r}")
        return context

    def _with_cached_metadata(self, idp):
        if idp.certificate or not idp.metadata_url or self.metadata_cache is None:
            return idp
        descriptor = self.metadata_cache.get(idp.metadata_url)
        if descriptor is None:
            # validation will fail closed for lack of a certificate
            logger.warning(f"[saml2] no cached metadata for IdP {idp.key}")
            return idp
        return replace(
            idp,
            certificate=descriptor.certificates[0] if descriptor.certificates else None,
            sso_url=idp.sso_url or descriptor.sso_url,
            slo_url=idp.slo_url or descriptor.slo_url,
        )
