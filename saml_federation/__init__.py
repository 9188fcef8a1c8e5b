from .auth import Saml2Auth
from .config import IdpConfig, Settings, SpConfig
from .correlation import CorrelationStore
from .errors import (
    AudienceError,
    ConfigurationError,
    CorrelationError,
    DecodeError,
    ExpiredError,
    IssuerError,
    ResolutionNotFound,
    Saml2Error,
    SchemaError,
    SignatureError,
    StatusError,
    TenantError,
)
from .extension import Saml2
from .messages import build_authn_request, build_logout_request, build_logout_response
from .metadata import IdpMetadataCache, publish_metadata
from .resolver import NOT_FOUND, IdpResolver, ResolvedContext
from .responses import AuthenticatedIdentity, ResponseValidator
from .session import SessionBinding, SessionHandle
from .tenants import SqliteTenantRepository, StaticTenantRepository, TenantRepository

__version__ = "0.1.0"
