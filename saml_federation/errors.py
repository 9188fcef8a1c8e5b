"""Error taxonomy of the SP engine.

Every validation failure carries the ``step`` it was raised from so that
operators can see where an inbound message was rejected without the message
itself ending up in the logs.
"""


class Saml2Error(Exception):
    step = "saml2"

    def __init__(self, message, idp_key=None):
        super().__init__(message)
        self.idp_key = idp_key


class DecodeError(Saml2Error):
    step = "decode"


class SchemaError(Saml2Error):
    step = "schema"


class StatusError(SchemaError):
    """The IdP answered with a non-success status code."""

    step = "status"

    def __init__(self, message, status_code=None, idp_key=None):
        super().__init__(message, idp_key=idp_key)
        self.status_code = status_code


class SignatureError(Saml2Error):
    step = "signature"


class ExpiredError(Saml2Error):
    step = "temporal"


class AudienceError(Saml2Error):
    step = "audience"


class IssuerError(AudienceError):
    step = "issuer"


class CorrelationError(Saml2Error):
    step = "correlation"


class ResolutionNotFound(Saml2Error):
    step = "resolve"


class ConfigurationError(Saml2Error):
    step = "configuration"


class TenantError(Saml2Error):
    step = "tenant"
