"""Validation of inbound SAML Responses, LogoutResponses and LogoutRequests.

A Response is accepted only when every check passes:

1. decode (base64, inflate for the redirect binding)
2. structural checks and the status code
3. signature(s) against the resolved IdP certificate; from here on only the
   signed subtree is read
4. NotBefore / NotOnOrAfter of the conditions and bearer confirmations
5. audience, recipient, destination and issuer
6. InResponseTo against the pending requests of the same IdP
7. single-use consumption of the request id (and of the assertion ids)

The first failing check raises; nothing is returned or recorded on failure.
"""
import datetime
import logging
from dataclasses import dataclass, field
from urllib.parse import unquote_plus

from .backend import default_backend
from .constants import BINDING_HTTP_REDIRECT, BINDING_HTTP_POST, CM_BEARER, NS_SAMLP, NSMAP, STATUS_SUCCESS
from .errors import (
    AudienceError,
    ConfigurationError,
    CorrelationError,
    DecodeError,
    ExpiredError,
    IssuerError,
    Saml2Error,
    SchemaError,
    SignatureError,
    StatusError,
)
from .messages import decode_post_message, decode_redirect_message
from .timeutil import parse_instant, utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SubjectConfirmation:
    method: str
    recipient: str = None
    not_before: datetime.datetime = None
    not_on_or_after: datetime.datetime = None
    in_response_to: str = None


@dataclass(frozen=True)
class Assertion:
    id: str
    issuer: str
    name_id: str
    name_id_format: str = None
    not_before: datetime.datetime = None
    not_on_or_after: datetime.datetime = None
    audiences: tuple = ()
    confirmations: tuple = ()
    session_index: str = None
    session_not_on_or_after: datetime.datetime = None
    attributes: dict = field(default_factory=dict)
    signed: bool = False

    @property
    def expires_at(self):
        """Latest instant this assertion may be relied upon."""
        candidates = [self.not_on_or_after] + [c.not_on_or_after for c in self.confirmations]
        candidates = [c for c in candidates if c is not None]
        return min(candidates) if candidates else None


@dataclass(frozen=True)
class SamlResponse:
    id: str
    in_response_to: str
    issuer: str
    destination: str
    status: str
    assertions: tuple
    signed: bool = False


@dataclass(frozen=True)
class AuthenticatedIdentity:
    name_id: str
    attributes: dict
    session_index: str
    idp_key: str
    name_id_format: str = None
    not_on_or_after: datetime.datetime = None

    def get(self, name, default=None):
        values = self.attributes.get(name)
        return values[0] if values else default


@dataclass(frozen=True)
class LogoutRequestInfo:
    id: str
    issuer: str
    name_id: str
    session_indexes: tuple = ()
    not_on_or_after: datetime.datetime = None


def _text(el):
    # itertext keeps text split around comments or PIs together
    return "".join(el.itertext()).strip() if el is not None else None


def parse_assertion(el, signed):
    if not el.get("ID"):
        raise SchemaError("Assertion has no ID")
    subject = el.find("saml:Subject", NSMAP)
    name_el = subject.find("saml:NameID", NSMAP) if subject is not None else None
    if name_el is None or not _text(name_el):
        raise SchemaError("Assertion has no NameID")

    confirmations = []
    for conf in subject.findall("saml:SubjectConfirmation", NSMAP):
        data = conf.find("saml:SubjectConfirmationData", NSMAP)
        confirmations.append(SubjectConfirmation(
            method=conf.get("Method"),
            recipient=data.get("Recipient") if data is not None else None,
            not_before=parse_instant(data.get("NotBefore")) if data is not None else None,
            not_on_or_after=parse_instant(data.get("NotOnOrAfter")) if data is not None else None,
            in_response_to=data.get("InResponseTo") if data is not None else None,
        ))

    conditions = el.find("saml:Conditions", NSMAP)
    audiences = ()
    not_before = not_on_or_after = None
    if conditions is not None:
        not_before = parse_instant(conditions.get("NotBefore"))
        not_on_or_after = parse_instant(conditions.get("NotOnOrAfter"))
        audiences = tuple(_text(a) for a in conditions.findall("saml:AudienceRestriction/saml:Audience", NSMAP))

    authn = el.find("saml:AuthnStatement", NSMAP)
    attributes = {}
    for attr in el.findall("saml:AttributeStatement/saml:Attribute", NSMAP):
        values = tuple(_text(v) or "" for v in attr.findall("saml:AttributeValue", NSMAP))
        name = attr.get("Name")
        attributes[name] = attributes.get(name, ()) + values

    return Assertion(
        id=el.get("ID"),
        issuer=_text(el.find("saml:Issuer", NSMAP)),
        name_id=_text(name_el),
        name_id_format=name_el.get("Format"),
        not_before=not_before,
        not_on_or_after=not_on_or_after,
        audiences=audiences,
        confirmations=tuple(confirmations),
        session_index=authn.get("SessionIndex") if authn is not None else None,
        session_not_on_or_after=(parse_instant(authn.get("SessionNotOnOrAfter"))
                                 if authn is not None else None),
        attributes=attributes,
        signed=signed,
    )


def raw_query_params(query_string):
    """Split a query string without decoding values; signatures cover the raw form."""
    if isinstance(query_string, bytes):
        query_string = query_string.decode("ascii")
    params = {}
    for part in (query_string or "").split("&"):
        name, sep, value = part.partition("=")
        if sep and name not in params:
            params[name] = value
    return params


class ResponseValidator:
    def __init__(self, context, correlation_store, backend=None, clock=utcnow):
        self.context = context
        self.store = correlation_store
        self.backend = backend or default_backend
        self.clock = clock

    @property
    def idp_key(self):
        return self.context.idp_key

    @property
    def settings(self):
        return self.context.settings

    def _run(self, kind, func, *args):
        try:
            return func(*args)
        except Saml2Error as e:
            if e.idp_key is None:
                e.idp_key = self.idp_key
            logger.warning(f"[saml2] {kind} rejected for IdP {self.idp_key} at step '{e.step}': {e}")
            raise

    # -- Response -------------------------------------------------------

    def validate_response(self, payload, binding=BINDING_HTTP_POST):
        """Validate a SAMLResponse and return the identity it asserts."""
        return self._run("response", self._validate_response, payload, binding)

    def _validate_response(self, payload, binding):
        self.context.sp.check()
        root = self.backend.parse_xml(self._decode(payload, binding))
        self._check_response_structure(root)

        response = self._verified_response(root)
        now = self.clock()
        for assertion in response.assertions:
            self._check_times(assertion, now)
        for assertion in response.assertions:
            self._check_audience(assertion)
        self._check_destination_and_issuer(response)
        in_response_to = self._check_correlation(response)

        identity = self._project(response)
        self._consume(response, in_response_to)
        logger.info(f"[saml2] accepted response {response.id} from IdP {self.idp_key}")
        return identity

    def _decode(self, payload, binding):
        if not payload:
            raise DecodeError("Empty SAML message")
        if binding == BINDING_HTTP_REDIRECT:
            return decode_redirect_message(payload)
        return decode_post_message(payload)

    def _check_response_structure(self, root):
        if root.tag != "{%s}Response" % NS_SAMLP:
            raise SchemaError(f"Expected a samlp:Response, got {root.tag}")
        self._check_protocol_attributes(root)
        if root.find("saml:EncryptedAssertion", NSMAP) is not None:
            raise SchemaError("Encrypted assertions are not supported")
        assertions = root.findall("saml:Assertion", NSMAP)
        if not assertions:
            raise SchemaError("Response contains no Assertion")
        if self.settings.strict and len(assertions) > 1:
            raise SchemaError("Response contains more than one Assertion")
        self._check_status(root)

    def _check_protocol_attributes(self, root):
        if root.get("Version") != "2.0":
            raise SchemaError("Unsupported SAML version")
        if not root.get("ID") or not root.get("IssueInstant"):
            raise SchemaError("Message lacks ID or IssueInstant")
        parse_instant(root.get("IssueInstant"))
        ids = [el.get("ID") for el in root.iter() if el.get("ID")]
        if len(ids) != len(set(ids)):
            raise SchemaError("Duplicate ID attributes in message")

    def _check_status(self, root):
        code = root.find("samlp:Status/samlp:StatusCode", NSMAP)
        if code is None:
            raise SchemaError("Message has no StatusCode")
        value = code.get("Value")
        if value != STATUS_SUCCESS:
            message = root.findtext("samlp:Status/samlp:StatusMessage", namespaces=NSMAP)
            raise StatusError(f"IdP returned status {value}" + (f": {message}" if message else ""),
                              status_code=value)

    def _trust(self):
        idp = self.context.idp
        if not idp.has_trust_anchor():
            raise ConfigurationError(f"No certificate available for IdP {idp.key}", idp_key=idp.key)
        return {
            "certificate": idp.certificate,
            "fingerprint": idp.cert_fingerprint,
            "fingerprint_algorithm": idp.cert_fingerprint_algorithm,
        }

    def _verified_response(self, root):
        trust = self._trust()
        signed_root = self.backend.verify_signature(root, **trust)
        if signed_root is None and self.settings.want_messages_signed:
            raise SignatureError("The Response is not signed")

        scope = signed_root if signed_root is not None else root
        assertions = []
        for el in scope.findall("saml:Assertion", NSMAP):
            signed_assertion = self.backend.verify_signature(el, **trust)
            if signed_assertion is not None:
                assertions.append(parse_assertion(signed_assertion, signed=True))
                continue
            if signed_root is None:
                raise SignatureError("Neither the Response nor its Assertion is signed")
            if self.settings.want_assertions_signed:
                raise SignatureError("The Assertion is not signed")
            assertions.append(parse_assertion(el, signed=False))

        return SamlResponse(
            id=scope.get("ID"),
            in_response_to=scope.get("InResponseTo"),
            issuer=_text(scope.find("saml:Issuer", NSMAP)),
            destination=scope.get("Destination"),
            status=STATUS_SUCCESS,
            assertions=tuple(assertions),
            signed=signed_root is not None,
        )

    def _check_times(self, assertion, now):
        skew = datetime.timedelta(seconds=self.settings.clock_skew_seconds)
        bearer = [c for c in assertion.confirmations if c.method == CM_BEARER]
        if not bearer:
            raise SchemaError(f"Assertion {assertion.id} has no bearer SubjectConfirmation")

        windows = [(assertion.not_before, assertion.not_on_or_after)]
        windows += [(c.not_before, c.not_on_or_after) for c in bearer]
        for not_before, not_on_or_after in windows:
            if not_before is not None and now + skew < not_before:
                raise ExpiredError(f"Assertion {assertion.id} is not yet valid")
            # expiry is not widened by the skew allowance
            if not_on_or_after is not None and now >= not_on_or_after:
                raise ExpiredError(f"Assertion {assertion.id} has expired")
        if self.settings.strict and any(c.not_on_or_after is None for c in bearer):
            raise SchemaError(f"Assertion {assertion.id} has a bearer confirmation without NotOnOrAfter")

    def _check_audience(self, assertion):
        sp = self.context.sp
        if sp.entity_id not in assertion.audiences:
            raise AudienceError(f"Assertion {assertion.id} is not intended for this SP")
        for conf in assertion.confirmations:
            if conf.method == CM_BEARER and conf.recipient != sp.acs_url:
                raise AudienceError(f"Assertion {assertion.id} has recipient {conf.recipient!r}")

    def _check_destination_and_issuer(self, response):
        if response.destination and response.destination != self.context.sp.acs_url:
            raise AudienceError(f"Response destination {response.destination!r} is not this SP")
        if not self.settings.strict:
            return
        expected = self.context.idp.entity_id
        if response.issuer and response.issuer != expected:
            raise IssuerError(f"Unexpected response issuer {response.issuer!r}")
        for assertion in response.assertions:
            if assertion.issuer != expected:
                raise IssuerError(f"Unexpected assertion issuer {assertion.issuer!r}")

    def _check_correlation(self, response):
        in_response_to = response.in_response_to
        for assertion in response.assertions:
            for conf in assertion.confirmations:
                if not conf.in_response_to:
                    continue
                if in_response_to and conf.in_response_to != in_response_to:
                    raise CorrelationError("InResponseTo differs between Response and Assertion")
                in_response_to = conf.in_response_to

        if in_response_to:
            if not self.store.is_pending(in_response_to, self.idp_key):
                raise CorrelationError(f"InResponseTo {in_response_to} does not match a pending request")
        elif not self.settings.allow_unsolicited:
            raise CorrelationError("Unsolicited responses are not accepted")
        return in_response_to

    def _project(self, response):
        first = response.assertions[0]
        attributes = {}
        for assertion in response.assertions:
            for name, values in assertion.attributes.items():
                attributes[name] = attributes.get(name, ()) + values
        # SessionNotOnOrAfter may shorten the session, never extend it past the assertion
        candidates = [t for t in (first.session_not_on_or_after, first.expires_at) if t is not None]
        expiry = min(candidates) if candidates else None
        return AuthenticatedIdentity(
            name_id=first.name_id,
            name_id_format=first.name_id_format,
            attributes=attributes,
            session_index=first.session_index,
            idp_key=self.idp_key,
            not_on_or_after=expiry,
        )

    def _consume(self, response, in_response_to):
        remembered = []
        fallback = self.clock() + datetime.timedelta(seconds=self.settings.request_ttl_seconds)
        for assertion in response.assertions:
            expires = (assertion.expires_at or fallback).timestamp()
            if not self.store.remember_assertion(assertion.id, expires):
                self._forget(remembered)
                raise CorrelationError(f"Assertion {assertion.id} was already used")
            remembered.append(assertion.id)
        if in_response_to and not self.store.consume(in_response_to, self.idp_key):
            self._forget(remembered)
            raise CorrelationError(f"Request {in_response_to} was already consumed")

    def _forget(self, assertion_ids):
        for assertion_id in assertion_ids:
            self.store.forget_assertion(assertion_id)

    # -- Single logout -------------------------------------------------

    def validate_logout_response(self, payload, binding=BINDING_HTTP_REDIRECT, query_string=None):
        return self._run("logout response", self._validate_logout_response, payload, binding, query_string)

    def _validate_logout_response(self, payload, binding, query_string):
        root = self.backend.parse_xml(self._decode(payload, binding))
        if root.tag != "{%s}LogoutResponse" % NS_SAMLP:
            raise SchemaError(f"Expected a samlp:LogoutResponse, got {root.tag}")
        self._check_protocol_attributes(root)
        root = self._verified_message(root, binding, query_string, "SAMLResponse")
        self._check_logout_destination_and_issuer(root)
        self._check_status(root)

        in_response_to = root.get("InResponseTo")
        if not in_response_to or not self.store.consume(in_response_to, self.idp_key, kind="logout"):
            raise CorrelationError("LogoutResponse does not answer a pending LogoutRequest")
        logger.info(f"[saml2] accepted logout response {root.get('ID')} from IdP {self.idp_key}")
        return in_response_to

    def validate_logout_request(self, payload, binding=BINDING_HTTP_REDIRECT, query_string=None):
        return self._run("logout request", self._validate_logout_request, payload, binding, query_string)

    def _validate_logout_request(self, payload, binding, query_string):
        root = self.backend.parse_xml(self._decode(payload, binding))
        if root.tag != "{%s}LogoutRequest" % NS_SAMLP:
            raise SchemaError(f"Expected a samlp:LogoutRequest, got {root.tag}")
        self._check_protocol_attributes(root)
        root = self._verified_message(root, binding, query_string, "SAMLRequest")
        self._check_logout_destination_and_issuer(root)

        name_id = _text(root.find("saml:NameID", NSMAP))
        if not name_id:
            raise SchemaError("LogoutRequest has no NameID")
        not_on_or_after = parse_instant(root.get("NotOnOrAfter"))
        if not_on_or_after is not None and self.clock() >= not_on_or_after:
            raise ExpiredError("LogoutRequest has expired")
        return LogoutRequestInfo(
            id=root.get("ID"),
            issuer=_text(root.find("saml:Issuer", NSMAP)),
            name_id=name_id,
            session_indexes=tuple(_text(s) for s in root.findall("samlp:SessionIndex", NSMAP)),
            not_on_or_after=not_on_or_after,
        )

    def _check_logout_destination_and_issuer(self, root):
        destination = root.get("Destination")
        sls_url = self.context.sp.sls_url
        if destination and sls_url and destination != sls_url:
            raise AudienceError(f"Destination {destination!r} is not this SP")
        issuer = _text(root.find("saml:Issuer", NSMAP))
        if self.settings.strict and issuer and issuer != self.context.idp.entity_id:
            raise IssuerError(f"Unexpected issuer {issuer!r}")

    def _verified_message(self, root, binding, query_string, param):
        """Check the signature of a logout message; return the trusted element."""
        trust = self._trust()
        if binding == BINDING_HTTP_REDIRECT:
            params = raw_query_params(query_string)
            if "Signature" not in params:
                if self.settings.want_messages_signed:
                    raise SignatureError("The message is not signed")
                return root
            if not trust["certificate"]:
                raise ConfigurationError("Redirect-binding signatures need the IdP certificate")
            signed = f"{param}={params.get(param, '')}"
            if "RelayState" in params:
                signed += f"&RelayState={params['RelayState']}"
            signed += f"&SigAlg={params.get('SigAlg', '')}"
            self.backend.verify_query(signed, unquote_plus(params["Signature"]), trust["certificate"],
                                      unquote_plus(params.get("SigAlg", "")))
            return root

        signed_root = self.backend.verify_signature(root, **trust)
        if signed_root is None:
            if self.settings.want_messages_signed:
                raise SignatureError("The message is not signed")
            return root
        return signed_root
