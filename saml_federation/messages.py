"""Outbound SAML messages and the HTTP-Redirect / HTTP-POST bindings."""
import base64
import logging
import secrets
import zlib
from dataclasses import dataclass, field
from urllib.parse import quote_plus

from lxml import etree

from .backend import default_backend
from .constants import (
    BINDING_HTTP_POST,
    BINDING_HTTP_REDIRECT,
    NS_SAML,
    NS_SAMLP,
    STATUS_SUCCESS,
)
from .errors import ConfigurationError, DecodeError
from .timeutil import format_instant, utcnow

logger = logging.getLogger(__name__)


def _samlp(tag):
    return "{%s}%s" % (NS_SAMLP, tag)


def _saml(tag):
    return "{%s}%s" % (NS_SAML, tag)


def new_id():
    return "_" + secrets.token_hex(20)


@dataclass(frozen=True)
class PostForm:
    action: str
    fields: dict = field(default_factory=dict)


def deflate_and_encode(data):
    # raw DEFLATE: strip the zlib header and checksum
    return base64.b64encode(zlib.compress(data)[2:-4]).decode("ascii")


def decode_redirect_message(value):
    try:
        raw = base64.b64decode(value, validate=False)
        return zlib.decompress(raw, -15)
    except (ValueError, zlib.error) as e:
        raise DecodeError(f"Could not inflate redirect-bound message: {e}") from e


def decode_post_message(value):
    # IdPs may wrap the base64 body across lines
    if isinstance(value, bytes):
        value = value.decode("ascii", "replace")
    try:
        return base64.b64decode("".join(value.split()), validate=True)
    except ValueError as e:
        raise DecodeError(f"Could not base64-decode message: {e}") from e


def _protocol_element(tag, destination, issuer, now):
    msg_id = new_id()
    el = etree.Element(_samlp(tag), nsmap={"samlp": NS_SAMLP, "saml": NS_SAML}, attrib={
        "ID": msg_id,
        "Version": "2.0",
        "IssueInstant": format_instant(now),
        "Destination": destination,
    })
    etree.SubElement(el, _saml("Issuer")).text = issuer
    return msg_id, el


def _encode(el, context, param, relay_state, binding, destination, backend):
    sp = context.sp
    if binding == BINDING_HTTP_REDIRECT:
        query = f"{param}={quote_plus(deflate_and_encode(backend.serialize_xml(el)))}"
        if relay_state:
            query += f"&RelayState={quote_plus(relay_state)}"
        if sp.signs:
            query += f"&SigAlg={quote_plus(backend.sign_algorithm)}"
            signature = backend.sign_query(query, sp.private_key)
            query += f"&Signature={quote_plus(signature)}"
        sep = "&" if "?" in destination else "?"
        return f"{destination}{sep}{query}"

    if binding == BINDING_HTTP_POST:
        if sp.signs:
            el = backend.sign(el, sp.private_key, sp.certificate)
        fields = {param: base64.b64encode(backend.serialize_xml(el)).decode("ascii")}
        if relay_state:
            fields["RelayState"] = relay_state
        return PostForm(action=destination, fields=fields)

    raise ConfigurationError(f"Unsupported binding {binding}")


def build_authn_request(context, relay_state=None, binding=BINDING_HTTP_REDIRECT,
                        force_authn=False, is_passive=False, backend=None, now=None):
    """Build an AuthnRequest for the resolved IdP.

    Returns ``(target, request_id)`` where target is a redirect URL for the
    redirect binding or a :class:`PostForm` for the POST binding.  Storing the
    request id for later correlation is up to the caller.
    """
    backend = backend or default_backend
    idp, sp = context.idp, context.sp.check()
    if not idp.sso_url:
        raise ConfigurationError(f"IdP {idp.key} has no SSO URL", idp_key=idp.key)

    request_id, req = _protocol_element("AuthnRequest", idp.sso_url, sp.entity_id, now or utcnow())
    req.set("ProtocolBinding", BINDING_HTTP_POST)
    req.set("AssertionConsumerServiceURL", sp.acs_url)
    if force_authn:
        req.set("ForceAuthn", "true")
    if is_passive:
        req.set("IsPassive", "true")
    etree.SubElement(req, _samlp("NameIDPolicy"), AllowCreate="true",
                     Format=idp.name_id_format or sp.name_id_format)

    target = _encode(req, context, "SAMLRequest", relay_state, binding, idp.sso_url, backend)
    logger.debug(f"[saml2] built AuthnRequest {request_id} for IdP {idp.key}")
    return target, request_id


def build_logout_request(context, name_id, session_index=None, relay_state=None,
                         binding=BINDING_HTTP_REDIRECT, name_id_format=None, backend=None, now=None):
    backend = backend or default_backend
    idp, sp = context.idp, context.sp.check()
    if not idp.slo_url:
        raise ConfigurationError(f"IdP {idp.key} has no SLO URL", idp_key=idp.key)

    request_id, req = _protocol_element("LogoutRequest", idp.slo_url, sp.entity_id, now or utcnow())
    name_el = etree.SubElement(req, _saml("NameID"))
    name_el.text = name_id
    if name_id_format:
        name_el.set("Format", name_id_format)
    if session_index:
        etree.SubElement(req, _samlp("SessionIndex")).text = session_index

    target = _encode(req, context, "SAMLRequest", relay_state, binding, idp.slo_url, backend)
    logger.debug(f"[saml2] built LogoutRequest {request_id} for IdP {idp.key}")
    return target, request_id


def build_logout_response(context, in_response_to, status=STATUS_SUCCESS, relay_state=None,
                          binding=BINDING_HTTP_REDIRECT, backend=None, now=None):
    backend = backend or default_backend
    idp = context.idp
    if not idp.slo_url:
        raise ConfigurationError(f"IdP {idp.key} has no SLO URL", idp_key=idp.key)

    response_id, resp = _protocol_element("LogoutResponse", idp.slo_url, context.sp.entity_id,
                                          now or utcnow())
    resp.set("InResponseTo", in_response_to)
    status_el = etree.SubElement(resp, _samlp("Status"))
    etree.SubElement(status_el, _samlp("StatusCode"), Value=status)

    target = _encode(resp, context, "SAMLResponse", relay_state, binding, idp.slo_url, backend)
    return target, response_id
