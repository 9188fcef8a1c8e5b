import base64
import datetime
import textwrap
import threading
from dataclasses import replace
from urllib.parse import quote_plus

import pytest

from saml_federation.constants import BINDING_HTTP_POST, BINDING_HTTP_REDIRECT, STATUS_REQUESTER
from saml_federation.errors import (
    AudienceError,
    ConfigurationError,
    CorrelationError,
    DecodeError,
    ExpiredError,
    IssuerError,
    SchemaError,
    SignatureError,
    StatusError,
)
from saml_federation.backend import certificate_fingerprint, default_backend
from saml_federation.responses import ResponseValidator, raw_query_params
from saml_federation.timeutil import utcnow

from tests import idp
from tests.conftest import ACS_URL, SLS_URL, SP_ENTITY


def _response(keys, request_id="_req-1", **kwargs):
    kwargs.setdefault("acs_url", ACS_URL)
    kwargs.setdefault("audience", SP_ENTITY)
    return idp.signed_response(keys, in_response_to=request_id, **kwargs)


def _validator(context, store, **settings):
    ctx = replace(context, settings=replace(context.settings, **settings))
    return ResponseValidator(ctx, store)


# ---------------------------------------------------------------------------
# Success and replay
# ---------------------------------------------------------------------------


def test_valid_response_yields_identity(validator, pending, idp_keys):
    pending()
    identity = validator.validate_response(_response(
        idp_keys, attributes={"groups": ["admins", "staff"], "mail": ["alice@example.com"]},
    ))
    assert identity.name_id == "alice@example.com"
    assert identity.idp_key == "acme"
    assert identity.session_index == "_session-1"
    assert identity.attributes["groups"] == ("admins", "staff")
    assert identity.get("mail") == "alice@example.com"
    assert identity.get("missing", "x") == "x"
    assert identity.not_on_or_after > utcnow()


def test_same_request_id_validates_once(validator, pending, idp_keys):
    pending()
    validator.validate_response(_response(idp_keys))
    with pytest.raises(CorrelationError):
        validator.validate_response(_response(idp_keys))


def test_replayed_response_is_rejected(validator, pending, idp_keys):
    pending()
    payload = _response(idp_keys)
    validator.validate_response(payload)
    with pytest.raises(CorrelationError):
        validator.validate_response(payload)


def test_concurrent_validation_succeeds_exactly_once(context, store, pending, idp_keys):
    pending()
    payloads = [_response(idp_keys) for _ in range(8)]
    results = []
    lock = threading.Lock()

    def attempt(payload):
        try:
            ResponseValidator(context, store).validate_response(payload)
            outcome = "ok"
        except CorrelationError:
            outcome = "replay"
        with lock:
            results.append(outcome)

    threads = [threading.Thread(target=attempt, args=(p,)) for p in payloads]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert results.count("ok") == 1
    assert results.count("replay") == 7


def test_failed_validation_keeps_request_pending(validator, pending, store, idp_keys):
    pending()
    with pytest.raises(AudienceError):
        validator.validate_response(_response(idp_keys, audience="https://wrong-sp.example.com"))
    assert store.is_pending("_req-1", "acme")
    validator.validate_response(_response(idp_keys))
    assert not store.is_pending("_req-1", "acme")


# ---------------------------------------------------------------------------
# Signatures
# ---------------------------------------------------------------------------


def test_signature_from_other_key_is_rejected(validator, pending, rogue_keys):
    pending()
    with pytest.raises(SignatureError):
        validator.validate_response(_response(rogue_keys))


def test_wrong_key_wins_over_other_failures(validator, pending, rogue_keys):
    pending()
    payload = _response(rogue_keys, audience="https://wrong-sp.example.com", lifetime=-60)
    with pytest.raises(SignatureError):
        validator.validate_response(payload)


def test_unsigned_response_is_rejected(validator, pending, idp_keys):
    pending()
    with pytest.raises(SignatureError):
        validator.validate_response(_response(idp_keys, sign_assertion=False))


def test_message_signature_only(context, store, pending, idp_keys):
    pending()
    strict = _validator(context, store)
    with pytest.raises(SignatureError):
        strict.validate_response(_response(idp_keys, sign_assertion=False, sign_message=True))

    relaxed = _validator(context, store, want_assertions_signed=False)
    identity = relaxed.validate_response(_response(idp_keys, sign_assertion=False, sign_message=True))
    assert identity.name_id == "alice@example.com"


def test_want_messages_signed(context, store, pending, idp_keys):
    pending()
    v = _validator(context, store, want_messages_signed=True)
    with pytest.raises(SignatureError):
        v.validate_response(_response(idp_keys))
    identity = v.validate_response(_response(idp_keys, sign_message=True))
    assert identity.name_id == "alice@example.com"


def test_tampered_assertion_is_rejected(validator, pending, idp_keys):
    pending()
    resp = idp.sign_response(
        idp.build_saml_response("_req-1", ACS_URL, SP_ENTITY), idp_keys)
    name_id = resp.find(".//{urn:oasis:names:tc:SAML:2.0:assertion}NameID")
    name_id.text = "admin@example.com"
    with pytest.raises(SignatureError):
        validator.validate_response(idp.encode(resp))


def test_wrapped_assertion_is_not_trusted(context, store, pending, idp_keys):
    pending()
    resp = idp.sign_response(
        idp.build_saml_response("_req-1", ACS_URL, SP_ENTITY), idp_keys)
    evil = idp.build_saml_response("_req-1", ACS_URL, SP_ENTITY, username="admin@example.com")
    evil_assertion = evil.find("{urn:oasis:names:tc:SAML:2.0:assertion}Assertion")
    resp.insert(2, evil_assertion)
    payload = idp.encode(resp)
    with pytest.raises(SchemaError):
        _validator(context, store).validate_response(payload)
    with pytest.raises(SignatureError):
        _validator(context, store, strict=False).validate_response(payload)


def test_fingerprint_trust(context, store, pending, idp_keys, rogue_keys):
    fingerprint = certificate_fingerprint(idp_keys[1], "sha256")
    ctx = replace(context, idp=replace(context.idp, certificate=None, cert_fingerprint=fingerprint,
                                       cert_fingerprint_algorithm="sha256"))
    v = ResponseValidator(ctx, store)
    pending()
    assert v.validate_response(_response(idp_keys)).name_id == "alice@example.com"
    pending("_req-2")
    with pytest.raises(SignatureError):
        v.validate_response(_response(rogue_keys, request_id="_req-2"))


def test_missing_certificate_fails_closed(context, store, pending, idp_keys):
    ctx = replace(context, idp=replace(context.idp, certificate=None))
    pending()
    with pytest.raises(ConfigurationError):
        ResponseValidator(ctx, store).validate_response(_response(idp_keys))


# ---------------------------------------------------------------------------
# Time window
# ---------------------------------------------------------------------------


def test_expired_by_one_second(validator, pending, idp_keys):
    pending()
    now = utcnow()
    payload = _response(idp_keys, now=now - datetime.timedelta(seconds=301), lifetime=300)
    with pytest.raises(ExpiredError):
        validator.validate_response(payload)


def test_expiry_ignores_skew(context, store, pending, idp_keys):
    pending()
    v = _validator(context, store, clock_skew_seconds=3600)
    payload = _response(idp_keys, now=utcnow() - datetime.timedelta(seconds=61), lifetime=60)
    with pytest.raises(ExpiredError):
        v.validate_response(payload)


def test_not_yet_valid(validator, pending, idp_keys):
    pending()
    payload = _response(idp_keys, not_before=utcnow() + datetime.timedelta(minutes=10))
    with pytest.raises(ExpiredError):
        validator.validate_response(payload)


def test_skew_tolerates_idp_clock_ahead(validator, pending, idp_keys):
    pending()
    payload = _response(idp_keys, not_before=utcnow() + datetime.timedelta(seconds=30))
    assert validator.validate_response(payload).name_id == "alice@example.com"


def test_session_not_on_or_after_cannot_outlive_assertion(validator, pending, idp_keys):
    pending()
    now = utcnow().replace(microsecond=0)
    payload = _response(idp_keys, now=now, lifetime=300,
                        session_not_on_or_after=now + datetime.timedelta(hours=8))
    identity = validator.validate_response(payload)
    assert identity.not_on_or_after == now + datetime.timedelta(seconds=300)


def test_session_not_on_or_after_shortens_session(validator, pending, idp_keys):
    pending()
    now = utcnow().replace(microsecond=0)
    session_end = now + datetime.timedelta(seconds=60)
    payload = _response(idp_keys, now=now, lifetime=300, session_not_on_or_after=session_end)
    assert validator.validate_response(payload).not_on_or_after == session_end


# ---------------------------------------------------------------------------
# Audience, recipient, issuer
# ---------------------------------------------------------------------------


def test_wrong_audience(validator, pending, idp_keys):
    pending()
    with pytest.raises(AudienceError):
        validator.validate_response(_response(idp_keys, audience="https://wrong-sp.example.com"))


def test_wrong_recipient(validator, pending, idp_keys):
    pending()
    with pytest.raises(AudienceError):
        validator.validate_response(_response(idp_keys, recipient="https://evil.example.com/acs"))


def test_wrong_destination(validator, pending, idp_keys):
    pending()
    with pytest.raises(AudienceError):
        validator.validate_response(_response(idp_keys, destination="https://evil.example.com/acs"))


def test_wrong_issuer(validator, pending, idp_keys):
    pending()
    with pytest.raises(IssuerError):
        validator.validate_response(_response(idp_keys, issuer="https://idp.other.com/saml"))


def test_issuer_not_checked_when_not_strict(context, store, pending, idp_keys):
    pending()
    v = _validator(context, store, strict=False)
    identity = v.validate_response(_response(idp_keys, issuer="https://idp.other.com/saml"))
    assert identity.name_id == "alice@example.com"


# ---------------------------------------------------------------------------
# Correlation
# ---------------------------------------------------------------------------


def test_unknown_in_response_to(validator, idp_keys):
    with pytest.raises(CorrelationError):
        validator.validate_response(_response(idp_keys, request_id="_never-issued"))


def test_request_issued_for_other_tenant(validator, pending, idp_keys):
    pending(idp_key="globex")
    with pytest.raises(CorrelationError):
        validator.validate_response(_response(idp_keys))


def test_logout_request_id_does_not_correlate_login(validator, pending, idp_keys):
    pending(kind="logout")
    with pytest.raises(CorrelationError):
        validator.validate_response(_response(idp_keys))


def test_unsolicited_denied_by_default(validator, idp_keys):
    with pytest.raises(CorrelationError):
        validator.validate_response(_response(idp_keys, request_id=None))


def test_unsolicited_allowed_once(context, store, idp_keys):
    v = _validator(context, store, allow_unsolicited=True)
    payload = _response(idp_keys, request_id=None)
    assert v.validate_response(payload).name_id == "alice@example.com"
    with pytest.raises(CorrelationError):
        v.validate_response(payload)


# ---------------------------------------------------------------------------
# Decoding and structure
# ---------------------------------------------------------------------------


def test_garbage_payload(validator):
    with pytest.raises(DecodeError):
        validator.validate_response("not base64 at all!")


def test_malformed_xml(validator):
    with pytest.raises(DecodeError):
        validator.validate_response(base64.b64encode(b"<samlp:Response").decode())


def test_doctype_rejected(validator):
    xml = b'<?xml version="1.0"?><!DOCTYPE r [<!ENTITY x "y">]><r>&x;</r>'
    with pytest.raises(DecodeError):
        validator.validate_response(base64.b64encode(xml).decode())


def test_wrong_root_element(validator):
    xml = b'<foo xmlns="urn:example"/>'
    with pytest.raises(SchemaError):
        validator.validate_response(base64.b64encode(xml).decode())


def test_error_status(validator, pending, idp_keys):
    pending()
    with pytest.raises(StatusError) as excinfo:
        validator.validate_response(_response(idp_keys, status=STATUS_REQUESTER))
    assert excinfo.value.status_code == STATUS_REQUESTER
    assert excinfo.value.idp_key == "acme"


def test_line_wrapped_post_payload(validator, pending, idp_keys):
    pending()
    wrapped = "\r\n".join(textwrap.wrap(_response(idp_keys), 76))
    assert "\r\n" in wrapped
    assert validator.validate_response(wrapped).name_id == "alice@example.com"


def test_redirect_bound_response(validator, pending, idp_keys):
    pending()
    resp = idp.sign_response(idp.build_saml_response("_req-1", ACS_URL, SP_ENTITY), idp_keys)
    identity = validator.validate_response(idp.redirect_encode(resp), binding=BINDING_HTTP_REDIRECT)
    assert identity.name_id == "alice@example.com"


# ---------------------------------------------------------------------------
# Single logout
# ---------------------------------------------------------------------------


def test_logout_response_consumes_pending_logout(validator, pending):
    pending("_logout-1", kind="logout")
    resp = idp.build_logout_response("_logout-1", SLS_URL)
    assert validator.validate_logout_response(idp.redirect_encode(resp)) == "_logout-1"
    with pytest.raises(CorrelationError):
        validator.validate_logout_response(idp.redirect_encode(resp))


def test_signed_logout_response_over_post(context, store, pending, idp_keys, rogue_keys):
    v = _validator(context, store, want_messages_signed=True)
    pending("_logout-1", kind="logout")
    unsigned = idp.build_logout_response("_logout-1", SLS_URL)
    with pytest.raises(SignatureError):
        v.validate_logout_response(idp.encode(unsigned), binding=BINDING_HTTP_POST)
    forged = idp.sign(idp.build_logout_response("_logout-1", SLS_URL), rogue_keys)
    with pytest.raises(SignatureError):
        v.validate_logout_response(idp.encode(forged), binding=BINDING_HTTP_POST)
    signed = idp.sign(idp.build_logout_response("_logout-1", SLS_URL), idp_keys)
    assert v.validate_logout_response(idp.encode(signed), binding=BINDING_HTTP_POST) == "_logout-1"


def test_logout_request_with_query_signature(context, store, idp_keys):
    v = _validator(context, store, want_messages_signed=True)
    req = idp.build_logout_request("alice@example.com", SLS_URL, session_index="_session-1")
    encoded = idp.redirect_encode(req)
    query = f"SAMLRequest={quote_plus(encoded)}&SigAlg={quote_plus(default_backend.sign_algorithm)}"
    signature = default_backend.sign_query(query, idp_keys[0])
    signed_query = f"{query}&Signature={quote_plus(signature)}"

    info = v.validate_logout_request(encoded, query_string=signed_query)
    assert info.name_id == "alice@example.com"
    assert info.session_indexes == ("_session-1",)

    with pytest.raises(SignatureError):
        v.validate_logout_request(encoded, query_string=query)
    tampered = signed_query.replace("SigAlg=", "RelayState=x&SigAlg=")
    with pytest.raises(SignatureError):
        v.validate_logout_request(encoded, query_string=tampered)


def test_expired_logout_request(validator):
    req = idp.build_logout_request("alice@example.com", SLS_URL,
                                   not_on_or_after=utcnow() - datetime.timedelta(seconds=1))
    with pytest.raises(ExpiredError):
        validator.validate_logout_request(idp.redirect_encode(req))


def test_failed_logout_response_status(validator, pending):
    pending("_logout-1", kind="logout")
    resp = idp.build_logout_response("_logout-1", SLS_URL, status=STATUS_REQUESTER)
    with pytest.raises(StatusError):
        validator.validate_logout_response(idp.redirect_encode(resp))


def test_raw_query_params_keeps_encoding():
    params = raw_query_params(b"SAMLRequest=a%2Bb&RelayState=%2Fhome&SAMLRequest=ignored")
    assert params == {"SAMLRequest": "a%2Bb", "RelayState": "%2Fhome"}


def test_settings_defaults(settings):
    assert settings.want_assertions_signed and not settings.allow_unsolicited
