import logging
from urllib.parse import urlparse

from flask import Blueprint, abort, current_app, g, redirect, render_template_string, request, session

from .constants import BINDING_HTTP_POST, BINDING_HTTP_REDIRECT
from .errors import Saml2Error
from .messages import PostForm

logger = logging.getLogger(__name__)

bp = Blueprint("saml2", __name__)

SESSION_KEY = "saml2.session"
IDP_KEY = "saml2.idp_key"

POST_FORM = """<!doctype html>
<html><body onload="document.forms[0].submit()">
<form method="post" action="{{ form.action }}">
{% for name, value in form.fields.items() %}<input type="hidden" name="{{ name }}" value="{{ value }}">
{% endfor %}<noscript><button type="submit">Continue</button></noscript>
</form></body></html>"""


def _ext():
    return current_app.extensions["saml2"]


def _send(target):
    if isinstance(target, PostForm):
        return render_template_string(POST_FORM, form=target)
    return redirect(target)


def _safe_target(url, fallback):
    # relay states only ever point back into this application; browsers
    # read a backslash as a slash
    if not url or "\\" in url or any(ord(c) < 0x20 or ord(c) == 0x7f for c in url):
        return fallback
    parsed = urlparse(url)
    if parsed.scheme or parsed.netloc or not url.startswith("/") or url.startswith("//"):
        return fallback
    return url


def _landing(config):
    return g.saml2.context.idp.relay_state_url or config["login_route"]


@bp.url_value_preprocessor
def resolve_idp(endpoint, values):
    key = values.pop("idp_key", None) if values else None
    auth = _ext().auth_for(key)
    if auth is None:
        abort(404)
    g.saml2 = auth


@bp.url_defaults
def add_idp_key(endpoint, values):
    auth = g.get("saml2")
    if "idp_key" not in values and auth is not None:
        values["idp_key"] = auth.idp_key


@bp.route("/<idp_key>/metadata")
def metadata():
    return g.saml2.metadata(), 200, {"Content-Type": "application/xml"}


@bp.route("/<idp_key>/login")
def login():
    config = _ext().config
    return_to = _safe_target(request.args.get("returnTo"), _landing(config))
    return _send(g.saml2.login(return_to))


@bp.route("/<idp_key>/acs", methods=["POST"])
def acs():
    saml_resp_b64 = request.form.get("SAMLResponse")
    if not saml_resp_b64:
        return "Missing SAMLResponse", 400
    config = _ext().config
    try:
        handle, _ = g.saml2.acs(saml_resp_b64)
    except Saml2Error as e:
        logger.error(f"[saml2] login via IdP {g.saml2.idp_key} failed at step '{e.step}'")
        if config["error_route"]:
            return redirect(config["error_route"])
        return "Authentication failed", 401

    session[SESSION_KEY] = handle.id
    session[IDP_KEY] = handle.idp_key
    return redirect(_safe_target(request.form.get("RelayState"), _landing(config)))


@bp.route("/<idp_key>/sls", methods=["GET", "POST"])
def sls():
    params = request.form if request.method == "POST" else request.args
    binding = BINDING_HTTP_POST if request.method == "POST" else BINDING_HTTP_REDIRECT
    saml_request = params.get("SAMLRequest")
    saml_response = params.get("SAMLResponse")
    if not saml_request and not saml_response:
        return "Missing SAMLRequest or SAMLResponse", 400

    config = _ext().config
    relay_state = params.get("RelayState")
    try:
        target = g.saml2.sls(
            saml_request=saml_request,
            saml_response=saml_response,
            binding=binding,
            query_string=request.query_string,
            relay_state=relay_state,
        )
    except Saml2Error as e:
        logger.error(f"[saml2] logout via IdP {g.saml2.idp_key} failed at step '{e.step}'")
        if config["error_route"]:
            return redirect(config["error_route"])
        return "Logout failed", 400

    handle_id = session.get(SESSION_KEY)
    if saml_response or (handle_id and _ext().sessions.get(handle_id) is None):
        session.pop(SESSION_KEY, None)
        session.pop(IDP_KEY, None)
    if target is not None:
        return _send(target)
    return redirect(_safe_target(relay_state, config["logout_route"]))


@bp.route("/<idp_key>/logout")
def logout():
    config = _ext().config
    return_to = _safe_target(request.args.get("returnTo"), config["logout_route"])
    current = _ext().current_session()
    session.pop(SESSION_KEY, None)
    session.pop(IDP_KEY, None)
    if current is None:
        return redirect(return_to)
    handle, _ = current
    auth = g.saml2 if handle.idp_key == g.saml2.idp_key else _ext().auth_for(handle.idp_key)
    if auth is None:
        _ext().sessions.unbind(handle)
        return redirect(return_to)
    target = auth.logout(handle, return_to=return_to)
    return _send(target) if target is not None else redirect(return_to)
