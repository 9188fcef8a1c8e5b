import json
import os

from flask import Flask, current_app, redirect, session, url_for
from markupsafe import escape

from .extension import Saml2
from .log import configure_logging
from .views import IDP_KEY


def create_app(config=None):
    app = Flask(__name__)
    app.config.from_mapping(SECRET_KEY="sp-dev-secret", SAML2={}, SAML2_DEFAULT_IDP=None)
    if os.environ.get("SAML2_SETTINGS"):
        app.config.from_file(os.environ["SAML2_SETTINGS"], load=json.load)
    app.config.from_prefixed_env()
    if config:
        app.config.update(config)

    saml2 = Saml2(app)
    configure_logging("DEBUG" if saml2.settings.debug else None)

    @app.route("/")
    def index():
        identity = current_app.extensions["saml2"].current_identity()
        if identity is None:
            return "<p>Not signed in. <a href='%s'>Open the service</a></p>" % url_for("service")
        return "<p>Signed in as %s via %s. <a href='%s'>Log out</a></p>" % (
            escape(identity.name_id), escape(identity.idp_key), url_for("logout"))

    @app.route("/service")
    def service():
        # Service page requires login
        identity = current_app.extensions["saml2"].current_identity()
        if identity is None:
            idp_key = app.config["SAML2_DEFAULT_IDP"]
            if not idp_key:
                return "No identity provider configured", 503
            return redirect(url_for("saml2.login", idp_key=idp_key, returnTo=url_for("service")))
        return "<h3>Protected service content - Welcome %s</h3>" % escape(identity.name_id)

    @app.route("/logout")
    def logout():
        idp_key = session.get(IDP_KEY)
        if idp_key is None:
            session.clear()
            return redirect(url_for("index"))
        return redirect(url_for("saml2.logout", idp_key=idp_key, returnTo=url_for("index")))

    return app


if __name__ == "__main__":
    create_app().run(host="0.0.0.0", port=5001, debug=True)
