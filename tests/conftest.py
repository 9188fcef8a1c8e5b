import datetime

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

from saml_federation.config import IdpConfig, Settings, SpConfig
from saml_federation.correlation import CorrelationStore
from saml_federation.resolver import ResolvedContext
from saml_federation.responses import ResponseValidator

from tests.idp import IDP_ENTITY

SP_ENTITY = "https://sp.example.com"
ACS_URL = "https://sp.example.com/saml2/acme/acs"
SLS_URL = "https://sp.example.com/saml2/acme/sls"


def make_keypair(common_name):
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
    now = datetime.datetime.now(datetime.timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - datetime.timedelta(days=1))
        .not_valid_after(now + datetime.timedelta(days=365))
        .sign(key, hashes.SHA256())
    )
    key_pem = key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    ).decode()
    cert_pem = cert.public_bytes(serialization.Encoding.PEM).decode()
    return key_pem, cert_pem


# ---------------------------------------------------------------------------
# Keys
# ---------------------------------------------------------------------------


@pytest.fixture(scope="session")
def idp_keys():
    return make_keypair("idp.acme.com")


@pytest.fixture(scope="session")
def rogue_keys():
    return make_keypair("idp.acme.com")


@pytest.fixture(scope="session")
def sp_keys():
    return make_keypair("sp.example.com")


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


@pytest.fixture()
def idp_config(idp_keys):
    return IdpConfig(
        key="acme",
        entity_id=IDP_ENTITY,
        sso_url="https://idp.acme.com/sso",
        slo_url="https://idp.acme.com/slo",
        certificate=idp_keys[1],
        aliases=("login.acme.com",),
    )


@pytest.fixture()
def sp_config():
    return SpConfig(entity_id=SP_ENTITY, acs_url=ACS_URL, sls_url=SLS_URL)


@pytest.fixture()
def settings(sp_config):
    return Settings(sp=sp_config)


@pytest.fixture()
def context(idp_config, sp_config, settings):
    return ResolvedContext(idp=idp_config, sp=sp_config, settings=settings, hint="acme")


@pytest.fixture()
def store():
    return CorrelationStore(ttl=600)


@pytest.fixture()
def validator(context, store):
    return ResponseValidator(context, store)


@pytest.fixture()
def pending(store):
    """Issue a pending AuthnRequest id for the acme tenant."""

    def issue(request_id="_req-1", idp_key="acme", kind="authn"):
        store.issue(request_id, idp_key, kind=kind)
        return request_id

    return issue


@pytest.fixture()
def saml2_config(idp_keys):
    return {
        "strict": True,
        "sp": {"entity_id": SP_ENTITY},
        "idps": {
            "acme": {
                "entity_id": IDP_ENTITY,
                "sso_url": "https://idp.acme.com/sso",
                "slo_url": "https://idp.acme.com/slo",
                "certs": {"x509": idp_keys[1]},
                "aliases": ["login.acme.com"],
            },
        },
    }


@pytest.fixture()
def app(saml2_config):
    from saml_federation.app import create_app

    app = create_app({
        "TESTING": True,
        "SERVER_NAME": "sp.example.com",
        "SAML2": saml2_config,
        "SAML2_DEFAULT_IDP": "acme",
    })
    return app


@pytest.fixture()
def client(app):
    return app.test_client()
