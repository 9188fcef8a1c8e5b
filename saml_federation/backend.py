"""XML and signature capabilities used by the SP engine.

The engine only talks to an object with ``parse_xml``, ``serialize_xml``,
``verify_signature`` and ``sign`` (plus the redirect-binding pair
``sign_query`` / ``verify_query``).  :class:`LxmlBackend` implements them with
lxml, signxml and cryptography.
"""
import base64
import hashlib
import logging

from cryptography import x509
from cryptography.exceptions import InvalidSignature as InvalidQuerySignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding
from lxml import etree
from signxml import (
    CanonicalizationMethod,
    DigestAlgorithm,
    SignatureConstructionMethod,
    SignatureMethod,
    XMLSigner,
    XMLVerifier,
)
from signxml.exceptions import InvalidInput, InvalidSignature

from .config import format_cert, normalize_fingerprint
from .constants import NSMAP, SIG_RSA_SHA1, SIG_RSA_SHA256
from .errors import ConfigurationError, DecodeError, SignatureError

logger = logging.getLogger(__name__)

_QUERY_HASHES = {
    SIG_RSA_SHA256: hashes.SHA256,
    SIG_RSA_SHA1: hashes.SHA1,
}


def _parser():
    # no DTDs, no entity expansion, no network access
    return etree.XMLParser(
        resolve_entities=False,
        no_network=True,
        load_dtd=False,
        dtd_validation=False,
        remove_comments=True,
        huge_tree=False,
    )


def certificate_fingerprint(cert_pem, algorithm="sha1"):
    cert = x509.load_pem_x509_certificate(cert_pem.encode())
    der = cert.public_bytes(serialization.Encoding.DER)
    return hashlib.new(algorithm, der).hexdigest()


class LxmlBackend:
    sign_algorithm = SIG_RSA_SHA256

    def parse_xml(self, data):
        if isinstance(data, str):
            data = data.encode("utf-8")
        try:
            root = etree.fromstring(data, parser=_parser())
        except etree.XMLSyntaxError as e:
            raise DecodeError(f"Malformed XML: {e}") from e
        if root.getroottree().docinfo.doctype:
            raise DecodeError("XML documents with a DOCTYPE are not accepted")
        return root

    def serialize_xml(self, element):
        return etree.tostring(element, encoding="utf-8")

    def sign(self, element, private_key, certificate):
        """Return a copy of *element* carrying an enveloped signature over its ID."""
        signer = XMLSigner(
            method=SignatureConstructionMethod.enveloped,
            signature_algorithm=SignatureMethod.RSA_SHA256,
            digest_algorithm=DigestAlgorithm.SHA256,
            c14n_algorithm=CanonicalizationMethod.EXCLUSIVE_XML_CANONICALIZATION_1_0,
        )
        signed = signer.sign(
            element,
            key=private_key,
            cert=certificate,
            reference_uri=element.get("ID"),
            id_attribute="ID",
        )
        _move_signature_after_issuer(signed)
        return signed

    def verify_signature(self, element, certificate=None, fingerprint=None,
                         fingerprint_algorithm="sha1"):
        """Verify the enveloped signature that is a direct child of *element*.

        Returns the element as covered by the signature, or ``None`` when the
        element is not signed.  Only the returned element may be trusted.
        """
        signature = element.find("ds:Signature", NSMAP)
        if signature is None:
            return None

        cert = certificate
        if cert is None and fingerprint:
            embedded = signature.findtext(".//ds:X509Certificate", namespaces=NSMAP)
            if not embedded:
                raise SignatureError("Signature carries no certificate to match the fingerprint")
            cert = format_cert(embedded)
            try:
                actual = certificate_fingerprint(cert, fingerprint_algorithm)
            except ValueError as e:
                raise SignatureError(f"Embedded certificate is unreadable: {e}") from e
            if actual != normalize_fingerprint(fingerprint):
                raise SignatureError("Embedded certificate does not match the configured fingerprint")
        if cert is None:
            raise ConfigurationError("No IdP certificate or fingerprint available")

        # verify a standalone copy where this element's own signature is the
        # first ds:Signature in document order
        isolated = etree.fromstring(etree.tostring(element), parser=_parser())
        own = isolated.find("ds:Signature", NSMAP)
        isolated.remove(own)
        isolated.insert(0, own)
        try:
            result = XMLVerifier().verify(isolated, x509_cert=cert, id_attribute="ID")
        except (InvalidSignature, InvalidInput) as e:
            raise SignatureError(f"Signature verification failed: {e}") from e
        except ValueError as e:
            # unreadable certificate or key material
            raise SignatureError(f"Signature verification failed: {e}") from e

        signed = result.signed_xml
        if signed is None or signed.get("ID") != element.get("ID"):
            raise SignatureError("Signature does not cover the element it is attached to")
        return signed

    def sign_query(self, query, private_key):
        key = serialization.load_pem_private_key(private_key.encode(), password=None)
        hash_cls = _QUERY_HASHES[self.sign_algorithm]
        signature = key.sign(query.encode("ascii"), padding.PKCS1v15(), hash_cls())
        return base64.b64encode(signature).decode("ascii")

    def verify_query(self, query, signature, certificate, sig_alg):
        hash_cls = _QUERY_HASHES.get(sig_alg)
        if hash_cls is None:
            raise SignatureError(f"Unsupported signature algorithm {sig_alg}")
        try:
            cert = x509.load_pem_x509_certificate(certificate.encode())
            raw = base64.b64decode(signature, validate=True)
            cert.public_key().verify(raw, query.encode("ascii"), padding.PKCS1v15(), hash_cls())
        except (InvalidQuerySignature, ValueError) as e:
            raise SignatureError("Query string signature verification failed") from e


def _move_signature_after_issuer(element):
    signature = element.find("ds:Signature", NSMAP)
    issuer = element.find("saml:Issuer", NSMAP)
    if signature is None or issuer is None:
        return
    element.remove(signature)
    issuer.addnext(signature)


default_backend = LxmlBackend()
