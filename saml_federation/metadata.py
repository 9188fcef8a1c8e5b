import logging
import threading
import time
from dataclasses import dataclass

import requests
from lxml import etree

from .backend import default_backend
from .config import cert_body, format_cert
from .constants import BINDING_HTTP_POST, BINDING_HTTP_REDIRECT, NS_DS, NS_MD, NSMAP
from .errors import ConfigurationError, DecodeError, SchemaError

logger = logging.getLogger(__name__)


def _md(tag):
    return "{%s}%s" % (NS_MD, tag)


def _ds(tag):
    return "{%s}%s" % (NS_DS, tag)


def publish_metadata(sp, want_assertions_signed=True):
    """Serialize the SP descriptor for registration at an IdP."""
    sp.check()
    root = etree.Element(_md("EntityDescriptor"), nsmap={"md": NS_MD, "ds": NS_DS}, entityID=sp.entity_id)
    descriptor = etree.SubElement(root, _md("SPSSODescriptor"), attrib={
        "AuthnRequestsSigned": "true" if sp.signs else "false",
        "WantAssertionsSigned": "true" if want_assertions_signed else "false",
        "protocolSupportEnumeration": "urn:oasis:names:tc:SAML:2.0:protocol",
    })

    if sp.certificate:
        key = etree.SubElement(descriptor, _md("KeyDescriptor"), use="signing")
        info = etree.SubElement(key, _ds("KeyInfo"))
        data = etree.SubElement(info, _ds("X509Data"))
        etree.SubElement(data, _ds("X509Certificate")).text = cert_body(sp.certificate)

    if sp.sls_url:
        etree.SubElement(descriptor, _md("SingleLogoutService"),
                         Binding=BINDING_HTTP_REDIRECT, Location=sp.sls_url)
    etree.SubElement(descriptor, _md("NameIDFormat")).text = sp.name_id_format
    etree.SubElement(descriptor, _md("AssertionConsumerService"),
                     Binding=BINDING_HTTP_POST, Location=sp.acs_url, index="1")
    return etree.tostring(root, xml_declaration=True, encoding="utf-8", pretty_print=True)


@dataclass(frozen=True)
class SpDescriptor:
    entity_id: str
    acs_url: str
    sls_url: str = None
    certificate: str = None
    authn_requests_signed: bool = False


def parse_sp_metadata(data, backend=None):
    root = (backend or default_backend).parse_xml(data)
    descriptor = root.find("md:SPSSODescriptor", NSMAP)
    if root.tag != _md("EntityDescriptor") or descriptor is None:
        raise SchemaError("Not an SP EntityDescriptor")
    acs = descriptor.find("md:AssertionConsumerService", NSMAP)
    sls = descriptor.find("md:SingleLogoutService", NSMAP)
    cert = descriptor.findtext("md:KeyDescriptor/ds:KeyInfo/ds:X509Data/ds:X509Certificate",
                               namespaces=NSMAP)
    return SpDescriptor(
        entity_id=root.get("entityID"),
        acs_url=acs.get("Location") if acs is not None else None,
        sls_url=sls.get("Location") if sls is not None else None,
        certificate=format_cert(cert) if cert else None,
        authn_requests_signed=descriptor.get("AuthnRequestsSigned") == "true",
    )


@dataclass(frozen=True)
class IdpDescriptor:
    entity_id: str
    sso_url: str
    slo_url: str = None
    certificates: tuple = ()


def parse_idp_metadata(data, backend=None):
    root = (backend or default_backend).parse_xml(data)
    if root.tag == _md("EntitiesDescriptor"):
        root = root.find("md:EntityDescriptor", NSMAP)
    descriptor = root.find("md:IDPSSODescriptor", NSMAP) if root is not None else None
    if descriptor is None:
        raise SchemaError("Metadata has no IDPSSODescriptor")

    def location(tag):
        for binding in (BINDING_HTTP_REDIRECT, BINDING_HTTP_POST):
            el = descriptor.find(f"md:{tag}[@Binding='{binding}']", NSMAP)
            if el is not None:
                return el.get("Location")
        return None

    certs = []
    for key in descriptor.findall("md:KeyDescriptor", NSMAP):
        if key.get("use") not in (None, "signing"):
            continue
        text = key.findtext("ds:KeyInfo/ds:X509Data/ds:X509Certificate", namespaces=NSMAP)
        if text:
            certs.append(format_cert(text))
    return IdpDescriptor(
        entity_id=root.get("entityID"),
        sso_url=location("SingleSignOnService"),
        slo_url=location("SingleLogoutService"),
        certificates=tuple(certs),
    )


class IdpMetadataCache:
    """IdP metadata fetched out of band and served from memory.

    ``get`` never touches the network; callers that find nothing must fail
    closed.  An entry older than ``ttl`` stays servable until a refresh
    replaces it; ``is_fresh`` tells the two apart.  ``refresh`` is meant for
    :class:`MetadataRefresher`, the CLI or a host scheduler.
    """

    def __init__(self, ttl=3600, session=None, timeout=10):
        self.ttl = ttl
        self.timeout = timeout
        self._session = session or requests.Session()
        self._entries = {}
        self._lock = threading.Lock()

    def get(self, url):
        with self._lock:
            entry = self._entries.get(url)
        if entry is None:
            return None
        descriptor, fetched_at = entry
        if time.time() - fetched_at >= self.ttl:
            logger.debug(f"serving stale IdP metadata for {url}")
        return descriptor

    def is_fresh(self, url):
        with self._lock:
            entry = self._entries.get(url)
        return entry is not None and time.time() - entry[1] < self.ttl

    def put(self, url, descriptor):
        with self._lock:
            self._entries[url] = (descriptor, time.time())

    def refresh(self, url):
        try:
            resp = self._session.get(url, timeout=self.timeout)
            resp.raise_for_status()
        except requests.RequestException as e:
            raise ConfigurationError(f"Failed to fetch IdP metadata from {url}: {e}") from e
        try:
            descriptor = parse_idp_metadata(resp.content)
        except (DecodeError, SchemaError) as e:
            raise ConfigurationError(f"Unusable IdP metadata at {url}: {e}") from e
        self.put(url, descriptor)
        logger.info(f"refreshed IdP metadata from {url} ({len(descriptor.certificates)} signing certs)")
        return descriptor


class MetadataRefresher:
    """Background thread keeping an :class:`IdpMetadataCache` warm.

    *urls* is a callable returning the metadata URLs to fetch; it is called on
    every pass so tenants added later are picked up.  The first pass runs as
    soon as the thread starts.
    """

    def __init__(self, cache, urls, interval=None):
        self.cache = cache
        self._urls = urls
        self.interval = interval or max(cache.ttl / 2, 1)
        self._thread = None
        self._stop_event = threading.Event()
        self.first_pass = threading.Event()

    def start(self):
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="saml2-metadata-refresher", daemon=True)
        self._thread.start()
        logger.info(f"metadata refresher started (every {self.interval:g}s)")

    def stop(self):
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=5)
            self._thread = None

    @property
    def running(self):
        return self._thread is not None and self._thread.is_alive()

    def run_once(self):
        """Refresh every URL once; returns the URLs that failed."""
        failed = []
        for url in self._urls():
            try:
                self.cache.refresh(url)
            except ConfigurationError as e:
                # the previous entry, if any, keeps being served
                logger.warning(f"[saml2] {e}")
                failed.append(url)
        return failed

    def _run(self):
        while not self._stop_event.is_set():
            try:
                self.run_once()
            except Exception:
                logger.exception("Error in metadata refresh pass")
            self.first_pass.set()
            self._stop_event.wait(self.interval)
