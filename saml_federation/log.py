"""Logging setup that keeps SAML payloads and key material out of the logs."""
import logging
import os
import re

_REDACT_PATTERNS = [
    (re.compile(r"((?:SAMLResponse|SAMLRequest|Signature)=)([^&\s]+)"), r"\1***REDACTED***"),
    (re.compile(r"-----BEGIN [A-Z ]+-----.*?-----END [A-Z ]+-----", re.DOTALL), "***PEM REDACTED***"),
    (re.compile(r"(<ds:SignatureValue>)(.*?)(</ds:SignatureValue>)", re.DOTALL), r"\1***\3"),
]


def redact(text):
    for pattern, replacement in _REDACT_PATTERNS:
        text = pattern.sub(replacement, text)
    return text


class RedactFilter(logging.Filter):
    def filter(self, record):
        if isinstance(record.msg, str):
            record.msg = redact(record.msg)
        if isinstance(record.args, tuple):
            record.args = tuple(redact(a) if isinstance(a, str) else a for a in record.args)
        elif isinstance(record.args, dict):
            record.args = {k: redact(v) if isinstance(v, str) else v for k, v in record.args.items()}
        return True


def configure_logging(level=None):
    """Attach a stream handler with redaction to the package logger.

    The level comes from *level*, then ``SAML2_LOG_LEVEL``, then INFO.
    """
    level = level or os.environ.get("SAML2_LOG_LEVEL", "INFO")
    logger = logging.getLogger("saml_federation")
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    if not any(getattr(h, "_saml2", False) for h in logger.handlers):
        handler = logging.StreamHandler()
        handler._saml2 = True
        handler.setFormatter(logging.Formatter(
            "%(asctime)s %(name)s %(levelname)s %(message)s", datefmt="%Y-%m-%d %H:%M:%S"))
        handler.addFilter(RedactFilter())
        logger.addHandler(handler)
    return logger
