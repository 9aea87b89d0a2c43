"""
TLS Context Construction.

Builds the ssl.SSLContext handed to paho-mqtt (directly, or through aiomqtt).
The context enforces TLS 1.3, presents the client certificate for mutual TLS
and runs a CertificateValidator on the broker certificate as part of every
handshake.

The validator is attached through ``SSLContext.sslsocket_class``: sockets
wrapped by the context run the validator as soon as the handshake completes and
close the connection with a CertificateValidationError if it rejects the broker.
With a configured CA certificate the validator is the only authority (OpenSSL
verification is disabled); without one OpenSSL checks the chain against the
system trust store first.
"""
import logging
import secrets
import ssl
import tempfile
from pathlib import Path
from typing import Callable, Optional

from cryptography import x509
from cryptography.hazmat.primitives import serialization

from .certificates import CertificateBundle, CertificateValidator
from .exceptions import CertificateValidationError, ConfigurationError
from .models import ConnectionOptions

logger = logging.getLogger(__name__)


def _load_client_certificate(context: ssl.SSLContext, bundle: CertificateBundle) -> None:
    # ssl only loads key material from files
    passphrase = secrets.token_bytes(32)
    with tempfile.TemporaryDirectory(prefix="managed-mqtt-") as directory:
        cert_file = Path(directory) / "client.pem"
        key_file = Path(directory) / "client.key"
        chain = (bundle.client_certificate,) + tuple(bundle.client_certificate_chain)
        cert_file.write_bytes(b"".join(c.public_bytes(serialization.Encoding.PEM) for c in chain))
        key_file.write_bytes(
            bundle.client_private_key.private_bytes(
                serialization.Encoding.PEM,
                serialization.PrivateFormat.PKCS8,
                serialization.BestAvailableEncryption(passphrase),
            )
        )
        try:
            context.load_cert_chain(cert_file, key_file, password=passphrase)
        except ssl.SSLError as e:
            raise ConfigurationError(f"Client certificate rejected by TLS layer: {e}", source="tls") from e


def _validating_socket_class(
    validator: CertificateValidator,
    log: logging.Logger | logging.LoggerAdapter,
) -> type[ssl.SSLSocket]:

    class ValidatingSSLSocket(ssl.SSLSocket):
        """SSLSocket that validates the broker certificate after the handshake."""

        def do_handshake(self, block=False):
            super().do_handshake(block)
            if not getattr(self, "_peer_validated", False):
                self._validate_peer()
                self._peer_validated = True

        def _validate_peer(self) -> None:
            der = self.getpeercert(binary_form=True)
            if not der:
                self.close()
                raise CertificateValidationError("Broker presented no certificate", reasons=["no certificate"])

            try:
                certificate = x509.load_der_x509_certificate(der)
                get_chain: Optional[Callable[[], list]] = getattr(self, "get_unverified_chain", None)
                presented = get_chain() if get_chain is not None else []
                intermediates = [x509.load_der_x509_certificate(c) for c in (presented or [])[1:]]
            except ValueError as e:
                self.close()
                raise CertificateValidationError(
                    f"Broker certificate could not be parsed: {e}", reasons=[str(e)]
                ) from e

            subject = certificate.subject.rfc4514_string()
            failures = validator.failures(certificate, intermediates)
            if failures:
                self.close()
                raise CertificateValidationError(
                    f"Broker certificate '{subject}' rejected",
                    subject=subject,
                    reasons=failures,
                )
            log.debug(f"Broker certificate '{subject}' accepted", extra={"subject": subject})

    return ValidatingSSLSocket


def build_tls_context(
    options: ConnectionOptions,
    bundle: CertificateBundle,
    validator: Optional[CertificateValidator] = None,
    logger: logging.Logger | logging.LoggerAdapter | None = None,
) -> ssl.SSLContext:
    """
    Build the client TLS context for a secure broker connection.

    Args:
        options: Connection options; decide whether the client certificate is presented
        bundle: Loaded certificates
        validator: Broker certificate validator (default: built from the bundle)
        logger: Logger for handshake diagnostics

    Returns:
        Configured ssl.SSLContext

    Raises:
        ConfigurationError: If mutual TLS is requested but the bundle holds no
            usable client certificate
    """
    log = logger or logging.getLogger(__name__)
    context = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
    context.minimum_version = ssl.TLSVersion.TLSv1_3
    context.check_hostname = False

    if bundle.ca_certificate is not None:
        context.verify_mode = ssl.CERT_NONE
    else:
        context.verify_mode = ssl.CERT_REQUIRED
        context.load_default_certs()

    if options.presents_client_certificate:
        if not bundle.has_client_certificate:
            raise ConfigurationError("Mutual TLS requested but no client certificate loaded", source="tls")
        _load_client_certificate(context, bundle)

    context.sslsocket_class = _validating_socket_class(validator or bundle.validator(log), log)
    log.debug(
        f"TLS context ready (client certificate: {options.presents_client_certificate}, "
        f"custom CA: {bundle.ca_certificate is not None})"
    )
    return context


__all__ = ["build_tls_context"]
