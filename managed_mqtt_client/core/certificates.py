"""
Broker Certificate Validation and Certificate Loading.

This module authenticates the broker during the TLS handshake and loads the
certificates used for mutual TLS.

Validation of a presented server certificate has two independent checks:
    - Chain: the certificate must chain through the presented intermediates to
      the configured CA certificate (custom trust, the system store is not
      consulted). Without a configured CA any chain root is accepted. Every link
      needs a matching issuer name, a valid signature, a CA issuer and a current
      validity window. Revocation is never checked; devices may be offline.
    - Fingerprint: the hash of the DER encoding, as lower-case hex, must equal
      the configured value. 40 hex digits select SHA-1, 64 select SHA-256;
      case and ':' separators are ignored.

Both checks always run and are both logged; the certificate is accepted only
if both pass.

Key Components:
    - validate_server_certificate(): Pure validation function returning bool
    - CertificateValidator: Callable binding the trusted root and fingerprint
    - CertificateBundle: CA and client certificates loaded once at startup
    - load_certificate(), load_client_certificate(): File loaders

Example:
    >>> validator = CertificateValidator(trusted_root=ca_cert, expected_fingerprint="3f2a...")
    >>> validator(server_cert)
    True
"""
import logging
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional, Sequence

from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.serialization import pkcs12
from pydantic import BaseModel, ConfigDict

from .config import CertificateSettings, resolve_path
from .exceptions import ConfigurationError
from .models import ConnectionOptions

logger = logging.getLogger(__name__)

MAX_CHAIN_DEPTH = 8
SHA1_HEX_LENGTH = 40
SHA256_HEX_LENGTH = 64
PKCS12_SUFFIXES = (".pfx", ".p12")

_PEM_PRIVATE_KEY = re.compile(
    rb"-----BEGIN (?:[A-Z ]+ )?PRIVATE KEY-----.+?-----END (?:[A-Z ]+ )?PRIVATE KEY-----",
    re.DOTALL,
)
_NAME_MISMATCH = "name mismatch"


# === Fingerprints ===

def normalize_fingerprint(value: str) -> str:
    """Lower-case a fingerprint and strip ':' and whitespace separators."""
    return re.sub(r"[\s:]", "", value or "").lower()


def fingerprint_algorithm(expected_fingerprint: str) -> hashes.HashAlgorithm:
    """Pick the hash algorithm matching the length of a hex fingerprint."""
    if len(normalize_fingerprint(expected_fingerprint)) == SHA256_HEX_LENGTH:
        return hashes.SHA256()
    return hashes.SHA1()


def compute_fingerprint(certificate: x509.Certificate, algorithm: Optional[hashes.HashAlgorithm] = None) -> str:
    """
    Hash the DER encoding of a certificate.

    Args:
        certificate: Certificate to hash
        algorithm: Hash algorithm (default: SHA-1, the classic thumbprint)

    Returns:
        Lower-case hex digest
    """
    return certificate.fingerprint(algorithm or hashes.SHA1()).hex()


def _subject(certificate: x509.Certificate) -> str:
    return certificate.subject.rfc4514_string()


# === Chain building ===

def _is_certificate_authority(certificate: x509.Certificate) -> bool:
    try:
        return certificate.extensions.get_extension_for_class(x509.BasicConstraints).value.ca
    except x509.ExtensionNotFound:
        return False


def _time_validity_failures(certificate: x509.Certificate, now: datetime) -> list[str]:
    if now < certificate.not_valid_before_utc:
        return [f"certificate '{_subject(certificate)}' is not yet valid (valid from {certificate.not_valid_before_utc.isoformat()})"]
    if now > certificate.not_valid_after_utc:
        return [f"certificate '{_subject(certificate)}' has expired (valid until {certificate.not_valid_after_utc.isoformat()})"]
    return []


def _issuer_failure(certificate: x509.Certificate, issuer: x509.Certificate) -> Optional[str]:
    # None when issuer signed certificate
    if certificate.issuer != issuer.subject:
        return _NAME_MISMATCH
    try:
        certificate.verify_directly_issued_by(issuer)
    except InvalidSignature:
        return f"signature of '{_subject(certificate)}' does not verify against issuer '{_subject(issuer)}'"
    except (ValueError, TypeError) as e:
        return f"cannot verify '{_subject(certificate)}' against issuer '{_subject(issuer)}': {e}"
    return None


def verify_certificate_chain(
    certificate: x509.Certificate,
    trusted_root: Optional[x509.Certificate] = None,
    intermediates: Sequence[x509.Certificate] = (),
    now: Optional[datetime] = None,
) -> list[str]:
    """
    Build the chain of a certificate and collect every reason it fails.

    Args:
        certificate: End-entity certificate presented by the server
        trusted_root: CA certificate the chain must terminate at; None accepts any root
        intermediates: Additional certificates presented by the server
        now: Reference time for validity checks (default: current UTC time)

    Returns:
        List of failure reasons; empty if the chain is valid
    """
    now = now or datetime.now(timezone.utc)
    failures: list[str] = []
    pool = [c for c in intermediates if c != certificate and c != trusted_root]
    current = certificate

    for _ in range(MAX_CHAIN_DEPTH):
        failures.extend(_time_validity_failures(current, now))

        if trusted_root is not None:
            if current == trusted_root:
                return failures
            root_failure = _issuer_failure(current, trusted_root)
            if root_failure is None:
                failures.extend(_time_validity_failures(trusted_root, now))
                return failures
            if root_failure != _NAME_MISMATCH:
                failures.append(root_failure)
                return failures

        issuer = None
        for candidate in pool:
            candidate_failure = _issuer_failure(current, candidate)
            if candidate_failure is None:
                issuer = candidate
                break
            if candidate_failure != _NAME_MISMATCH:
                failures.append(candidate_failure)
                return failures

        if issuer is None:
            if trusted_root is not None:
                failures.append(
                    f"untrusted root: issuer '{current.issuer.rfc4514_string()}' of "
                    f"'{_subject(current)}' is not the configured CA certificate"
                )
            return failures

        if not _is_certificate_authority(issuer):
            failures.append(f"issuer '{_subject(issuer)}' is not a certificate authority")
        pool.remove(issuer)
        current = issuer

    failures.append(f"chain of '{_subject(certificate)}' exceeds {MAX_CHAIN_DEPTH} certificates")
    return failures


# === Validation ===

def collect_validation_failures(
    server_certificate: x509.Certificate,
    trusted_root: Optional[x509.Certificate],
    expected_fingerprint: str,
    intermediates: Sequence[x509.Certificate] = (),
    now: Optional[datetime] = None,
    logger: logging.Logger | logging.LoggerAdapter | None = None,
) -> list[str]:
    """
    Run the chain and fingerprint checks and report every failure.

    Chain failures are logged at ERROR, one record per reason; a fingerprint
    mismatch is logged at WARNING. Both checks always run.

    Returns:
        All failure reasons; empty if the certificate is accepted
    """
    log = logger or logging.getLogger(__name__)
    subject = _subject(server_certificate)

    chain_failures = verify_certificate_chain(server_certificate, trusted_root, intermediates, now)
    if chain_failures:
        log.error(f"Failed to verify certificate '{subject}'", extra={"subject": subject})
        for reason in chain_failures:
            log.error(f" - {reason}", extra={"subject": subject, "reason": reason})

    expected = normalize_fingerprint(expected_fingerprint)
    actual = compute_fingerprint(server_certificate, fingerprint_algorithm(expected))
    fingerprint_failures = []
    if not expected or actual != expected:
        reason = f"fingerprint mismatch: expected '{expected}', got '{actual}'"
        log.warning(
            f"Verification of certificate fingerprint failed, certificate '{subject}'",
            extra={"subject": subject, "reason": reason},
        )
        fingerprint_failures.append(reason)

    return chain_failures + fingerprint_failures


def validate_server_certificate(
    server_certificate: x509.Certificate,
    trusted_root: Optional[x509.Certificate],
    expected_fingerprint: str,
    intermediates: Sequence[x509.Certificate] = (),
    now: Optional[datetime] = None,
    logger: logging.Logger | logging.LoggerAdapter | None = None,
) -> bool:
    """
    Validate a certificate presented by the broker.

    Args:
        server_certificate: Certificate received during the TLS handshake
        trusted_root: Configured CA certificate, or None to accept any chain root
        expected_fingerprint: Pinned fingerprint (hex, SHA-1 or SHA-256)
        intermediates: Other certificates presented by the broker
        now: Reference time for validity checks
        logger: Logger receiving the failure reports

    Returns:
        True if both the chain and the fingerprint checks pass
    """
    return not collect_validation_failures(
        server_certificate, trusted_root, expected_fingerprint, intermediates, now, logger
    )


class CertificateValidator:
    """
    Broker certificate check bound to a trusted root and a pinned fingerprint.

    Instances are injected into the TLS configuration and called once per
    handshake. They hold no per-connection state.
    """

    def __init__(
        self,
        trusted_root: Optional[x509.Certificate],
        expected_fingerprint: str,
        logger: logging.Logger | logging.LoggerAdapter | None = None,
    ):
        self.trusted_root = trusted_root
        self.expected_fingerprint = normalize_fingerprint(expected_fingerprint)
        self.logger = logger or logging.getLogger(__name__)

    def failures(
        self,
        server_certificate: x509.Certificate,
        intermediates: Sequence[x509.Certificate] = (),
    ) -> list[str]:
        """Return every reason the certificate is rejected."""
        return collect_validation_failures(
            server_certificate,
            self.trusted_root,
            self.expected_fingerprint,
            intermediates,
            logger=self.logger,
        )

    def __call__(
        self,
        server_certificate: x509.Certificate,
        intermediates: Sequence[x509.Certificate] = (),
    ) -> bool:
        return not self.failures(server_certificate, intermediates)


# === Loading ===

def load_certificate(path: str | Path) -> x509.Certificate:
    """
    Load a certificate from a PEM or DER file.

    Raises:
        OSError: If the file cannot be read
        ValueError: If the file does not contain a certificate
    """
    data = Path(path).read_bytes()
    if b"-----BEGIN" in data:
        return x509.load_pem_x509_certificate(data)
    return x509.load_der_x509_certificate(data)


def _load_pem_private_key(data: bytes, password: Optional[bytes]) -> Any:
    match = _PEM_PRIVATE_KEY.search(data)
    if match is None:
        raise ValueError("No private key found")
    try:
        return serialization.load_pem_private_key(match.group(0), password=password)
    except TypeError as e:
        if password is None:
            raise ValueError("Private key is encrypted and no password is configured") from e
    # key is not encrypted although a password is configured
    return serialization.load_pem_private_key(match.group(0), password=None)


def load_client_certificate(
    path: str | Path,
    password: Optional[str] = None,
    key_path: str | Path | None = None,
) -> tuple[x509.Certificate, Any, tuple[x509.Certificate, ...]]:
    """
    Load the client certificate, its private key and any chain certificates.

    PKCS#12 files (.pfx, .p12) are decrypted with ``password``. PEM files must
    contain the certificate followed by optional chain certificates, and the
    private key either in the same file or in ``key_path``.

    Returns:
        Tuple of (certificate, private key, chain certificates)

    Raises:
        OSError: If a file cannot be read
        ValueError: If the content cannot be parsed or decrypted
    """
    path = Path(path)
    data = path.read_bytes()
    secret = password.encode("utf-8") if password else None

    if path.suffix.lower() in PKCS12_SUFFIXES or b"-----BEGIN" not in data:
        key, certificate, additional = pkcs12.load_key_and_certificates(data, secret)
        if certificate is None or key is None:
            raise ValueError("PKCS#12 file must contain a certificate and its private key")
        return certificate, key, tuple(additional or ())

    certificates = x509.load_pem_x509_certificates(data)
    key_data = Path(key_path).read_bytes() if key_path else data
    key = _load_pem_private_key(key_data, secret)
    return certificates[0], key, tuple(certificates[1:])


class CertificateBundle(BaseModel):
    """
    Certificates used for a secure broker connection, loaded once per process.

    Attributes:
        ca_certificate: Trusted root for the broker chain; None falls back to
            accepting any chain root (the system trust store then applies)
        client_certificate: Certificate presented for mutual TLS
        client_private_key: Private key of the client certificate
        client_certificate_chain: Intermediate certificates sent with the client certificate
        server_certificate_fingerprint: Normalized pinned broker fingerprint
    """
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    ca_certificate: Optional[x509.Certificate] = None
    client_certificate: Optional[x509.Certificate] = None
    client_private_key: Optional[Any] = None
    client_certificate_chain: tuple[x509.Certificate, ...] = ()
    server_certificate_fingerprint: str = ""

    @property
    def has_client_certificate(self) -> bool:
        return self.client_certificate is not None and self.client_private_key is not None

    def validator(self, logger: logging.Logger | logging.LoggerAdapter | None = None) -> CertificateValidator:
        """Build the broker certificate validator for this bundle."""
        return CertificateValidator(self.ca_certificate, self.server_certificate_fingerprint, logger=logger)

    @classmethod
    def load(
        cls,
        settings: CertificateSettings,
        options: ConnectionOptions,
        base_dir: Optional[Path] = None,
    ) -> "CertificateBundle":
        """
        Load the certificates required by the connection options.

        Args:
            settings: The ``certificates`` settings section
            options: Connection options deciding whether a client certificate is needed
            base_dir: Directory relative paths resolve against (default: working directory)

        Returns:
            Loaded CertificateBundle

        Raises:
            ConfigurationError: If the pinned fingerprint is missing or malformed,
                a configured file cannot be parsed, or mutual TLS is requested
                and the client certificate is missing
        """
        fingerprint = normalize_fingerprint(settings.server_certificate_thumbprint)
        if len(fingerprint) not in (SHA1_HEX_LENGTH, SHA256_HEX_LENGTH) or not re.fullmatch(r"[0-9a-f]+", fingerprint):
            logger.critical("Server certificate thumbprint must be a SHA-1 or SHA-256 hex digest")
            raise ConfigurationError(
                "Server certificate thumbprint must be 40 or 64 hex digits", source="certificates"
            )

        ca_certificate = None
        ca_path = resolve_path(settings.ca_certificate_file_path, base_dir)
        if ca_path.is_file():
            try:
                ca_certificate = load_certificate(ca_path)
            except (OSError, ValueError) as e:
                logger.critical(f"Failed to read CA certificate {ca_path}: {e}")
                raise ConfigurationError(f"Invalid CA certificate {ca_path}: {e}", source="certificates") from e
            logger.debug(f"Loaded CA certificate '{_subject(ca_certificate)}' from {ca_path}")
        else:
            logger.warning(f"CA certificate {ca_path} not found, accepting any chain root")

        client_certificate = None
        client_key = None
        client_chain: tuple[x509.Certificate, ...] = ()
        if options.presents_client_certificate:
            client_path = resolve_path(settings.client_certificate_file_path, base_dir)
            key_path = resolve_path(settings.client_key_file_path, base_dir) if settings.client_key_file_path else None
            if not client_path.is_file():
                logger.critical(f"Client certificate {client_path} not found but mutual TLS is requested")
                raise ConfigurationError(
                    f"Client certificate file not found: {client_path}", source="certificates"
                )
            try:
                client_certificate, client_key, client_chain = load_client_certificate(
                    client_path,
                    settings.client_certificate_password.get_secret_value(),
                    key_path,
                )
            except (OSError, ValueError) as e:
                logger.critical(f"Failed to read client certificate {client_path}: {e}")
                raise ConfigurationError(
                    f"Invalid client certificate {client_path}: {e}", source="certificates"
                ) from e
            if ca_certificate is not None and ca_certificate not in client_chain:
                client_chain = client_chain + (ca_certificate,)
            logger.debug(f"Loaded client certificate '{_subject(client_certificate)}' from {client_path}")

        return cls(
            ca_certificate=ca_certificate,
            client_certificate=client_certificate,
            client_private_key=client_key,
            client_certificate_chain=client_chain,
            server_certificate_fingerprint=fingerprint,
        )


__all__ = [
    "normalize_fingerprint",
    "fingerprint_algorithm",
    "compute_fingerprint",
    "verify_certificate_chain",
    "collect_validation_failures",
    "validate_server_certificate",
    "CertificateValidator",
    "load_certificate",
    "load_client_certificate",
    "CertificateBundle",
]
