import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.serialization import pkcs12
from cryptography.x509.oid import NameOID
from dotenv import load_dotenv

# === Load Environment and Configure Logging ===
load_dotenv()

logging.basicConfig(level=logging.INFO, format="%(levelname)-8s %(message)s")


# === Certificate factory ===

@dataclass
class Issued:
    certificate: x509.Certificate
    key: Any

    @property
    def subject(self) -> str:
        return self.certificate.subject.rfc4514_string()

    def pem(self) -> bytes:
        return self.certificate.public_bytes(serialization.Encoding.PEM)

    def key_pem(self, password: Optional[bytes] = None) -> bytes:
        encryption = (
            serialization.BestAvailableEncryption(password) if password else serialization.NoEncryption()
        )
        return self.key.private_bytes(serialization.Encoding.PEM, serialization.PrivateFormat.PKCS8, encryption)


def issue_certificate(
    common_name: str,
    issuer: Optional[Issued] = None,
    ca: bool = False,
    not_before: Optional[datetime] = None,
    not_after: Optional[datetime] = None,
    basic_constraints: bool = True,
) -> Issued:
    """Issue a certificate signed by ``issuer``, or self-signed if issuer is None."""
    key = ec.generate_private_key(ec.SECP256R1())
    now = datetime.now(timezone.utc)
    subject = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])

    builder = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(issuer.certificate.subject if issuer else subject)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(not_before or now - timedelta(days=1))
        .not_valid_after(not_after or now + timedelta(days=30))
    )
    if basic_constraints:
        builder = builder.add_extension(x509.BasicConstraints(ca=ca, path_length=None), critical=True)
    if not ca:
        builder = builder.add_extension(x509.SubjectAlternativeName([x509.DNSName(common_name)]), critical=False)

    signing_key = issuer.key if issuer else key
    return Issued(builder.sign(signing_key, hashes.SHA256()), key)


@pytest.fixture(scope="session")
def certificate_factory() -> Callable[..., Issued]:
    return issue_certificate


@pytest.fixture(scope="session")
def root_ca() -> Issued:
    return issue_certificate("Test Root CA", ca=True)


@pytest.fixture(scope="session")
def other_ca() -> Issued:
    return issue_certificate("Unrelated Root CA", ca=True)


@pytest.fixture(scope="session")
def server_cert(root_ca) -> Issued:
    return issue_certificate("broker.local", issuer=root_ca)


@pytest.fixture(scope="session")
def client_cert(root_ca) -> Issued:
    return issue_certificate("raspi-01", issuer=root_ca)


@pytest.fixture(scope="session")
def foreign_server_cert(other_ca) -> Issued:
    return issue_certificate("broker.local", issuer=other_ca)


@pytest.fixture(scope="session")
def expired_server_cert(root_ca) -> Issued:
    now = datetime.now(timezone.utc)
    return issue_certificate(
        "broker.local",
        issuer=root_ca,
        not_before=now - timedelta(days=60),
        not_after=now - timedelta(days=1),
    )


@pytest.fixture(scope="session")
def intermediate_ca(root_ca) -> Issued:
    return issue_certificate("Test Intermediate CA", issuer=root_ca, ca=True)


@pytest.fixture(scope="session")
def leaf_via_intermediate(intermediate_ca) -> Issued:
    return issue_certificate("broker.local", issuer=intermediate_ca)


# === Certificate files ===

@pytest.fixture
def certificate_dir(tmp_path, root_ca, client_cert):
    """Directory holding ca.crt, client.pfx (password 'password') and client.pem."""
    (tmp_path / "ca.crt").write_bytes(root_ca.pem())
    (tmp_path / "client.pfx").write_bytes(
        pkcs12.serialize_key_and_certificates(
            b"raspi-01",
            client_cert.key,
            client_cert.certificate,
            None,
            serialization.BestAvailableEncryption(b"password"),
        )
    )
    (tmp_path / "client.pem").write_bytes(client_cert.pem() + client_cert.key_pem(b"password"))
    return tmp_path


# === Utility ===

@pytest.fixture
def wait_until() -> Callable[..., bool]:
    """Poll a predicate until it holds or the timeout expires."""

    def _wait_until(predicate: Callable[[], bool], timeout: float = 3.0, interval: float = 0.01) -> bool:
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if predicate():
                return True
            time.sleep(interval)
        return predicate()

    return _wait_until
