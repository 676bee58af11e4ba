import datetime
from types import SimpleNamespace

import pytest

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from cryptography.x509.oid import NameOID


def _name(common_name):
    return x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])


def _build_cert(subject, subject_key, issuer, issuer_key, is_ca=False):
    now = datetime.datetime.now(datetime.timezone.utc)
    builder = (
        x509.CertificateBuilder()
        .subject_name(_name(subject))
        .issuer_name(_name(issuer))
        .public_key(subject_key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - datetime.timedelta(days=1))
        .not_valid_after(now + datetime.timedelta(days=30))
        .add_extension(x509.BasicConstraints(ca=is_ca, path_length=None), critical=True)
    )
    return builder.sign(issuer_key, hashes.SHA256())


def cert_pem(cert):
    return cert.public_bytes(serialization.Encoding.PEM)


def key_pem(key, fmt=serialization.PrivateFormat.PKCS8):
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=fmt,
        encryption_algorithm=serialization.NoEncryption()
    )


@pytest.fixture(scope="session")
def pki():
    """Intermediate "CN=B" issuing leaf "CN=A", plus some keys that match neither."""
    intermediate_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    leaf_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    other_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    small_key = rsa.generate_private_key(public_exponent=65537, key_size=1024)
    ec_key = ec.generate_private_key(ec.SECP256R1())

    intermediate = _build_cert("B", intermediate_key, "B", intermediate_key, is_ca=True)
    leaf = _build_cert("A", leaf_key, "B", intermediate_key)
    ec_cert = _build_cert("EC", ec_key, "EC", ec_key)

    return SimpleNamespace(
        leaf=leaf,
        leaf_key=leaf_key,
        intermediate=intermediate,
        intermediate_key=intermediate_key,
        other_key=other_key,
        small_key=small_key,
        ec_key=ec_key,
        ec_cert=ec_cert,
    )


@pytest.fixture
def cert_file(tmp_path, pki):
    path = tmp_path / "cert.pem"
    path.write_bytes(cert_pem(pki.leaf) + cert_pem(pki.intermediate))
    return path


@pytest.fixture
def key_file(tmp_path, pki):
    path = tmp_path / "key.pem"
    path.write_bytes(key_pem(pki.leaf_key))
    return path


@pytest.fixture
def store_path(tmp_path):
    return tmp_path / "keystore.jks"
