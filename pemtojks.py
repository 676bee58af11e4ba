#!/usr/bin/env python3

#
# convert PEM certificate chains and RSA private keys into a Java keystore entry.
#
# Reads the cert file (leaf first), optionally a key file, makes sure the key
# really belongs to the leaf, then adds the entry to a new or existing keystore.
#
# Usage: $0 --cert chain.pem [--key key.pem] --store out.jks [-opts]
#

import argparse
import base64
import binascii
import logging
import os
import re
import stat
import sys
import tempfile
import uuid
import warnings
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Union

import jks
import pydantic

from cryptography import x509
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.backends import default_backend
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa


CERTIFICATE_LABEL = "CERTIFICATE"
PRIVATE_KEY_LABELS = ("PRIVATE KEY", "RSA PRIVATE KEY")

DEFAULT_ALIAS = "item"

# first four bytes of a JKS / JCEKS container; only JKS can be written back
JKS_MAGIC   = b"\xfe\xed\xfe\xed"
JCEKS_MAGIC = b"\xce\xce\xce\xce"

PEM_PATTERN = re.compile(r"-----BEGIN ([^-\r\n]+)-----(.*?)-----END \1-----", re.DOTALL)

logger = logging.getLogger("pemtojks")


class Settings(pydantic.BaseModel):
    """Resolved invocation settings."""
    cert_path:          str
    store_path:         str
    key_path:           Optional[str] = None
    store_password:     str = ""
    alias:              str = pydantic.Field(default=DEFAULT_ALIAS, min_length=1)
    alias_password:     str = ""
    verbose:            bool = False
    debug:              bool = False


#
# everything that can go wrong, one class per stage
#
class PemToJksError(Exception):
    """Base class for all conversion failures."""


class EmptyCertificateChain(PemToJksError):
    """The certificate file did not contain a single certificate."""


class EmptyKeyFile(PemToJksError):
    """A key file was given but it did not contain a single private key."""


class PemDecodeError(PemToJksError):
    """A PEM block held something that isn't base64."""


class MalformedCertificate(PemToJksError):
    """A CERTIFICATE block isn't a valid X.509 structure."""


class MalformedKey(PemToJksError):
    """A private key block isn't a usable, unencrypted RSA private key."""


class KeyCertificateMismatch(PemToJksError):
    """The private key can't decrypt what the certificate's public key encrypts."""


class KeystoreAuthError(PemToJksError):
    """Wrong keystore password or a corrupt keystore."""


class UnsupportedFormat(PemToJksError):
    """The store file exists but isn't a JKS keystore."""


#
# data containers
#
@dataclass(frozen=True)
class PemObject:
    """One decoded BEGIN/END block; headers holds RFC 1421 style lines like Proc-Type."""
    label:      str
    data:       bytes
    headers:    Dict[str, str] = field(default_factory=dict, compare=False)


@dataclass(frozen=True)
class Certificate:
    """Parsed X.509 certificate; raw holds the exact DER bytes that go into the keystore."""
    subject:        str
    public_key:     Any
    raw:            bytes
    fingerprint:    str


@dataclass(frozen=True)
class PrivateKey:
    """Parsed RSA private key, kept as a key object plus its PKCS#8 DER encoding."""
    key_obj:    rsa.RSAPrivateKey = field(repr=False)
    pkcs8:      bytes = field(repr=False)
    label:      str = "PRIVATE KEY"


@dataclass
class CertificateOnlyEntry:
    """Trusted certificate entry."""
    alias:          str
    certificate:    Certificate

    def to_jks(self) -> "jks.TrustedCertEntry":
        return jks.TrustedCertEntry.new(self.alias, self.certificate.raw)


@dataclass
class CertificateChainWithKeyEntry:
    """Private key entry with its certificate chain, leaf first."""
    alias:          str
    chain:          List[Certificate]
    private_key:    PrivateKey
    key_password:   str = field(default="", repr=False)

    def to_jks(self) -> "jks.PrivateKeyEntry":
        return jks.PrivateKeyEntry.new(self.alias, [cert.raw for cert in self.chain],
                                       self.private_key.pkcs8, "pkcs8")


KeystoreEntry = Union[CertificateOnlyEntry, CertificateChainWithKeyEntry]


#
# PEM hunting
#
def decode_pem(data: Union[bytes, str]) -> List[PemObject]:
    """Decode every BEGIN/END block in data, in file order.

    Labels are not filtered; anything PEM-shaped comes back.

    Args:
        data: file contents

    Returns:
        List of PemObject, empty if there are no blocks

    Raises:
        PemDecodeError: if a block body is not valid base64
    """
    if isinstance(data, bytes):
        data = data.decode("utf-8", errors="ignore")

    objects = []
    for match in PEM_PATTERN.finditer(data):
        label = match.group(1).strip()
        lines = match.group(2).strip().splitlines()
        headers = {}
        while lines and ":" in lines[0]:
            name, _, value = lines.pop(0).partition(":")
            headers[name.strip()] = value.strip()

        body = "".join("".join(lines).split())
        try:
            content = base64.b64decode(body, validate=True)
        except binascii.Error as e:
            raise PemDecodeError(f"Malformed base64 in '{label}' block: {e}") from e

        logger.debug(f"Found '{label}' block ({len(content)} bytes)")
        objects.append(PemObject(label=label, data=content, headers=headers))

    return objects


def read_pem_file(path: str) -> List[PemObject]:
    """Read a file and decode all PEM blocks in it."""
    with open(path, "rb") as f:
        data = f.read()
    return decode_pem(data)


#
# parsers
#
class CertificateParser:
    """Turns CERTIFICATE blocks into Certificate objects."""

    def __init__(self, backend=None):
        self.backend = backend or default_backend()

    def parse(self, pem: PemObject) -> Certificate:
        """Parse a DER encoded X.509 certificate.

        Args:
            pem: a block labelled CERTIFICATE

        Returns:
            Certificate

        Raises:
            MalformedCertificate: if the bytes are not a certificate
        """
        try:
            with warnings.catch_warnings():
                warnings.simplefilter("ignore")
                cert = x509.load_der_x509_certificate(pem.data, self.backend)
                public_key = cert.public_key()
        except (ValueError, UnsupportedAlgorithm) as e:
            raise MalformedCertificate(f"Could not parse certificate: {e}") from e

        certificate = Certificate(
            subject     = cert.subject.rfc4514_string(),
            public_key  = public_key,
            raw         = pem.data,
            fingerprint = cert.fingerprint(hashes.SHA256()).hex().upper(),
        )
        logger.debug(f"Parsed certificate {certificate.subject} ({certificate.fingerprint})")
        return certificate


class KeyParser:
    """Turns PRIVATE KEY / RSA PRIVATE KEY blocks into PrivateKey objects.

    Both PKCS#8 and legacy PKCS#1 bytes are accepted under either label;
    legacy keys are re-wrapped as PKCS#8 since that's what the keystore stores.
    """

    def __init__(self, backend=None):
        self.backend = backend or default_backend()

    def parse(self, pem: PemObject) -> PrivateKey:
        if "ENCRYPTED" in pem.headers.get("Proc-Type", "") or "DEK-Info" in pem.headers:
            raise MalformedKey(f"'{pem.label}' block is password protected, only unencrypted keys are supported")

        try:
            key = serialization.load_der_private_key(pem.data, password=None, backend=self.backend)
        except (ValueError, TypeError, UnsupportedAlgorithm) as e:
            raise MalformedKey(f"Could not parse '{pem.label}' block: {e}") from e

        if not isinstance(key, rsa.RSAPrivateKey):
            raise MalformedKey(f"Unsupported key type {type(key).__name__}, only RSA keys are supported")

        pkcs8 = key.private_bytes(
            encoding=serialization.Encoding.DER,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption()
        )
        logger.debug(f"Parsed {key.key_size} bit RSA key from '{pem.label}' block")
        return PrivateKey(key_obj=key, pkcs8=pkcs8, label=pem.label)


#
# does the key actually belong to the cert?
#
class MatchVerifier:
    """Proves a private key and a certificate form an encrypt/decrypt pair.

    A random nonce is encrypted with the certificate's public key and
    decrypted with the private key (RSA, PKCS#1 v1.5 padding). Getting the
    nonce back is the only way to pass.
    """

    def __init__(self, nonce_factory: Optional[Callable[[], str]] = None):
        self.nonce_factory = nonce_factory or (lambda: str(uuid.uuid4()))

    def verify(self, certificate: Certificate, private_key: PrivateKey) -> None:
        """Raise KeyCertificateMismatch unless private_key matches certificate."""
        public_key = certificate.public_key
        if not isinstance(public_key, rsa.RSAPublicKey):
            raise KeyCertificateMismatch(
                f"Certificate {certificate.subject} has a {type(public_key).__name__}, not an RSA key")

        expected = self.nonce_factory().encode("utf-8")
        try:
            ciphertext = public_key.encrypt(expected, padding.PKCS1v15())
            actual = private_key.key_obj.decrypt(ciphertext, padding.PKCS1v15())
        except (ValueError, TypeError) as e:
            raise KeyCertificateMismatch(f"Key does not match certificate {certificate.subject}: {e}") from e

        if actual != expected:
            raise KeyCertificateMismatch(f"Key does not match certificate {certificate.subject}")

        logger.debug(f"Key matches certificate {certificate.subject}")


#
# keystore side
#
class KeystoreWriter:
    """Loads (or starts) a JKS keystore, puts one entry in it and writes it back."""

    def load(self, store_path: str, store_password: str) -> "jks.KeyStore":
        """Open an existing keystore, or start an empty one if there's nothing at store_path.

        Existing key entries are left encrypted so they are written back untouched.

        Args:
            store_path:     keystore file
            store_password: keystore password

        Returns:
            jks.KeyStore

        Raises:
            UnsupportedFormat: the file isn't a JKS keystore (JCEKS stores can be read by pyjks but not saved)
            KeystoreAuthError: wrong password, or the keystore is corrupt
        """
        if not os.path.isfile(store_path) or os.stat(store_path).st_size == 0:
            logger.debug(f"No keystore at {store_path}, starting a new jks keystore")
            return jks.KeyStore.new("jks", [])

        with open(store_path, "rb") as f:
            data = f.read()

        if data[:4] == JCEKS_MAGIC:
            raise UnsupportedFormat(f"{store_path} is a JCEKS keystore, only JKS keystores can be updated")
        if data[:4] != JKS_MAGIC:
            raise UnsupportedFormat(f"{store_path} is not a JKS keystore")

        try:
            keystore = jks.KeyStore.loads(data, store_password, try_decrypt_keys=False)
        except jks.util.UnsupportedKeystoreVersionException as e:
            raise UnsupportedFormat(f"{store_path}: {e}") from e
        except jks.util.KeystoreSignatureException as e:
            raise KeystoreAuthError(f"Could not open {store_path}, wrong keystore password?") from e
        except jks.util.KeystoreException as e:
            raise KeystoreAuthError(f"Could not open {store_path}, keystore is corrupt: {e}") from e

        logger.debug(f"Loaded {keystore.store_type} keystore with {len(keystore.entries)} entries")
        return keystore

    def add_entry(self,
                  store_path: str,
                  store_password: str,
                  alias: str,
                  alias_password: str,
                  chain: List[Certificate],
                  private_key: Optional[PrivateKey] = None) -> KeystoreEntry:
        """Add a trusted cert entry, or a key + chain entry, under alias and save the keystore.

        Without a key only chain[0] is stored; any intermediates are dropped.
        Aliases are case-insensitive in JKS, so they are stored lower-cased.

        Args:
            store_path:     keystore file, created if missing or empty
            store_password: keystore password
            alias:          entry alias; an existing entry is replaced
            alias_password: password protecting the private key entry
            chain:          certificates, leaf first
            private_key:    optional key belonging to chain[0]

        Returns:
            The entry that was written
        """
        if not chain:
            raise EmptyCertificateChain("Refusing to write an empty certificate chain")

        if alias != alias.lower():
            logger.info(f"Storing alias '{alias}' as '{alias.lower()}'")
        alias = alias.lower()

        logger.info("Loading keystore")
        keystore = self.load(store_path, store_password)

        if private_key is not None:
            logger.info("Adding key & cert chain entry to keystore")
            entry = CertificateChainWithKeyEntry(alias=alias, chain=list(chain),
                                                 private_key=private_key, key_password=alias_password)
        else:
            logger.info("Adding certificate entry to keystore")
            if len(chain) > 1:
                logger.warning(f"No key given, only storing {chain[0].subject}; "
                               f"{len(chain) - 1} intermediate certificate(s) dropped")
            entry = CertificateOnlyEntry(alias=alias, certificate=chain[0])

        if alias in keystore.entries:
            logger.info(f"Replacing existing entry '{alias}'")

        jks_entry = entry.to_jks()
        if isinstance(entry, CertificateChainWithKeyEntry):
            # saves() would protect a still-decrypted key with the store password
            jks_entry.encrypt(entry.key_password)
        keystore.entries[alias] = jks_entry

        logger.info("Saving keystore")
        self._atomic_write(store_path, keystore.saves(store_password))

        return entry

    @staticmethod
    def _atomic_write(path: str, data: bytes) -> None:
        """Write data next to path, then swap it in; path is never left half written.

        An existing file keeps its permission bits; a new one gets the usual umask default.
        """
        if os.path.exists(path):
            mode = stat.S_IMODE(os.stat(path).st_mode)
        else:
            umask = os.umask(0)
            os.umask(umask)
            mode = 0o666 & ~umask

        directory = os.path.dirname(os.path.abspath(path))
        with tempfile.NamedTemporaryFile("wb", delete=False, dir=directory,
                                         prefix=".pemtojks-", suffix=".tmp") as tmp:
            tmp_path = tmp.name
            try:
                tmp.write(data)
                tmp.flush()
                os.fsync(tmp.fileno())
            except OSError:
                tmp.close()
                os.unlink(tmp_path)
                raise

        try:
            os.chmod(tmp_path, mode)
            os.replace(tmp_path, path)
        except OSError:
            os.unlink(tmp_path)
            raise


#
# the whole run
#
class PemToJks:
    """Reads, verifies and stores; one instance per invocation."""

    def __init__(self, settings: Settings, backend=None):
        """Wire up the components.

        Args:
            settings: invocation settings
            backend:  cryptography backend shared by the certificate and key parsers
        """
        self.settings = settings
        self.backend = backend or default_backend()

        self.cert_parser = CertificateParser(self.backend)
        self.key_parser = KeyParser(self.backend)
        self.verifier = MatchVerifier()
        self.writer = KeystoreWriter()

        if settings.debug:
            logger.setLevel(logging.DEBUG)
        elif settings.verbose:
            logger.setLevel(logging.INFO)
        else:
            logger.setLevel(logging.WARNING)

    def read_cert_chain(self, path: str) -> List[Certificate]:
        """All certificates in path, in file order."""
        logger.info("Reading certificate file")
        return [self.cert_parser.parse(obj) for obj in read_pem_file(path)
                if obj.label == CERTIFICATE_LABEL]

    def read_private_keys(self, path: str) -> List[PrivateKey]:
        """All private keys in path, in file order."""
        logger.info("Reading key file")
        return [self.key_parser.parse(obj) for obj in read_pem_file(path)
                if obj.label in PRIVATE_KEY_LABELS]

    def run(self) -> KeystoreEntry:
        settings = self.settings

        chain = self.read_cert_chain(settings.cert_path)
        if not chain:
            raise EmptyCertificateChain(f"No certificates found in {settings.cert_path}")

        key = None
        if settings.key_path is not None:
            keys = self.read_private_keys(settings.key_path)
            if not keys:
                raise EmptyKeyFile(f"No keys found in {settings.key_path}")
            if len(keys) > 1:
                logger.debug(f"{len(keys)} keys in {settings.key_path}, using the first one")
            key = keys[0]

            logger.info("Verifying certificate against key")
            self.verifier.verify(chain[0], key)

        return self.writer.add_entry(settings.store_path, settings.store_password,
                                     settings.alias, settings.alias_password, chain, key)


#
# what goes on in CLI-land?
#
def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command line arguments.

    Returns: Parsed arguments

    """

    parser = argparse.ArgumentParser(
        prog="pemtojks",
        description="Add PEM certificates and an optional RSA private key to a Java keystore"
    )
    parser.add_argument(
        "--cert",
        required=True,
        metavar="PATH",
        help="Path to PEM certificate file, leaf certificate first"
    )
    parser.add_argument(
        "--key",
        metavar="PATH",
        help="Path to PEM key file; only the first key is used"
    )
    parser.add_argument(
        "--store",
        required=True,
        metavar="PATH",
        help="Path to java keystore file, created if absent"
    )
    parser.add_argument(
        "--storepw",
        default="",
        help="Java keystore password"
    )
    parser.add_argument(
        "--alias",
        default=DEFAULT_ALIAS,
        help=f"Java keystore alias for certificate/key (default: {DEFAULT_ALIAS})"
    )
    parser.add_argument(
        "--aliaspw",
        default="",
        help="Java keystore key alias password"
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose output"
    )
    parser.add_argument(
        "-d",
        "--debug",
        action="store_true",
        help="Enable debug output"
    )
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)

    logging.basicConfig(
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        level=logging.INFO
    )

    try:
        settings = Settings(
            cert_path       = args.cert,
            key_path        = args.key,
            store_path      = args.store,
            store_password  = args.storepw,
            alias           = args.alias,
            alias_password  = args.aliaspw,
            verbose         = args.verbose,
            debug           = args.debug,
        )
    except pydantic.ValidationError as e:
        logger.error(f"Invalid arguments: {e}")
        return 2

    try:
        PemToJks(settings).run()
    except (PemToJksError, OSError) as e:
        logger.error(f"{type(e).__name__}: {e}")
        return 1

    print("Done")
    return 0


if __name__ == "__main__":
    sys.exit(main())
