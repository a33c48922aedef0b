# Copyright 2025 Jared Hendrickson
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#    http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
"""
Filesystem persistence for the ACME account key and for issued certificates. All keys are EC P-256 keys stored as
PEM `EC PRIVATE KEY` blocks readable only by the owner.
"""
import collections
import logging
import os
import pathlib

import josepy as jose
from cryptography import x509
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.serialization import (
    Encoding,
    NoEncryption,
    PrivateFormat,
    load_pem_private_key,
)
from cryptography.x509.oid import NameOID

from .. import errors

# Constants and Variables
ACCOUNT_KEY_NAME = "account.key"
TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"
logger = logging.getLogger(__name__)

CertificateMetadata = collections.namedtuple(
    "CertificateMetadata", "subject dns_names issuer not_before not_after serial_number"
)


def generate_ec_key() -> ec.EllipticCurvePrivateKey:
    """Generates a new EC P-256 private key."""
    return ec.generate_private_key(ec.SECP256R1())


def encode_ec_key(key: ec.EllipticCurvePrivateKey) -> bytes:
    """Encodes an EC private key as a PEM `EC PRIVATE KEY` block."""
    return key.private_bytes(
        encoding=Encoding.PEM,
        format=PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=NoEncryption()
    )


def write_private_file(path: pathlib.Path, data: bytes) -> None:
    """Writes `data` to `path` with owner-only permissions, replacing any existing file."""
    descriptor = os.open(str(path), os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(descriptor, "wb") as key_file:
        key_file.write(data)


class AccountKeyStore:
    """Loads or creates the signing key of the ACME account."""

    def __init__(self, path) -> None:
        """
        Args:
            path (str): The file path of the PEM encoded account key, normally `<cert_dir>/account.key`.
        """
        self.path = pathlib.Path(path)

    def load(self) -> ec.EllipticCurvePrivateKey:
        """
        Reads and decodes the existing account key.

        Raises:
            OSError: When the file cannot be read.
            ValueError: When the file is not a PEM encoded EC P-256 private key.
        """
        key = load_pem_private_key(self.path.read_bytes(), password=None)
        if not isinstance(key, ec.EllipticCurvePrivateKey) or not isinstance(key.curve, ec.SECP256R1):
            raise ValueError(f"'{self.path}' does not hold an EC P-256 private key.")
        return key

    def load_or_create(self) -> jose.JWKEC:
        """
        Loads the existing account key, or generates and persists a new one when no usable key exists.

        Returns:
            josepy.JWKEC: The account key, ready to sign ACME requests.

        Raises:
            simple_acme_cert.errors.InvalidAccountKey: When a new key cannot be encoded or written.
        """
        try:
            key = self.load()
            logger.info("Loaded existing account key from %s", self.path)
            return jose.JWKEC(key=key)
        except (OSError, ValueError, TypeError) as error:
            logger.debug("No usable account key at %s: %s", self.path, error)

        logger.info("Generating a new account key at %s", self.path)
        key = generate_ec_key()
        try:
            write_private_file(self.path, encode_ec_key(key))
        except (OSError, ValueError) as error:
            raise errors.InvalidAccountKey(f"Unable to persist account key to '{self.path}': {error}") from error

        return jose.JWKEC(key=key)


class CertificateStore:
    """Writes issued certificate chains and their private keys to a certificate directory."""

    def __init__(self, cert_dir) -> None:
        self.cert_dir = pathlib.Path(cert_dir)

    @property
    def account_key_path(self) -> pathlib.Path:
        """The location of the account key inside this certificate directory."""
        return self.cert_dir.joinpath(ACCOUNT_KEY_NAME)

    def paths(self, domain: str) -> tuple:
        """Returns the certificate and key file paths used for `domain`."""
        return self.cert_dir.joinpath(f"{domain}.crt"), self.cert_dir.joinpath(f"{domain}.key")

    def save(self, domain: str, chain: list, key: ec.EllipticCurvePrivateKey) -> tuple:
        """
        Writes the certificate chain and its private key. Existing files are overwritten.

        Args:
            domain (str): The domain the certificate was issued for. Used to name the files.
            chain (list): DER encoded certificates in the order returned by the server, leaf first.
            key (EllipticCurvePrivateKey): The certificate private key.

        Returns:
            tuple: The certificate path and the private key path.
        """
        cert_path, key_path = self.paths(domain)
        pem_chain = b"".join(x509.load_der_x509_certificate(der).public_bytes(Encoding.PEM) for der in chain)

        cert_path.write_bytes(pem_chain)
        write_private_file(key_path, encode_ec_key(key))

        logger.info("Certificate saved to %s", cert_path)
        logger.info("Private key saved to %s", key_path)
        return cert_path, key_path

    @staticmethod
    def describe(cert_path) -> CertificateMetadata:
        """
        Parses the leaf certificate of a saved chain for display.

        Raises:
            OSError: When the file cannot be read.
            ValueError: When the file holds no parseable PEM certificate.
        """
        cert = x509.load_pem_x509_certificate(pathlib.Path(cert_path).read_bytes())

        try:
            san = cert.extensions.get_extension_for_class(x509.SubjectAlternativeName)
            dns_names = san.value.get_values_for_type(x509.DNSName)
        except x509.ExtensionNotFound:
            dns_names = []

        return CertificateMetadata(
            subject=_common_name(cert.subject),
            dns_names=dns_names,
            issuer=_common_name(cert.issuer),
            not_before=cert.not_valid_before_utc,
            not_after=cert.not_valid_after_utc,
            serial_number=cert.serial_number,
        )


def _common_name(name: x509.Name) -> str:
    attributes = name.get_attributes_for_oid(NameOID.COMMON_NAME)
    return str(attributes[0].value) if attributes else ""
