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
simple_acme_cert obtains a domain-validated certificate for a single domain from an ACME certificate authority such as
Let's Encrypt. Domain control is proven with either the HTTP-01 challenge, answered from a built-in HTTP server, or the
DNS-01 challenge, published through the Aliyun DNS API or by hand.
"""
import enum
import logging
import pathlib

import josepy as jose
import requests
import validators
from acme import errors as acme_errors
from acme import messages
from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.serialization import Encoding
from cryptography.x509.oid import NameOID

from . import challenges
from . import errors
from . import providers
from . import protocol
from . import store

# Constants and Variables
__version__ = "1.0.0"
LETS_ENCRYPT_DIRECTORY = "https://acme-v02.api.letsencrypt.org/directory"
LETS_ENCRYPT_STAGING_DIRECTORY = "https://acme-staging-v02.api.letsencrypt.org/directory"
DEFAULT_CERT_DIR = "./certs"
FOREIGN_ERRORS = (
    acme_errors.Error, messages.Error, jose.errors.Error, requests.RequestException, OSError, ValueError
)
__pdoc__ = {"tests": False}    # Excludes 'tests' submodule from documentation
logger = logging.getLogger(__name__)


def directory_url(staging: bool = False) -> str:
    """Returns the Let's Encrypt directory URL for the production or the staging environment."""
    return LETS_ENCRYPT_STAGING_DIRECTORY if staging else LETS_ENCRYPT_DIRECTORY


class IssuanceState(enum.Enum):
    """The steps of one certificate issuance attempt."""
    INIT = "init"
    ACCOUNT_REGISTERED = "account registered"
    ORDER_CREATED = "order created"
    RESOLVING_AUTH = "resolving authorization"
    ALL_AUTH_VALID = "all authorizations valid"
    CSR_READY = "csr ready"
    FINALIZED = "finalized"
    PERSISTED = "persisted"
    FAILED = "failed"


class CertManager:
    """
    Runs one certificate issuance for one domain: account setup, order, challenge resolution, CSR, finalization and
    persistence.
    """
    # pylint: disable=too-many-instance-attributes,too-many-arguments

    def __init__(
            self,
            domain: str,
            email: str,
            cert_dir: str = DEFAULT_CERT_DIR,
            staging: bool = False,
            port: int = 80,
            dns_only: bool = False,
            manual_dns: bool = False,
            dns_key: str = None,
            dns_secret: str = None,
            nameservers: list = None,
            verify_ssl: bool = True,
            protocol_client: protocol.ACMEProtocol = None,
            strategy: challenges.ChallengeStrategy = None
    ):
        """
        Args:
            domain (str): The domain to request a certificate for.
            email (str): The email address registered as the ACME account contact.
            cert_dir (str): The directory holding the account key and the issued certificates. Created if missing.
            staging (bool): Use the Let's Encrypt staging environment instead of production.
            port (int): The port the HTTP-01 challenge server listens on.
            dns_only (bool): Use the DNS-01 challenge instead of HTTP-01.
            manual_dns (bool): Use the DNS-01 challenge and publish the TXT record by hand.
            dns_key (str): The Aliyun AccessKey ID used to publish DNS-01 records.
            dns_secret (str): The Aliyun AccessKey secret used to publish DNS-01 records.
            nameservers (list): Nameservers used to check DNS-01 record visibility before validation.
            verify_ssl (bool): Verify the SSL certificate of the ACME server when making requests.
            protocol_client (simple_acme_cert.protocol.ACMEProtocol): The ACME operations to use. Built from the
                account key and directory URL when omitted.
            strategy (simple_acme_cert.challenges.ChallengeStrategy): The challenge strategy to use. Chosen from the
                options above when omitted.

        Raises:
            simple_acme_cert.errors.InvalidDomain: When `domain` is not a valid domain name.
            simple_acme_cert.errors.InvalidEmail: When `email` is not a valid email address.

        Examples:
            >>> import simple_acme_cert
            >>> manager = simple_acme_cert.CertManager(
            ...     domain="api.example.com",
            ...     email="admin@example.com",
            ...     staging=True,
            ...     dns_only=True,
            ...     dns_key="LTAI5t...",
            ...     dns_secret="..."
            ... )
            >>> manager.obtain_certificate()
        """
        if not validators.domain(domain or ""):
            raise errors.InvalidDomain(f"Invalid domain name '{domain}'. Domain name must adhere to RFC2181.")
        if not validators.email(email or ""):
            raise errors.InvalidEmail(f"Value '{email}' is not a valid email address.")

        self.domain = domain
        self.email = email
        self.staging = staging
        self.directory = directory_url(staging)
        self.port = port
        self.dns_only = dns_only
        self.manual_dns = manual_dns
        self.dns_key = dns_key
        self.dns_secret = dns_secret
        self.nameservers = nameservers
        self.verify_ssl = verify_ssl
        self.store = store.CertificateStore(cert_dir)
        self.state = IssuanceState.INIT
        self.failure_reason = None
        self.order = None
        self.csr = None
        self.private_key = None
        self.chain = []
        self.paths = ()
        self._protocol = protocol_client
        self._strategy = strategy

    @property
    def protocol(self) -> protocol.ACMEProtocol:
        """
        The ACME operations bound to this manager's account key. The certificate directory and account key are set up
        on first access.
        """
        if self._protocol is None:
            self.store.cert_dir.mkdir(parents=True, exist_ok=True)
            account_key = store.AccountKeyStore(self.store.account_key_path).load_or_create()
            self._protocol = protocol.ACMEProtocol(account_key, self.directory, verify_ssl=self.verify_ssl)
        return self._protocol

    @property
    def strategy(self) -> challenges.ChallengeStrategy:
        """The challenge strategy selected by the DNS options, HTTP-01 unless DNS-01 was requested."""
        if self._strategy is None:
            self._strategy = self.build_strategy()
        return self._strategy

    def build_strategy(self) -> challenges.ChallengeStrategy:
        """Builds the challenge strategy matching this manager's options."""
        if not (self.dns_only or self.manual_dns):
            return challenges.HTTP01Strategy(port=self.port)

        provider = None
        if self.dns_key and self.dns_secret and not self.manual_dns:
            provider = providers.AliyunDNS(self.dns_key, self.dns_secret)
        return challenges.DNS01Strategy(provider=provider, manual=self.manual_dns, nameservers=self.nameservers)

    def register_account(self) -> messages.RegistrationResource:
        """Registers the ACME account, or confirms the existing registration of the account key."""
        account = self.protocol.register(self.email)
        self._transition(IssuanceState.ACCOUNT_REGISTERED)
        return account

    def create_order(self) -> messages.OrderResource:
        """Creates an order for this manager's domain."""
        self.order = self.protocol.create_order(self.domain)
        self._transition(IssuanceState.ORDER_CREATED)
        return self.order

    def resolve_authorizations(self) -> list:
        """
        Resolves every authorization of the current order, in order. The first failure aborts the remaining ones.

        Returns:
            list: The valid authorization resources.
        """
        if self.order is None:
            raise errors.IssuanceError("Authorization", "No order has been created.")

        resolver = challenges.ChallengeResolver(self.protocol, self.strategy)
        authorizations = []
        for authz_url in self.order.body.authorizations:
            self._transition(IssuanceState.RESOLVING_AUTH)
            authorizations.append(resolver.resolve(authz_url))

        self._transition(IssuanceState.ALL_AUTH_VALID)
        return authorizations

    def generate_private_key_and_csr(self) -> tuple:
        """
        Generates a new certificate private key and a CSR naming the domain as both subject common name and DNS
        subject alternative name. The certificate key is never the account key.

        Returns:
            tuple: The private key object and the PEM encoded CSR.
        """
        self.private_key = store.generate_ec_key()
        csr = x509.CertificateSigningRequestBuilder().subject_name(
            x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, self.domain)])
        ).add_extension(
            x509.SubjectAlternativeName([x509.DNSName(self.domain)]), critical=False
        ).sign(self.private_key, hashes.SHA256())

        self.csr = csr.public_bytes(Encoding.PEM)
        self._transition(IssuanceState.CSR_READY)
        return self.private_key, self.csr

    def finalize(self) -> list:
        """
        Submits the CSR and downloads the issued chain.

        Returns:
            list: The DER encoded certificates of the chain, leaf first.
        """
        self.chain = self.protocol.finalize(self.order, self.csr)
        self._transition(IssuanceState.FINALIZED)
        return self.chain

    def save_certificate(self) -> tuple:
        """
        Writes the chain and private key to the certificate directory and logs the certificate details. Failing to
        read the details back is only logged.

        Returns:
            tuple: The certificate path and the private key path.
        """
        self.store.cert_dir.mkdir(parents=True, exist_ok=True)
        self.paths = self.store.save(self.domain, self.chain, self.private_key)
        self._transition(IssuanceState.PERSISTED)

        try:
            self.log_certificate_info(self.paths[0])
        except (OSError, ValueError) as error:
            logger.warning("Unable to display certificate info: %s", error)

        return self.paths

    def log_certificate_info(self, cert_path) -> store.CertificateMetadata:
        """Logs the subject, issuer, validity window and serial number of a saved certificate."""
        metadata = self.store.describe(cert_path)
        logger.info("=== Certificate info ===")
        logger.info("Subject: %s", metadata.subject)
        logger.info("DNS names: %s", ", ".join(metadata.dns_names))
        logger.info("Issuer: %s", metadata.issuer)
        logger.info(
            "Valid: %s to %s",
            metadata.not_before.strftime(store.TIMESTAMP_FORMAT),
            metadata.not_after.strftime(store.TIMESTAMP_FORMAT)
        )
        logger.info("Serial number: %s", metadata.serial_number)
        return metadata

    def obtain_certificate(self) -> tuple:
        """
        Runs the complete issuance. Any failure moves the manager to the `FAILED` state and is raised; nothing is
        retried.

        Returns:
            tuple: The certificate path and the private key path.

        Raises:
            simple_acme_cert.errors.SimpleACMECertError: When any step fails. Errors from the ACME library, the
                network or the filesystem are raised as `IssuanceError` naming the failed step.
        """
        logger.info(
            "Requesting a Let's Encrypt certificate for %s (%s)",
            self.domain, "staging" if self.staging else "production"
        )
        steps = [
            ("Account registration", self.register_account),
            ("Order creation", self.create_order),
            ("Authorization", self.resolve_authorizations),
            ("CSR generation", self.generate_private_key_and_csr),
            ("Finalization", self.finalize),
            ("Saving certificate", self.save_certificate),
        ]

        for stage, step in steps:
            try:
                step()
            except errors.SimpleACMECertError as error:
                self._fail(error)
                raise
            except FOREIGN_ERRORS as error:
                wrapped = errors.IssuanceError(stage, str(error) or type(error).__name__)
                self._fail(wrapped)
                raise wrapped from error

        logger.info("Certificate issued successfully, saved to %s", self.store.cert_dir)
        return self.paths

    def _transition(self, state: IssuanceState) -> None:
        logger.debug("Issuance state: %s -> %s", self.state.value, state.value)
        self.state = state

    def _fail(self, error: Exception) -> None:
        self.failure_reason = error
        self._transition(IssuanceState.FAILED)
