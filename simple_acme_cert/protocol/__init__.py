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
The ACME protocol operations the certificate manager depends on, bound to the `acme` client library. Nonces, JWS
envelopes and directory discovery are all handled by `acme.client.ClientNetwork`.
"""
import datetime
import logging

import josepy as jose
from acme import client
from acme import errors as acme_errors
from acme import messages
from cryptography import x509
from cryptography.hazmat.primitives.serialization import Encoding

from .. import errors

# Constants and Variables
USER_AGENT = "simple_acme_cert/1.0"
FINALIZE_TIMEOUT = 90
UNDECODABLE_FAILED_STATUSES = ("expired",)
logger = logging.getLogger(__name__)


class ACMEProtocol:
    """
    Registration, order, authorization, challenge and finalization calls against one ACME directory.
    """

    def __init__(self, account_key: jose.JWK, directory: str, verify_ssl: bool = True, acme_client=None) -> None:
        """
        Args:
            account_key (josepy.JWK): The account key used to sign every request.
            directory (str): The ACME directory URL.
            verify_ssl (bool): Verify the SSL certificate of the ACME server when making requests.
            acme_client (acme.client.ClientV2): An already connected client. One is created on first use if omitted.
        """
        self.account_key = account_key
        self.directory = directory
        self.verify_ssl = verify_ssl
        self.account = None
        self._acme_client = acme_client

    @property
    def acme_client(self) -> client.ClientV2:
        """
        The ClientV2 object needed to interact with the ACME server. Fetches the directory on first access.
        """
        if self._acme_client is None:
            alg = jose.ES256 if isinstance(self.account_key, jose.JWKEC) else jose.RS256
            net = client.ClientNetwork(self.account_key, alg=alg, user_agent=USER_AGENT, verify_ssl=self.verify_ssl)
            directory_obj = client.ClientV2.get_directory(self.directory, net)
            self._acme_client = client.ClientV2(directory_obj, net=net)
        return self._acme_client

    def register(self, email: str) -> messages.RegistrationResource:
        """
        Registers the account key with the ACME server, agreeing to its terms of service. A server reporting that the
        account already exists is treated as a successful registration.

        Returns:
            acme.messages.RegistrationResource: The account resource.
        """
        registration = messages.NewRegistration.from_data(email=email, terms_of_service_agreed=True)

        try:
            self.account = self.acme_client.new_account(registration)
            logger.info("ACME account registered")
        except acme_errors.ConflictError as error:
            logger.info("ACME account already exists at %s", error.location)
            self.account = messages.RegistrationResource(uri=error.location, body=registration)
            self.acme_client.net.account = self.account

        return self.account

    def create_order(self, domain: str) -> messages.OrderResource:
        """
        Requests a new order for a single DNS identifier.

        Raises:
            simple_acme_cert.errors.InvalidAccount: When no account has been registered yet.
        """
        if self.account is None:
            raise errors.InvalidAccount("No account registration found. You must register the account first.")

        new_order = messages.NewOrder(identifiers=[messages.Identifier(typ=messages.IDENTIFIER_FQDN, value=domain)])
        response = self._post(self.acme_client.directory["newOrder"], new_order)
        body = messages.Order.from_json(response.json())
        return messages.OrderResource(body=body, uri=response.headers.get("Location"))

    def get_authorization(self, url: str) -> messages.AuthorizationResource:
        """
        Fetches the current state of an authorization.

        Raises:
            simple_acme_cert.errors.ChallengeRejected: When the authorization has expired.
        """
        response = self._post(url, None)
        body = response.json()

        # `acme.messages.Status` cannot decode this status
        if isinstance(body, dict) and body.get("status") in UNDECODABLE_FAILED_STATUSES:
            identifier = (body.get("identifier") or {}).get("value", url)
            raise errors.ChallengeRejected(
                f"Validation of '{identifier}' failed with status '{body['status']}'."
            )

        return messages.AuthorizationResource(body=messages.Authorization.from_json(body), uri=url)

    def response_and_validation(self, challb: messages.ChallengeBody) -> tuple:
        """
        Computes the challenge response to send and the validation value to publish. For HTTP-01 the validation is
        the key authorization, for DNS-01 it is the TXT record value derived from it.
        """
        return challb.response_and_validation(self.account_key)

    def accept(self, challb: messages.ChallengeBody, response) -> messages.ChallengeResource:
        """Tells the ACME server the challenge is ready to be validated."""
        return self.acme_client.answer_challenge(challb, response)

    def finalize(self, order: messages.OrderResource, csr_pem: bytes, timeout: int = FINALIZE_TIMEOUT) -> list:
        """
        Submits the CSR for a fully authorized order and downloads the issued chain.

        Returns:
            list: The DER encoded certificates of the chain, leaf first.
        """
        deadline = datetime.datetime.now() + datetime.timedelta(seconds=timeout)
        final_order = self.acme_client.finalize_order(order.update(csr_pem=csr_pem), deadline)
        chain = x509.load_pem_x509_certificates(final_order.fullchain_pem.encode())
        return [cert.public_bytes(Encoding.DER) for cert in chain]

    def _post(self, url: str, obj):
        """Sends a signed POST (or POST-as-GET when `obj` is None) using the directory's nonce endpoint."""
        return self.acme_client.net.post(url, obj, new_nonce_url=self.acme_client.directory["newNonce"])
