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
"""Tests primary functionality of the simple_acme_cert package."""
import json
import pathlib
import tempfile
import unittest
from unittest import mock

import requests
from acme import errors as acme_errors
from acme import messages
from cryptography import x509
from cryptography.hazmat.primitives.serialization import Encoding
from cryptography.x509.oid import NameOID

import simple_acme_cert
from simple_acme_cert import challenges
from simple_acme_cert import errors
from simple_acme_cert import protocol
from simple_acme_cert import providers
from simple_acme_cert.tests import TEST_DOMAIN, TEST_EMAIL, TEST_SUBDOMAIN
from simple_acme_cert.tests.tools import (
    ACCOUNT_KEY,
    AUTHZ_URL,
    ORDER_URL,
    FakeProtocol,
    ServerRecorder,
    is_cert,
    is_ec_private_key,
    make_authorization,
    make_chain,
    make_order,
)

# Variables and constants
NEW_ORDER_URL = "https://acme.test/new-order"
NEW_NONCE_URL = "https://acme.test/new-nonce"
ACCOUNT_URL = "https://acme.test/acct/1"


def mock_response(body, location: str = None) -> mock.Mock:
    """Builds a response stand-in carrying a JSON body and an optional Location header."""
    response = mock.Mock()
    response.json.return_value = json.loads(body.json_dumps())
    response.headers = {"Location": location} if location else {}
    return response


class TestACMEProtocol(unittest.TestCase):
    """Tests the ACME operations against a mocked acme.client.ClientV2."""

    def setUp(self):
        """Creates a protocol bound to a mocked ACME client."""
        self.client = mock.Mock()
        self.client.directory = {"newOrder": NEW_ORDER_URL, "newNonce": NEW_NONCE_URL}
        self.protocol = protocol.ACMEProtocol(ACCOUNT_KEY, simple_acme_cert.LETS_ENCRYPT_STAGING_DIRECTORY,
                                              acme_client=self.client)

    def test_register(self):
        """Checks that the contact email is sent with the terms of service agreed."""
        self.client.new_account.return_value = messages.RegistrationResource(uri=ACCOUNT_URL)

        account = self.protocol.register(TEST_EMAIL)

        self.assertEqual(account.uri, ACCOUNT_URL)
        registration = self.client.new_account.call_args[0][0]
        self.assertEqual(registration.emails, (TEST_EMAIL,))
        self.assertTrue(registration.terms_of_service_agreed)

    def test_register_existing_account(self):
        """Checks that registering an already known account key succeeds with the existing account."""
        self.client.new_account.side_effect = [
            messages.RegistrationResource(uri=ACCOUNT_URL),
            acme_errors.ConflictError(ACCOUNT_URL),
        ]

        first = self.protocol.register(TEST_EMAIL)
        second = self.protocol.register(TEST_EMAIL)

        self.assertEqual(first.uri, second.uri)
        self.assertEqual(self.client.net.account, second)

    def test_create_order_requires_account(self):
        """Checks that orders cannot be created before registration."""
        with self.assertRaises(errors.InvalidAccount):
            self.protocol.create_order(TEST_DOMAIN)
        self.client.net.post.assert_not_called()

    def test_create_order(self):
        """Checks that a single DNS identifier is ordered and the order URL is kept."""
        self.client.new_account.return_value = messages.RegistrationResource(uri=ACCOUNT_URL)
        self.client.net.post.return_value = mock_response(make_order().body, location=ORDER_URL)
        self.protocol.register(TEST_EMAIL)

        order = self.protocol.create_order(TEST_DOMAIN)

        self.assertEqual(order.uri, ORDER_URL)
        self.assertEqual(list(order.body.authorizations), [AUTHZ_URL])
        url, new_order = self.client.net.post.call_args[0]
        self.assertEqual(url, NEW_ORDER_URL)
        self.assertEqual([identifier.value for identifier in new_order.identifiers], [TEST_DOMAIN])
        self.assertEqual(self.client.net.post.call_args[1], {"new_nonce_url": NEW_NONCE_URL})

    def test_get_authorization(self):
        """Checks that authorizations are fetched with POST-as-GET."""
        self.client.net.post.return_value = mock_response(make_authorization(TEST_SUBDOMAIN).body)

        authzr = self.protocol.get_authorization(AUTHZ_URL)

        self.assertEqual(authzr.uri, AUTHZ_URL)
        self.assertEqual(authzr.body.identifier.value, TEST_SUBDOMAIN)
        self.assertEqual(authzr.body.status, messages.STATUS_PENDING)
        self.client.net.post.assert_called_once_with(AUTHZ_URL, None, new_nonce_url=NEW_NONCE_URL)

    def test_expired_authorization(self):
        """Checks that an expired authorization is a rejection, both when fetched and when resolved."""
        body = json.loads(make_authorization(TEST_SUBDOMAIN).body.json_dumps())
        body["status"] = "expired"
        self.client.net.post.return_value.json.return_value = body

        with self.assertRaises(errors.ChallengeRejected) as context:
            self.protocol.get_authorization(AUTHZ_URL)
        self.assertIn(TEST_SUBDOMAIN, context.exception.message)
        self.assertIn("expired", context.exception.message)

        recorder = ServerRecorder()
        strategy = challenges.HTTP01Strategy(server_factory=recorder, sleep=mock.Mock())
        with self.assertRaises(errors.ChallengeRejected):
            challenges.ChallengeResolver(self.protocol, strategy, sleep=mock.Mock()).resolve(AUTHZ_URL)
        self.assertEqual(recorder.servers, [])
        self.client.answer_challenge.assert_not_called()

    def test_expired_while_polling(self):
        """Checks that an authorization expiring after the challenge was accepted is a rejection, not a timeout."""
        pending = mock_response(make_authorization(TEST_DOMAIN).body)
        expired = mock.Mock()
        expired.json.return_value = json.loads(make_authorization(TEST_DOMAIN).body.json_dumps())
        expired.json.return_value["status"] = "expired"
        self.client.net.post.side_effect = [pending, expired]
        recorder = ServerRecorder()
        strategy = challenges.HTTP01Strategy(server_factory=recorder, sleep=mock.Mock())

        with self.assertRaises(errors.ChallengeRejected) as context:
            challenges.ChallengeResolver(self.protocol, strategy, sleep=mock.Mock()).resolve(AUTHZ_URL)

        self.assertNotIsInstance(context.exception, errors.ACMETimeout)
        self.client.answer_challenge.assert_called_once()
        self.assertEqual(recorder.servers[0].stops, 1)

    def test_response_and_validation(self):
        """Checks that validation values are computed with the account key."""
        authzr = make_authorization(TEST_DOMAIN)
        http_challb, dns_challb = authzr.body.challenges

        _, key_authorization = self.protocol.response_and_validation(http_challb)
        _, txt_value = self.protocol.response_and_validation(dns_challb)

        self.assertEqual(key_authorization, http_challb.chall.key_authorization(ACCOUNT_KEY))
        self.assertEqual(txt_value, dns_challb.chall.validation(ACCOUNT_KEY))

    def test_finalize(self):
        """Checks that the CSR is submitted and the PEM chain is returned as DER, leaf first."""
        chain = make_chain(TEST_DOMAIN)
        fullchain_pem = b"".join(
            x509.load_der_x509_certificate(der).public_bytes(Encoding.PEM) for der in chain
        ).decode()
        self.client.finalize_order.return_value = mock.Mock(fullchain_pem=fullchain_pem)

        result = self.protocol.finalize(make_order(), b"csr")

        self.assertEqual(result, chain)
        self.assertEqual(self.client.finalize_order.call_args[0][0].csr_pem, b"csr")


class TestCertManager(unittest.TestCase):
    """Tests the certificate issuance workflow."""

    def setUp(self):
        """Creates a scratch certificate directory."""
        self.tmp = tempfile.TemporaryDirectory()
        self.cert_dir = pathlib.Path(self.tmp.name, "certs")
        self.recorder = ServerRecorder()

    def tearDown(self):
        self.tmp.cleanup()

    def manager(self, fake_protocol: FakeProtocol, domain: str = TEST_DOMAIN, **kwargs):
        """Creates a manager driving `fake_protocol` with a recorded HTTP-01 strategy."""
        kwargs.setdefault("strategy", challenges.HTTP01Strategy(server_factory=self.recorder, sleep=mock.Mock()))
        return simple_acme_cert.CertManager(
            domain, TEST_EMAIL, cert_dir=self.cert_dir, protocol_client=fake_protocol, **kwargs
        )

    def test_directory_url(self):
        """Checks the directory URL chosen for each environment."""
        self.assertEqual(simple_acme_cert.directory_url(), "https://acme-v02.api.letsencrypt.org/directory")
        self.assertEqual(
            simple_acme_cert.directory_url(staging=True),
            "https://acme-staging-v02.api.letsencrypt.org/directory"
        )

    def test_input_validation(self):
        """Checks that the domain and email are validated on construction."""
        with self.assertRaises(errors.InvalidDomain):
            simple_acme_cert.CertManager("not a domain!", TEST_EMAIL)
        with self.assertRaises(errors.InvalidDomain):
            simple_acme_cert.CertManager("", TEST_EMAIL)
        with self.assertRaises(errors.InvalidEmail):
            simple_acme_cert.CertManager(TEST_DOMAIN, "Not a valid email address!")

        manager = simple_acme_cert.CertManager(TEST_DOMAIN, TEST_EMAIL, staging=True)
        self.assertEqual(manager.directory, simple_acme_cert.LETS_ENCRYPT_STAGING_DIRECTORY)
        self.assertEqual(manager.state, simple_acme_cert.IssuanceState.INIT)

    def test_strategy_selection(self):
        """Checks the challenge strategy built for each combination of DNS options."""
        strategy = simple_acme_cert.CertManager(TEST_DOMAIN, TEST_EMAIL, port=8080).strategy
        self.assertIsInstance(strategy, challenges.HTTP01Strategy)
        self.assertEqual(strategy.port, 8080)

        # Credentials alone do not switch to DNS-01
        strategy = simple_acme_cert.CertManager(TEST_DOMAIN, TEST_EMAIL, dns_key="id", dns_secret="secret").strategy
        self.assertIsInstance(strategy, challenges.HTTP01Strategy)

        strategy = simple_acme_cert.CertManager(
            TEST_DOMAIN, TEST_EMAIL, dns_only=True, dns_key="id", dns_secret="secret", nameservers=["192.0.2.53"]
        ).strategy
        self.assertIsInstance(strategy, challenges.DNS01Strategy)
        self.assertIsInstance(strategy.provider, providers.AliyunDNS)
        self.assertTrue(strategy.automated)
        self.assertEqual(strategy.nameservers, ["192.0.2.53"])

        strategy = simple_acme_cert.CertManager(TEST_DOMAIN, TEST_EMAIL, dns_only=True, dns_key="id").strategy
        self.assertIsNone(strategy.provider)
        self.assertFalse(strategy.automated)

        strategy = simple_acme_cert.CertManager(
            TEST_DOMAIN, TEST_EMAIL, manual_dns=True, dns_key="id", dns_secret="secret"
        ).strategy
        self.assertIsInstance(strategy, challenges.DNS01Strategy)
        self.assertTrue(strategy.manual)
        self.assertIsNone(strategy.provider)

    def test_protocol_setup(self):
        """Checks that the certificate directory and account key are created on first use without network access."""
        manager = simple_acme_cert.CertManager(TEST_DOMAIN, TEST_EMAIL, cert_dir=self.cert_dir, staging=True)

        acme_protocol = manager.protocol

        self.assertIsInstance(acme_protocol, protocol.ACMEProtocol)
        self.assertEqual(acme_protocol.directory, simple_acme_cert.LETS_ENCRYPT_STAGING_DIRECTORY)
        self.assertTrue(is_ec_private_key(self.cert_dir.joinpath("account.key").read_bytes()))
        self.assertIs(manager.protocol, acme_protocol)

    def test_csr(self):
        """Checks that the CSR names the domain as common name and DNS subject alternative name."""
        manager = self.manager(FakeProtocol(TEST_SUBDOMAIN, ["valid"]), domain=TEST_SUBDOMAIN)

        key, csr_pem = manager.generate_private_key_and_csr()
        csr = x509.load_pem_x509_csr(csr_pem)

        self.assertTrue(csr.is_signature_valid)
        self.assertEqual(csr.subject.get_attributes_for_oid(NameOID.COMMON_NAME)[0].value, TEST_SUBDOMAIN)
        san = csr.extensions.get_extension_for_class(x509.SubjectAlternativeName)
        self.assertEqual(san.value.get_values_for_type(x509.DNSName), [TEST_SUBDOMAIN])
        self.assertEqual(csr.public_key().public_numbers(), key.public_key().public_numbers())
        self.assertEqual(manager.state, simple_acme_cert.IssuanceState.CSR_READY)

    def test_obtain_certificate(self):
        """Checks a complete HTTP-01 issuance from registration to persisted files."""
        chain = make_chain(TEST_DOMAIN)
        fake_protocol = FakeProtocol(TEST_DOMAIN, ["pending", "valid"], chain=chain)
        manager = self.manager(fake_protocol)

        cert_path, key_path = manager.obtain_certificate()

        self.assertEqual(manager.state, simple_acme_cert.IssuanceState.PERSISTED)
        self.assertIsNone(manager.failure_reason)
        self.assertEqual(cert_path, self.cert_dir.joinpath(f"{TEST_DOMAIN}.crt"))
        self.assertEqual(key_path, self.cert_dir.joinpath(f"{TEST_DOMAIN}.key"))
        self.assertTrue(is_cert(cert_path.read_bytes()))
        self.assertTrue(is_ec_private_key(key_path.read_bytes()))
        self.assertEqual(len(x509.load_pem_x509_certificates(cert_path.read_bytes())), 2)

        self.assertEqual(
            [call[0] for call in fake_protocol.calls],
            ["register", "create_order", "get_authorization", "accept", "get_authorization", "finalize"]
        )
        self.assertIn(("accept", "http-01"), fake_protocol.calls)
        self.assertEqual((self.recorder.servers[0].starts, self.recorder.servers[0].stops), (1, 1))

        csr = x509.load_pem_x509_csr(fake_protocol.csr)
        self.assertEqual(csr.subject.get_attributes_for_oid(NameOID.COMMON_NAME)[0].value, TEST_DOMAIN)

    def test_certificate_info_failure(self):
        """Checks that failing to read the saved certificate back is only logged."""
        manager = self.manager(FakeProtocol(TEST_DOMAIN, ["valid"], chain=make_chain(TEST_DOMAIN)))

        with mock.patch("simple_acme_cert.store.CertificateStore.describe", side_effect=ValueError("bad PEM")):
            with self.assertLogs("simple_acme_cert", level="WARNING") as logs:
                cert_path, key_path = manager.obtain_certificate()

        self.assertEqual(manager.state, simple_acme_cert.IssuanceState.PERSISTED)
        self.assertIsNone(manager.failure_reason)
        self.assertTrue(is_cert(cert_path.read_bytes()))
        self.assertTrue(is_ec_private_key(key_path.read_bytes()))
        self.assertIn("bad PEM", logs.output[-1])

    def test_already_authorized(self):
        """Checks that a reused valid authorization skips the challenge entirely."""
        manager = self.manager(FakeProtocol(TEST_DOMAIN, ["valid"], chain=make_chain(TEST_DOMAIN)))

        manager.obtain_certificate()

        self.assertEqual(manager.state, simple_acme_cert.IssuanceState.PERSISTED)
        self.assertEqual(self.recorder.servers, [])

    def test_rejected_challenge(self):
        """Checks that a rejected authorization fails the issuance and writes no files."""
        fake_protocol = FakeProtocol(TEST_DOMAIN, ["pending", "invalid"])
        manager = self.manager(fake_protocol)

        with self.assertRaises(errors.ChallengeRejected) as context:
            manager.obtain_certificate()

        self.assertEqual(manager.state, simple_acme_cert.IssuanceState.FAILED)
        self.assertIs(manager.failure_reason, context.exception)
        self.assertNotIn("finalize", [call[0] for call in fake_protocol.calls])
        self.assertFalse(self.cert_dir.joinpath(f"{TEST_DOMAIN}.crt").exists())

    def test_foreign_errors_wrapped(self):
        """Checks that network errors are reported as an issuance error naming the failed step."""
        fake_protocol = FakeProtocol(TEST_DOMAIN, ["valid"])
        fake_protocol.register = mock.Mock(side_effect=requests.ConnectionError("connection refused"))
        manager = self.manager(fake_protocol)

        with self.assertRaises(errors.IssuanceError) as context:
            manager.obtain_certificate()

        self.assertEqual(context.exception.stage, "Account registration")
        self.assertIn("connection refused", context.exception.message)
        self.assertIsInstance(context.exception.__cause__, requests.ConnectionError)
        self.assertEqual(manager.state, simple_acme_cert.IssuanceState.FAILED)

    def test_finalize_errors_wrapped(self):
        """Checks that a finalization error from the ACME library names the finalization step."""
        fake_protocol = FakeProtocol(TEST_DOMAIN, ["valid"])
        fake_protocol.finalize = mock.Mock(side_effect=acme_errors.TimeoutError())
        manager = self.manager(fake_protocol)

        with self.assertRaises(errors.IssuanceError) as context:
            manager.obtain_certificate()

        self.assertEqual(context.exception.stage, "Finalization")
        self.assertEqual(context.exception.message, "Finalization failed: TimeoutError")

    def test_resolve_without_order(self):
        """Checks that authorizations cannot be resolved before an order exists."""
        with self.assertRaises(errors.IssuanceError):
            self.manager(FakeProtocol(TEST_DOMAIN, ["valid"])).resolve_authorizations()


if __name__ == "__main__":
    unittest.main()
