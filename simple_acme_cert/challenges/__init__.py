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
Challenge resolution for a single ACME authorization. A strategy makes one challenge type ready (serving an HTTP
token or publishing a DNS TXT record) and the resolver drives the authorization to a terminal status by polling.
"""
import logging
import time

import dns.exception
from acme import challenges
from acme import messages

from .. import errors
from .. import providers
from .. import tools
from ..server import ChallengeServer

# Constants and Variables
HTTP_WARMUP = 2
HTTP_POLL_INTERVAL = 2
HTTP_POLL_ATTEMPTS = 30
DNS_AUTOMATED_PROPAGATION = 30
DNS_MANUAL_PROPAGATION = 60
DNS_POLL_INTERVAL = 5
DNS_POLL_ATTEMPTS = 60
FAILED_STATUSES = ("invalid", "revoked", "deactivated")
logger = logging.getLogger(__name__)


def prompt_confirmation() -> None:
    """Blocks until the operator presses Enter on the console."""
    input("Press Enter once the TXT record has been published...")


class ChallengeStrategy:
    """Base class for a way of proving control of a domain."""

    challenge_type = challenges.KeyAuthorizationChallenge
    poll_interval = 1
    poll_attempts = 1

    def select(self, authzr: messages.AuthorizationResource) -> messages.ChallengeBody:
        """
        Picks the first offered challenge handled by this strategy.

        Raises:
            simple_acme_cert.errors.ChallengeUnavailable: When the authorization offers no such challenge.
        """
        for challb in authzr.body.challenges:
            if isinstance(challb.chall, self.challenge_type):
                return challb

        msg = f"Challenge type '{self.challenge_type.typ}' not offered for '{authzr.body.identifier.value}'."
        raise errors.ChallengeUnavailable(msg)

    def prepare(self, domain: str, challb: messages.ChallengeBody, response, validation: str) -> None:
        """
        Makes the challenge answerable. Called right before the challenge is accepted with `response`. `validation` is
        the value the ACME server expects to find (the key authorization or the TXT record value).
        """
        raise NotImplementedError()

    def cleanup(self, domain: str, challb: messages.ChallengeBody, succeeded: bool) -> None:
        """Releases whatever `prepare` set up. Called on every exit path."""


class HTTP01Strategy(ChallengeStrategy):
    """Answers HTTP-01 challenges from a short-lived local HTTP server."""

    challenge_type = challenges.HTTP01

    def __init__(
            self,
            port: int = 80,
            host: str = "",
            warmup: float = HTTP_WARMUP,
            poll_interval: float = HTTP_POLL_INTERVAL,
            poll_attempts: int = HTTP_POLL_ATTEMPTS,
            server_factory=ChallengeServer,
            sleep=time.sleep
    ):
        """
        Args:
            port (int): The port the challenge server listens on. The CA always connects to port 80, so anything else
                needs a port forward in front of this process.
            host (str): The address the challenge server binds. All interfaces when empty.
            warmup (float): Seconds to wait after starting the server before the challenge is accepted.
            poll_interval (float): Seconds between authorization status checks.
            poll_attempts (int): Number of status checks before giving up.
            server_factory (callable): Builds the server from `(chall, response, validation, port=, host=)`.
            sleep (callable): The function used to wait.
        """
        self.port = port
        self.host = host
        self.warmup = warmup
        self.poll_interval = poll_interval
        self.poll_attempts = poll_attempts
        self.server_factory = server_factory
        self.sleep = sleep
        self.server = None

    def prepare(self, domain, challb, response, validation):
        self.server = self.server_factory(challb.chall, response, validation, port=self.port, host=self.host)
        self.server.start()
        self.sleep(self.warmup)

    def cleanup(self, domain, challb, succeeded):
        if self.server is not None:
            self.server.stop()
            self.server = None


class DNS01Strategy(ChallengeStrategy):
    """Answers DNS-01 challenges with a TXT record, published through a DNS provider or by hand."""

    challenge_type = challenges.DNS01

    def __init__(
            self,
            provider: providers.AliyunDNS = None,
            manual: bool = False,
            confirm=prompt_confirmation,
            nameservers: list = None,
            poll_interval: float = DNS_POLL_INTERVAL,
            poll_attempts: int = DNS_POLL_ATTEMPTS,
            automated_propagation: float = DNS_AUTOMATED_PROPAGATION,
            manual_propagation: float = DNS_MANUAL_PROPAGATION,
            sleep=time.sleep
    ):
        """
        Args:
            provider (simple_acme_cert.providers.AliyunDNS): The DNS API client. The record is published by hand when
                no provider is given.
            manual (bool): Always publish the record by hand, even when a provider is given.
            confirm (callable): Blocks until the operator has published the record.
            nameservers (list): When set, these nameservers are asked whether the record is visible before the
                challenge is accepted. The result is only logged.
            poll_interval (float): Seconds between authorization status checks.
            poll_attempts (int): Number of status checks before giving up.
            automated_propagation (float): Seconds to wait after publishing through the provider.
            manual_propagation (float): Seconds to wait after the operator confirmed publication.
            sleep (callable): The function used to wait.
        """
        self.provider = provider
        self.manual = manual
        self.confirm = confirm
        self.nameservers = nameservers
        self.poll_interval = poll_interval
        self.poll_attempts = poll_attempts
        self.automated_propagation = automated_propagation
        self.manual_propagation = manual_propagation
        self.sleep = sleep
        self.published = False

    @property
    def automated(self) -> bool:
        """Whether records are published through the provider API."""
        return self.provider is not None and not self.manual

    def prepare(self, domain, challb, response, validation):
        record = providers.record_for(domain, validation)
        self.published = False

        if self.automated:
            self.provider.add_txt_record(domain, validation)
            self.published = True
            delay = self.automated_propagation
        else:
            if not self.manual:
                logger.warning("No DNS provider credentials configured, the TXT record must be added manually")
            print(self.instructions(record))
            self.confirm()
            delay = self.manual_propagation

        logger.info("Waiting %s seconds for DNS propagation", delay)
        self.sleep(delay)

        if self.nameservers:
            self.check_visibility(challb.validation_domain_name(domain), validation)

    def check_visibility(self, name: str, validation: str) -> bool:
        """Asks the configured nameservers whether the TXT record is visible. The result is only logged."""
        try:
            visible = tools.DNSQuery(name, rtype="TXT", nameservers=self.nameservers).has_value(validation)
        except (dns.exception.DNSException, ValueError) as error:
            logger.warning("Unable to check TXT record for %s, continuing anyway: %s", name, error)
            return False

        if not visible:
            logger.warning("TXT record for %s is not visible yet, continuing anyway", name)
        return visible

    def cleanup(self, domain, challb, succeeded):
        if not (succeeded and self.published):
            return

        # Best effort, a stale TXT record never fails an issuance.
        try:
            self.provider.delete_txt_records(domain)
        except errors.SimpleACMECertError as error:
            logger.warning("Failed to delete DNS-01 TXT record for %s: %s", domain, error)
        self.published = False

    @staticmethod
    def instructions(record: providers.DNSRecord) -> str:
        """Formats the manual publication instructions for `record`."""
        return "\n".join([
            "Please add the following DNS TXT record:",
            f"  Domain: {record.main_domain}",
            f"  Host (RR): {record.rr}",
            f"  Type: {record.type}",
            f"  Value: {record.value}",
        ])


class ChallengeResolver:
    """Drives one authorization to `valid` using the configured strategy."""

    def __init__(self, protocol, strategy: ChallengeStrategy, sleep=time.sleep) -> None:
        """
        Args:
            protocol (simple_acme_cert.protocol.ACMEProtocol): The ACME operations to use.
            strategy (ChallengeStrategy): How the challenge is made ready.
            sleep (callable): The function used to wait between polls.
        """
        self.protocol = protocol
        self.strategy = strategy
        self.sleep = sleep

    def resolve(self, authz_url: str) -> messages.AuthorizationResource:
        """
        Resolves the authorization at `authz_url`.

        Returns:
            acme.messages.AuthorizationResource: The authorization in `valid` status.

        Raises:
            simple_acme_cert.errors.ChallengeUnavailable: When the strategy's challenge type is not offered.
            simple_acme_cert.errors.ChallengeRejected: When the authorization ends in a failed status.
            simple_acme_cert.errors.ACMETimeout: When the authorization is still pending after every poll attempt.
        """
        authzr = self.protocol.get_authorization(authz_url)
        domain = authzr.body.identifier.value

        if authzr.body.status == messages.STATUS_VALID:
            logger.info("Domain %s is already authorized", domain)
            return authzr
        self._raise_for_failure(authzr)

        challb = self.strategy.select(authzr)
        response, validation = self.protocol.response_and_validation(challb)

        succeeded = False
        try:
            self.strategy.prepare(domain, challb, response, validation)
            logger.info("Starting %s validation for %s", challb.chall.typ, domain)
            self.protocol.accept(challb, response)
            authzr = self.poll(authz_url, domain)
            succeeded = True
        finally:
            self.strategy.cleanup(domain, challb, succeeded)

        return authzr

    def poll(self, authz_url: str, domain: str) -> messages.AuthorizationResource:
        """Checks the authorization status until it is terminal or the attempt bound is reached."""
        for attempt in range(1, self.strategy.poll_attempts + 1):
            authzr = self.protocol.get_authorization(authz_url)
            if authzr.body.status == messages.STATUS_VALID:
                logger.info("Domain %s validated successfully", domain)
                return authzr
            self._raise_for_failure(authzr)

            logger.debug("Authorization for %s is %s (attempt %s/%s)", domain, authzr.body.status, attempt,
                         self.strategy.poll_attempts)
            self.sleep(self.strategy.poll_interval)

        raise errors.ACMETimeout(
            f"Validation of '{domain}' timed out after {self.strategy.poll_attempts} attempts."
        )

    @staticmethod
    def _raise_for_failure(authzr: messages.AuthorizationResource) -> None:
        if authzr.body.status.name not in FAILED_STATUSES:
            return

        details = [str(challb.error) for challb in authzr.body.challenges if challb.error is not None]
        msg = f"Validation of '{authzr.body.identifier.value}' failed with status '{authzr.body.status}'"
        raise errors.ChallengeRejected(f"{msg}: {'; '.join(details)}" if details else f"{msg}.")
