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
"""Custom exception classes for simple_acme_cert."""


class SimpleACMECertError(Exception):
    """Base class for every error raised by simple_acme_cert."""
    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class InvalidDomain(SimpleACMECertError):
    """Error occurs when a domain name is malformed or cannot be split into an apex and record name."""


class InvalidEmail(SimpleACMECertError):
    """Error occurs when the registration email address is missing or invalid."""


class InvalidAccountKey(SimpleACMECertError):
    """Error occurs when the account key can neither be loaded nor generated and persisted."""


class InvalidAccount(SimpleACMECertError):
    """Error occurs when requests are made to the ACME server without registration"""


class ChallengeUnavailable(SimpleACMECertError):
    """Error occurs when an authorization does not offer the challenge type of the configured strategy."""


class ChallengeRejected(SimpleACMECertError):
    """Error occurs when the ACME server moves an authorization to a failed terminal status."""


class ACMETimeout(SimpleACMECertError):
    """Error occurs when the max number of polling attempts has been exceeded waiting for an ACME server event"""


class DNSProviderError(SimpleACMECertError):
    """Error occurs when a DNS provider API request fails or returns an unreadable response."""


class IssuanceError(SimpleACMECertError):
    """Error occurs when a certificate issuance step fails. The message names the failed step."""
    def __init__(self, stage: str, message: str) -> None:
        super().__init__(f"{stage} failed: {message}")
        self.stage = stage
