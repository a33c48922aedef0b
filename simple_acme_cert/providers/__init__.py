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
Alibaba Cloud DNS (Aliyun) client used to publish and remove DNS-01 TXT records. Requests are signed with the
provider's RPC signature scheme (HMAC-SHA1 over the canonicalized query string).
"""
import base64
import collections
import datetime
import hashlib
import hmac
import logging
import time
import urllib.parse

import requests

from .. import errors

# Constants and Variables
ENDPOINT = "https://alidns.aliyuncs.com/"
API_VERSION = "2015-01-09"
DNS_LABEL = "_acme-challenge"
TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%SZ"
logger = logging.getLogger(__name__)

DNSRecord = collections.namedtuple("DNSRecord", "main_domain rr type value")


def split_domain(domain: str) -> tuple:
    """
    Splits a domain into its 2-label apex and the DNS-01 record name relative to that apex.

    Args:
        domain (str): The domain being validated, e.g. `api.example.com`.

    Returns:
        tuple: The apex and the record name, e.g. (`example.com`, `_acme-challenge.api`).

    Raises:
        simple_acme_cert.errors.InvalidDomain: When the domain has fewer than two labels.

    Examples:
        >>> split_domain("example.com")
        ('example.com', '_acme-challenge')
    """
    labels = domain.split(".") if domain else []
    if len(labels) < 2 or not all(labels):
        raise errors.InvalidDomain(f"Invalid domain name '{domain}'. At least two labels are required.")

    main_domain = ".".join(labels[-2:])
    rr = DNS_LABEL
    if len(labels) > 2:
        rr = f"{DNS_LABEL}.{'.'.join(labels[:-2])}"
    return main_domain, rr


def record_for(domain: str, value: str = "") -> DNSRecord:
    """Builds the TXT record that proves control of `domain` with the given DNS-01 `value`."""
    main_domain, rr = split_domain(domain)
    return DNSRecord(main_domain=main_domain, rr=rr, type="TXT", value=value)


def percent_encode(value) -> str:
    """
    Percent-encodes a value the way the provider canonicalizes it: only `A-Z a-z 0-9 - _ . ~` are left as-is, so a
    space becomes `%20` and `*` becomes `%2A`.
    """
    return urllib.parse.quote(str(value), safe="")


class AliyunDNS:
    """A stateless client for the Aliyun DNS API, parameterized by an access key pair."""

    def __init__(
            self,
            access_key_id: str,
            access_key_secret: str,
            endpoint: str = ENDPOINT,
            session: requests.Session = None,
            timeout: int = 30
    ) -> None:
        """
        Args:
            access_key_id (str): The AccessKey ID of the RAM user managing the zone.
            access_key_secret (str): The AccessKey secret paired with `access_key_id`.
            endpoint (str): The DNS API endpoint URL.
            session (requests.Session): The HTTP session used to send requests. A new session is used if omitted.
            timeout (int): The amount of time (in seconds) to wait for each API response.
        """
        self.access_key_id = access_key_id
        self.access_key_secret = access_key_secret
        self.endpoint = endpoint
        self.session = session if session is not None else requests.Session()
        self.timeout = timeout

    def common_params(self, nonce: str = None, timestamp: str = None) -> dict:
        """
        Returns the parameters every API request carries. The nonce defaults to the current time in milliseconds and
        the timestamp to the current UTC time.
        """
        if nonce is None:
            nonce = str(time.time_ns() // 1000000)
        if timestamp is None:
            timestamp = datetime.datetime.now(datetime.timezone.utc).strftime(TIMESTAMP_FORMAT)

        return {
            "Format": "JSON",
            "Version": API_VERSION,
            "SignatureMethod": "HMAC-SHA1",
            "SignatureNonce": nonce,
            "SignatureVersion": "1.0",
            "AccessKeyId": self.access_key_id,
            "Timestamp": timestamp,
        }

    @staticmethod
    def canonical_query(params: dict) -> str:
        """Sorts the parameters by name and joins them as percent-encoded `key=value` pairs."""
        return "&".join(f"{percent_encode(key)}={percent_encode(params[key])}" for key in sorted(params))

    def sign(self, params: dict) -> str:
        """
        Computes the request signature for a complete parameter set.

        Returns:
            str: The base64 encoded HMAC-SHA1 digest to send as the `Signature` parameter.
        """
        string_to_sign = "GET&%2F&" + percent_encode(self.canonical_query(params))
        digest = hmac.new(f"{self.access_key_secret}&".encode(), string_to_sign.encode(), hashlib.sha1).digest()
        return base64.b64encode(digest).decode()

    def signed_params(self, params: dict, nonce: str = None, timestamp: str = None) -> dict:
        """Merges the common parameters with `params` and adds the `Signature` parameter."""
        final_params = self.common_params(nonce=nonce, timestamp=timestamp)
        final_params.update(params)
        final_params["Signature"] = self.sign(final_params)
        return final_params

    def request(self, params: dict, nonce: str = None, timestamp: str = None) -> dict:
        """
        Sends a signed API request.

        Args:
            params (dict): The action specific parameters, including `Action`.
            nonce (str): A fixed signature nonce. Generated from the clock when omitted.
            timestamp (str): A fixed request timestamp. Generated from the clock when omitted.

        Returns:
            dict: The decoded JSON response.

        Raises:
            simple_acme_cert.errors.DNSProviderError: On transport failures, non-2xx responses or invalid JSON.
        """
        url = f"{self.endpoint}?{self.canonical_query(self.signed_params(params, nonce, timestamp))}"

        try:
            response = self.session.get(url, timeout=self.timeout)
        except requests.RequestException as error:
            raise errors.DNSProviderError(f"{params.get('Action')} request failed: {error}") from error

        logger.debug("Aliyun DNS response (%s): %s", response.status_code, response.text)

        try:
            result = response.json()
        except ValueError as error:
            raise errors.DNSProviderError(
                f"{params.get('Action')} returned an invalid response (HTTP {response.status_code})."
            ) from error

        if not response.ok:
            detail = result.get("Message", response.reason) if isinstance(result, dict) else response.reason
            raise errors.DNSProviderError(f"{params.get('Action')} failed (HTTP {response.status_code}): {detail}")
        if not isinstance(result, dict):
            raise errors.DNSProviderError(f"{params.get('Action')} returned an unexpected response: {result}")

        return result

    def add_txt_record(self, domain: str, value: str) -> str:
        """
        Publishes the DNS-01 TXT record for `domain`.

        Returns:
            str: The provider's identifier for the new record.

        Examples:
            >>> dns_client.add_txt_record("api.example.com", "LoqXcYV8q5ONbJQxbmR7SCTNo3tiAXDfowyjxAjEuX0")
            '9999985'
        """
        record = record_for(domain, value)
        logger.info("Adding DNS record: domain=%s, RR=%s, value=%s", record.main_domain, record.rr, value)

        result = self.request({
            "Action": "AddDomainRecord",
            "DomainName": record.main_domain,
            "RR": record.rr,
            "Type": record.type,
            "Value": value,
        })

        logger.info("DNS record added (RequestId=%s)", result.get("RequestId"))
        return result.get("RecordId")

    def delete_txt_records(self, domain: str) -> dict:
        """Removes every DNS-01 TXT record published for `domain`."""
        record = record_for(domain)
        logger.info("Deleting DNS records: domain=%s, RR=%s", record.main_domain, record.rr)

        result = self.request({
            "Action": "DeleteSubDomainRecords",
            "DomainName": record.main_domain,
            "RR": record.rr,
            "Type": record.type,
        })

        logger.info("DNS records deleted (RequestId=%s)", result.get("RequestId"))
        return result
