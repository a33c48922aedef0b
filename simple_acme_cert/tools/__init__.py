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
"""DNS tools to confirm ACME DNS-01 records are visible before validation."""
import logging

import dns.exception
import dns.resolver

logger = logging.getLogger(__name__)


class DNSQuery:
    """A basic class to look up the TXT values published for a DNS name."""

    def __init__(self, name: str, rtype: str = "TXT", nameservers: list = None, round_robin: bool = False) -> None:
        """
        Args:
            name (str): The fully qualified DNS name to query (e.g. `_acme-challenge.api.example.com`).
            rtype (str): The DNS request type (e.g. `TXT`, `A`, `CNAME`).
            nameservers (list): Nameservers to query. The system's resolvers are used when empty.
            round_robin (bool): Rotate between each nameserver after every query instead of always asking the first.
        """
        self.name = name
        self.type = rtype.upper()
        self.round_robin = round_robin
        self.nameservers = list(nameservers) if nameservers else dns.resolver.Resolver().nameservers
        self.values = []
        self.last_nameserver = ""

    def resolve(self) -> list:
        """
        Queries the first configured nameserver for our name and record type.

        Returns:
            list: The record values found. Missing names and empty answers yield an empty list.
        """
        resolver = dns.resolver.Resolver(configure=False)
        resolver.nameservers = self.nameservers
        self.last_nameserver = self.nameservers[0] if self.nameservers else ""

        try:
            answer = resolver.resolve(self.name, self.type)
            self.values = self.__parse_values__(answer)
        except (dns.resolver.NoAnswer, dns.resolver.NXDOMAIN, dns.resolver.NoNameservers, dns.exception.Timeout):
            self.values = []

        # Rotate the nameservers if round robin mode is enabled
        if self.round_robin and len(self.nameservers) > 1:
            self.nameservers = self.nameservers[1:] + self.nameservers[:1]

        return self.values

    def has_value(self, value: str) -> bool:
        """Resolves the name and checks whether `value` is among the answers."""
        found = value in self.resolve()
        logger.debug("%s %s %s in %s via %s", value, "found" if found else "not found", self.name,
                     self.values, self.last_nameserver)
        return found

    @staticmethod
    def __parse_values__(answer) -> list:
        """
        Parses the answer records into plain strings. TXT records may be split into several character strings, these
        are joined back together.
        """
        values = []
        for rdata in answer:
            if hasattr(rdata, "strings"):
                values.append(b"".join(rdata.strings).decode())
            else:
                values.append(rdata.to_text())
        return values
