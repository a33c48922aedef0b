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
"""Command line interface for requesting a certificate with simple_acme_cert."""
import argparse
import logging
import os
import sys

import simple_acme_cert
from simple_acme_cert import errors

PROGRAM_NAME = "simple-acme-cert"
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
logger = logging.getLogger("simple_acme_cert")


def build_parser() -> argparse.ArgumentParser:
    """Builds the argument parser for the command line interface."""
    parser = argparse.ArgumentParser(
        prog=PROGRAM_NAME,
        description="Request a Let's Encrypt certificate for a single domain using the HTTP-01 or DNS-01 challenge.",
        epilog=f"{PROGRAM_NAME} -d example.com -m admin@example.com --dns --dns-key KEY --dns-secret SECRET"
    )
    parser.add_argument("-d", "--domain", required=True, help="domain to request the certificate for")
    parser.add_argument("-m", "--email", required=True, help="Let's Encrypt registration email")
    parser.add_argument(
        "-c", "--cert-dir", default=simple_acme_cert.DEFAULT_CERT_DIR, help="Let's Encrypt certs directory"
    )
    parser.add_argument("-s", "--staging", action="store_true", help="use the Let's Encrypt staging environment")
    parser.add_argument("-p", "--port", type=int, default=80, help="port of the HTTP-01 challenge server")
    parser.add_argument("--dns", action="store_true", help="use the DNS-01 challenge instead of HTTP-01")
    parser.add_argument("--manual-dns", action="store_true", help="use the DNS-01 challenge and add the record by hand")
    parser.add_argument(
        "--dns-key", default=os.environ.get("ALIYUN_ACCESS_KEY_ID"), help="Aliyun DNS AccessKey ID"
    )
    parser.add_argument(
        "--dns-secret", default=os.environ.get("ALIYUN_ACCESS_KEY_SECRET"), help="Aliyun DNS AccessKey secret"
    )
    parser.add_argument(
        "--nameservers", nargs="+", default=None, help="nameservers used to check DNS-01 record visibility"
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="enable debug logging")
    parser.add_argument("--version", action="version", version=f"%(prog)s v{simple_acme_cert.__version__}")
    return parser


def configure_logging(verbose: bool = False) -> None:
    """Sends the package's log records to stderr."""
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    logger.addHandler(handler)
    logger.setLevel(logging.DEBUG if verbose else logging.INFO)


def main(argv=None) -> int:
    """Runs the command line interface and returns the process exit code."""
    args = build_parser().parse_args(argv)
    configure_logging(args.verbose)

    try:
        manager = simple_acme_cert.CertManager(
            domain=args.domain,
            email=args.email,
            cert_dir=args.cert_dir,
            staging=args.staging,
            port=args.port,
            dns_only=args.dns,
            manual_dns=args.manual_dns,
            dns_key=args.dns_key,
            dns_secret=args.dns_secret,
            nameservers=args.nameservers
        )
        manager.obtain_certificate()
    except errors.SimpleACMECertError as error:
        logger.error("Failed to obtain certificate: %s", error)
        return 1

    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
