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

import logging
import os
import sys

import simple_acme_cert
from simple_acme_cert import challenges
from simple_acme_cert import errors
from simple_acme_cert import providers

logging.basicConfig(level=logging.DEBUG if "--verbose" in sys.argv else logging.INFO)

# Publish the DNS-01 TXT record through the Aliyun DNS API and check that Google and Cloudflare DNS can see it before
# asking Let's Encrypt to validate it.
strategy = challenges.DNS01Strategy(
    provider=providers.AliyunDNS(os.environ["ALIYUN_ACCESS_KEY_ID"], os.environ["ALIYUN_ACCESS_KEY_SECRET"]),
    nameservers=["8.8.8.8", "1.1.1.1"],
    automated_propagation=60,
)

manager = simple_acme_cert.CertManager(
    domain="api.example.com",
    email="user@example.com",
    cert_dir="./certs",
    staging=True,
    strategy=strategy,
)

# Run each step of the issuance by hand
try:
    manager.register_account()
    order = manager.create_order()
    print(f"Order {order.uri} --> {list(order.body.authorizations)}")

    manager.resolve_authorizations()
    manager.generate_private_key_and_csr()
    manager.finalize()
    cert_path, key_path = manager.save_certificate()
except errors.SimpleACMECertError as error:
    print(f"Failed to issue certificate for {manager.domain}: {error}")
    sys.exit(1)

# Print the details of the saved certificate
metadata = manager.store.describe(cert_path)
print(f"{metadata.subject} issued by {metadata.issuer}, valid until {metadata.not_after}")
print(key_path)
