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

import sys

import simple_acme_cert
from simple_acme_cert import errors

# Create a manager for one domain. In this example, the Let's Encrypt staging environment and the HTTP-01 challenge.
# The Let's Encrypt servers connect to port 80 of the domain, so this must run with permission to bind port 80.
manager = simple_acme_cert.CertManager(
    domain="test.example.com",
    email="user@example.com",
    cert_dir="./certs",
    staging=True,
)

# Register the account, resolve the challenge and write the certificate and private key to ./certs
try:
    cert_path, key_path = manager.obtain_certificate()
except errors.SimpleACMECertError as error:
    print(f"Failed to issue certificate for {manager.domain}: {error}")
    sys.exit(1)

print(cert_path)
print(key_path)
