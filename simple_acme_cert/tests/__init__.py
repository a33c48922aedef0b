"""Unit tests and testing tools for the simple_acme_cert package."""

TEST_DOMAIN = "example.com"
TEST_SUBDOMAIN = "api.example.com"
TEST_EMAIL = "admin@example.com"
