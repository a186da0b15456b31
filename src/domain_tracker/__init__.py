"""
domain_tracker — domain-name and TLS-certificate expiration tracker.

Periodically refreshes registration data (RDAP, falling back to WHOIS) and
live TLS leaf certificates for a small set of client assets, stores them in
PostgreSQL, and emails reminders before expiration or when nameservers drift.

Built on Railway-Oriented Programming (domain_tracker.railway) so that one
failing asset never aborts a refresh cycle.
"""

__version__ = "0.1.0"
