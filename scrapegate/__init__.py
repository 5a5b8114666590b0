"""
ScrapeGate - a resilient scrape orchestrator.

This package provides:
- A bounded pool of headless browser sessions
- Managed-challenge solving through a CAPTCHA oracle
- WireGuard egress failover on rate limiting
- Health-tracked egress point registry
"""

__version__ = "1.0.0"
__author__ = "ScrapeGate"
