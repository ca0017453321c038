"""
PayNearMe Callback Receiver

Receives the processor's /authorize and /confirm callbacks, verifies their
signature and freshness, deduplicates confirmations and answers with the
protocol's XML acknowledgment.
"""

__version__ = "1.0.0"
