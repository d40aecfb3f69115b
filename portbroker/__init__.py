"""
Portbroker - expose local TCP services on public ports through a broker.

A client registers a local port over a small HTTP control plane; the broker
allocates a public port and relays raw bytes between the two.
"""

__version__ = "1.0.0"
__description__ = "Expose local TCP services on public ports through a relay broker"
