"""
nwcat - netcat over an asynchronous connection state machine

Dials or listens for exactly one TCP/UDP peer, optionally secured with
TLS/DTLS, and relays bytes between that peer and stdin/stdout.

Copyright (c) 2025 DNS Science.io, an After Dark Systems, LLC company.
All rights reserved.
"""

__version__ = "0.1.0"
__author__ = "DNS Science.io"
__copyright__ = "Copyright (c) 2025 DNS Science.io, an After Dark Systems, LLC company"
