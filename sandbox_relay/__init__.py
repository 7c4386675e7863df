"""
Sandbox Relay
=============

In-container relay between a coding-agent subprocess and the browser client.
"""

__version__ = "0.1.0"
