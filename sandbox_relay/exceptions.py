"""Exceptions raised by relay services and translated to protocol frames."""


class RelayError(Exception):
    """Base class for relay failures surfaced to the client."""


class ContextReadError(RelayError):
    """The query context file exists but could not be read or parsed."""


class AgentSpawnError(RelayError):
    """The agent subprocess could not be started."""
