class BridgeError(Exception):
    """Base class for shopping list bridge failures."""


class SnapshotError(BridgeError):
    """The external list snapshot could not be parsed into items."""


class TransportError(BridgeError):
    """A read against the external list transport failed."""
