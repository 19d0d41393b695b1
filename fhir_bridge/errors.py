"""
Exception hierarchy for the bridge reliability core.

Only StoreUnavailable ever reaches callers of the queue. LookupUnavailable is
raised and caught inside the identity resolver. DeliveryFailure is raised by
sender callables and recorded on the row, not re-raised.
"""


class BridgeError(Exception):
    """Base class for all bridge errors."""


class StoreUnavailable(BridgeError):
    """The durable queue store cannot be opened, read or committed."""


class LookupUnavailable(BridgeError):
    """The live Client Registry lookup failed or is not configured."""


class DeliveryFailure(BridgeError):
    """A sender could not deliver a bundle; recoverable up to the retry ceiling."""


# Recorded as last_error when the transmission window sweep fails a row.
WINDOW_EXPIRED = "transmission window expired"
