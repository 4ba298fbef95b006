"""Exception hierarchy for the IPDBG logic analyzer driver."""


class IpdbgError(Exception):
    """Base class for all driver errors."""


class LinkError(IpdbgError, ConnectionError):
    """Send or receive failure at the transport level."""


class ProtocolMismatchError(IpdbgError):
    """Device answered the ID request with an unknown token."""


class ReadTimeout(IpdbgError, TimeoutError):
    """A blocking read did not collect the requested bytes in time.

    ``received`` holds whatever arrived before the deadline.
    """

    def __init__(self, message: str, received: bytes = b""):
        super().__init__(message)
        self.received = received


class AcquisitionError(IpdbgError):
    """The in-progress acquisition was aborted."""
