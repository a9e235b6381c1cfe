class BatchscopeError(Exception):
    """

    Base class for all errors raised inside batchscope.  None of these errors escape the public decoding and
    processing entry points, which convert them into partially populated result objects.

    """


class UnresolvedAbi(BatchscopeError):
    """

    Raised when no ABI can be resolved for a contract.  Non-fatal: decoding degrades to the selector table or to
    raw bytes.

    """


class DecodeMismatch(BatchscopeError):
    """Raised when calldata or log data does not match the fragment it is decoded against"""


class MalformedBatchEntry(BatchscopeError):
    """

    Raised while parsing packed multiSend payloads when an entry is truncated, declares a length past the end of
    the buffer, or carries an unknown operation byte.  The batch decoder records the entry and keeps going.

    """

    to: str | None
    """ Target address of the entry, if the header could be read """

    next_offset: int | None
    """ Offset of the following entry.  None if the scan cannot continue past this entry """

    def __init__(self, message: str = "", to: str | None = None, next_offset: int | None = None):
        super().__init__(message)
        self.to = to
        self.next_offset = next_offset


class UpstreamUnavailable(BatchscopeError):
    """

    Raised when an RPC node or ABI source cannot serve a request after all retries.  Aborts processing of the
    current transaction only.

    """


class UpstreamRateLimitError(UpstreamUnavailable):
    """Raised when rate limits are imposed by the remote host"""

    retry_after: float | None
    """ Seconds the host asked the client to wait, parsed from the Retry-After header """

    def __init__(self, message: str = "", retry_after: float | None = None):
        super().__init__(message)
        self.retry_after = retry_after


class UpstreamHostError(UpstreamUnavailable):
    """Raised when the remote host returns a server error, fails to provide correct data, or times out"""


class PersistenceConflict(BatchscopeError):
    """

    Raised by row stores when an upsert cannot be applied.  Logged by the transaction processor, never raised to
    the caller.

    """


class DatabaseError(BatchscopeError):
    """

    Raised when issues occur with database configuration, such as unknown tables or invalid models

    """


class RpcResponseError(BatchscopeError):
    """

    Raised when a JSON-RPC node answers with an error object, such as a reverted eth_call.  Not retried.

    """
