"""
hypercorn_core.errors
---------------------
Error taxonomy shared by the feed registry, the message coordinator and the
public node API.

- ValidationError: malformed caller input, rejected before any state change
- SchemaError: malformed payload observed on a feed; the message is dropped
- StorageError: log open/append/read failure
- NotFoundError: lookup against an unreachable feed or index
- TrustError: trust link with a bad signature or past its expiration
"""


class HypercornError(Exception):
    pass


class ValidationError(HypercornError, ValueError):
    pass


class SchemaError(HypercornError):
    pass


class StorageError(HypercornError):
    pass


class NotFoundError(HypercornError, LookupError):
    pass


class TrustError(HypercornError):
    pass
