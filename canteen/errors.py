class CanteenError(Exception):
    """Base class for errors raised by the canteen package."""


class AuthError(CanteenError):
    """User-facing authentication failure (bad credentials, unconfirmed email...)."""


class AuthenticationRequired(AuthError):
    """The operation needs an attached identity."""


class StoreError(CanteenError):
    """A backing store (database, local cache, object storage) failed."""


class CheckoutValidationError(CanteenError):
    """Checkout input rejected before anything was written."""


class EmptyCartError(CheckoutValidationError):
    pass


class SnapshotDecodeError(CanteenError):
    """A stored line-item snapshot could not be turned back into line items."""
