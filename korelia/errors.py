"""Domain exceptions shared by services and blueprints."""


class StoreError(Exception):
    """Base for flat-file persistence failures."""


class PersistenceFailed(StoreError):
    """Writing a data file failed; the target file was left untouched."""


class RedemptionError(Exception):
    """A rewards redemption was refused or could not be completed."""

    def __init__(self, message, status=400, code="redeem_failed"):
        super().__init__(message)
        self.message = message
        self.status = status
        self.code = code


class ReviewTooSoon(Exception):
    """A review bonus was already granted for this product in the last 24h."""


class PromoCodeInvalid(Exception):
    """The promotion code cannot be applied to this cart."""


class CheckoutError(Exception):
    """The cart cannot be turned into a checkout session."""
