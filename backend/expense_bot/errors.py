"""Exception hierarchy shared by the receipt pipeline and its adapters."""


class ExpenseBotError(Exception):
    """Base class for every error raised by the expense bot."""


class Aborted(ExpenseBotError):
    """Raised at a checkpoint once the surrounding work has been cancelled."""

    def __init__(self, reason: str = "cancelled") -> None:
        super().__init__(reason)
        self.reason = reason


class NoTextDetected(ExpenseBotError):
    """The OCR provider produced no usable text for the image."""


class OcrError(ExpenseBotError):
    """The OCR provider failed (bad image, engine crash, ...)."""


class ImageFetchError(ExpenseBotError):
    """The image referenced by a message could not be downloaded."""


class RateLookupError(ExpenseBotError):
    """The exchange-rate provider could not be reached or returned garbage."""


class LedgerError(ExpenseBotError):
    """The ledger rejected or failed to apply a mutation."""


class OwnerNotFound(LedgerError):
    def __init__(self, owner_id: str) -> None:
        super().__init__(f"Unknown ledger owner {owner_id!r}")
        self.owner_id = owner_id


class DeliveryError(ExpenseBotError):
    """Every attempt to deliver a message to the user failed."""


class PayloadError(ExpenseBotError):
    """A token payload does not match its kind. This is a programming error."""


class JobFailed(ExpenseBotError):
    """A queued receipt job could not be completed; the queue should retry it."""
