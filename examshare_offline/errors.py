from typing import Any, Optional

class OfflineError(Exception):
    pass

class StoreUnavailable(OfflineError):
    """The durable store cannot be opened; offline capture is disabled."""

class TransactionError(OfflineError):
    """A single store operation failed."""

class DeliveryFailure(OfflineError):
    def __init__(self, message: str, status_code: Optional[int] = None, network: bool = False, detail: Any = None):
        super().__init__(message)
        self.status_code = status_code
        self.network = network
        self.detail = detail

class InvalidUpload(OfflineError):
    pass
