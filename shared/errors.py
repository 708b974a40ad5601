"""Exception taxonomy for the settlement pipeline.

Extraction misses and validation discrepancies are never raised; they are
represented as absent fields and structured findings. Only correctness-affecting
failures end up here.
"""


class PipelineError(Exception):
    """Base class for errors surfaced to callers."""


class InvalidDocumentError(PipelineError):
    """Malformed or unsupported input."""


class NotFoundError(PipelineError):
    entity = "record"

    def __init__(self, identifier=None, message=None):
        self.identifier = identifier
        super().__init__(message or f"{self.entity.capitalize()} not found: {identifier}")


class OrderNotFoundError(NotFoundError):
    entity = "order"


class ProviderNotFoundError(NotFoundError):
    entity = "provider"


class DocumentNotFoundError(NotFoundError):
    entity = "document"


class NoPendingOrderError(NotFoundError):
    entity = "pending order"

    def __init__(self, provider_id):
        super().__init__(
            provider_id,
            f"No order without receipt found for provider {provider_id}",
        )


class InvalidTransitionError(PipelineError):
    def __init__(self, order_id, current_status, target_status, message=None):
        self.order_id = order_id
        self.current_status = current_status
        self.target_status = target_status
        super().__init__(
            message or f"Order {order_id} cannot move from '{current_status}' to '{target_status}'"
        )


class ConcurrentTransitionError(InvalidTransitionError):
    """The order changed status between read and conditional update."""

    def __init__(self, order_id, expected_status, target_status):
        super().__init__(
            order_id,
            expected_status,
            target_status,
            f"Order {order_id} is no longer '{expected_status}'; "
            f"concurrent update prevented move to '{target_status}'",
        )
