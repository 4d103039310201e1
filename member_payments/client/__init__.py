"""Client-side helpers for driving a checkout to its final state."""
from .api_client import ApiCallError, PaymentsApiClient, RateLimited
from .poller import PaymentPoller, PollState, PollUpdate, sync_pending_payments

__all__ = [
    "ApiCallError",
    "PaymentPoller",
    "PaymentsApiClient",
    "PollState",
    "PollUpdate",
    "RateLimited",
    "sync_pending_payments",
]
