class CancellationToken:
    """Cooperative cancellation flag checked at chunk and stage boundaries."""

    def __init__(self) -> None:
        self._cancel_requested = False

    @property
    def cancelled(self) -> bool:
        return self._cancel_requested

    def request_cancel(self) -> None:
        self._cancel_requested = True
