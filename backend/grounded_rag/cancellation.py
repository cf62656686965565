"""Turn-wide cancellation signal shared by the orchestrator and its stages."""

import threading

from .exceptions import TurnCancelled


class CancellationToken:
    """
    Abort signal for one turn.

    The orchestrator checks it between stages; retrieval and reranking also
    check it before every store or embedding call so a cancelled turn stops
    issuing collaborator requests.
    """

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise TurnCancelled("Turn cancelled")

