"""Per-file processing state, as seen from the client side."""
import enum
import logging
from typing import Any, Callable

logger = logging.getLogger(__name__)


class DocumentState(str, enum.Enum):
    PENDING = "pending"
    UPLOADING = "uploading"
    PROCESSING = "processing"
    EXTRACTION = "extraction"
    COMPLETED = "completed"
    ERROR = "error"
    DUPLICATE_WARNING = "duplicate_warning"


ALLOWED_TRANSITIONS: dict[DocumentState, frozenset[DocumentState]] = {
    DocumentState.PENDING: frozenset({DocumentState.UPLOADING, DocumentState.ERROR}),
    DocumentState.UPLOADING: frozenset({DocumentState.PROCESSING, DocumentState.ERROR}),
    DocumentState.PROCESSING: frozenset({
        DocumentState.PROCESSING,
        DocumentState.EXTRACTION,
        DocumentState.COMPLETED,
        DocumentState.ERROR,
        DocumentState.DUPLICATE_WARNING,
    }),
    DocumentState.EXTRACTION: frozenset({
        DocumentState.PROCESSING,
        DocumentState.EXTRACTION,
        DocumentState.COMPLETED,
        DocumentState.ERROR,
        DocumentState.DUPLICATE_WARNING,
    }),
    # The process response can arrive after the status stream already saw COMPLETED
    DocumentState.COMPLETED: frozenset({DocumentState.DUPLICATE_WARNING}),
    DocumentState.DUPLICATE_WARNING: frozenset({DocumentState.COMPLETED, DocumentState.ERROR}),
    DocumentState.ERROR: frozenset(),
}

Observer = Callable[["DocumentTracker"], None]


class InvalidTransition(Exception):
    pass


class DocumentTracker:
    """State machine for one selected file: pending → uploading → processing → terminal.

    Observers are called after every change with the tracker itself.
    """

    def __init__(self, file_name: str):
        self.file_name = file_name
        self.state = DocumentState.PENDING
        self.progress = 0
        self.message = "Waiting to process..."
        self.document_id: str | None = None
        self.realtime = True
        self.result: dict[str, Any] | None = None
        self.extracted_data: dict[str, Any] | None = None
        self.duplicate_check: dict[str, Any] | None = None
        self.history: list[DocumentState] = [self.state]
        self._observers: list[Observer] = []

    def __repr__(self) -> str:
        return f"<DocumentTracker {self.file_name!r} {self.state.value} {self.progress}%>"

    @property
    def is_terminal(self) -> bool:
        return self.state in (DocumentState.COMPLETED, DocumentState.ERROR)

    def subscribe(self, observer: Observer) -> Callable[[], None]:
        self._observers.append(observer)
        return lambda: self._observers.remove(observer)

    def can_transition(self, new_state: DocumentState) -> bool:
        return new_state in ALLOWED_TRANSITIONS[self.state]

    def transition(
        self,
        new_state: DocumentState,
        *,
        progress: int | None = None,
        message: str | None = None,
    ) -> None:
        if not self.can_transition(new_state):
            raise InvalidTransition(f"{self.state.value} -> {new_state.value} is not allowed")
        self.state = new_state
        self.history.append(new_state)
        self.update(progress=progress, message=message)

    def update(
        self,
        *,
        progress: int | None = None,
        message: str | None = None,
        realtime: bool | None = None,
    ) -> None:
        """Change progress details without changing state."""
        if progress is not None:
            self.progress = max(0, min(100, progress))
        if message is not None:
            self.message = message
        if realtime is not None:
            self.realtime = realtime
        self._notify()

    def _notify(self) -> None:
        for observer in list(self._observers):
            try:
                observer(self)
            except Exception:
                logger.exception("Tracker observer failed for %s", self.file_name)
