import pytest

from taxprep.client.tracker import ALLOWED_TRANSITIONS, DocumentState, DocumentTracker, InvalidTransition


def _tracker_in(*states: DocumentState) -> DocumentTracker:
    tracker = DocumentTracker("w2.pdf")
    for state in states:
        tracker.transition(state)
    return tracker


class TestTransitions:
    def test_starts_pending(self):
        tracker = DocumentTracker("w2.pdf")
        assert tracker.state is DocumentState.PENDING
        assert tracker.progress == 0
        assert tracker.message == "Waiting to process..."

    def test_happy_path(self):
        tracker = _tracker_in(
            DocumentState.UPLOADING, DocumentState.PROCESSING,
            DocumentState.EXTRACTION, DocumentState.COMPLETED,
        )
        assert tracker.is_terminal
        assert tracker.history[-1] is DocumentState.COMPLETED

    @pytest.mark.parametrize("path,target", [
        ((), DocumentState.COMPLETED),
        ((), DocumentState.PROCESSING),
        ((DocumentState.UPLOADING,), DocumentState.COMPLETED),
        ((DocumentState.UPLOADING, DocumentState.ERROR), DocumentState.PROCESSING),
        ((DocumentState.UPLOADING, DocumentState.PROCESSING, DocumentState.COMPLETED), DocumentState.ERROR),
    ])
    def test_rejected(self, path, target):
        tracker = _tracker_in(*path)
        with pytest.raises(InvalidTransition):
            tracker.transition(target)
        assert tracker.state is (path[-1] if path else DocumentState.PENDING)

    def test_late_duplicate_warning_after_completion(self):
        tracker = _tracker_in(DocumentState.UPLOADING, DocumentState.PROCESSING, DocumentState.COMPLETED)
        tracker.transition(DocumentState.DUPLICATE_WARNING)
        assert not tracker.is_terminal

    def test_duplicate_warning_resolves(self):
        for outcome in (DocumentState.COMPLETED, DocumentState.ERROR):
            tracker = _tracker_in(
                DocumentState.UPLOADING, DocumentState.PROCESSING, DocumentState.DUPLICATE_WARNING,
            )
            tracker.transition(outcome)
            assert tracker.is_terminal

    def test_error_is_final(self):
        assert ALLOWED_TRANSITIONS[DocumentState.ERROR] == frozenset()


class TestUpdates:
    def test_progress_clamped(self):
        tracker = DocumentTracker("w2.pdf")
        tracker.update(progress=140)
        assert tracker.progress == 100
        tracker.update(progress=-5)
        assert tracker.progress == 0

    def test_none_leaves_fields(self):
        tracker = DocumentTracker("w2.pdf")
        tracker.update(progress=40, message="Uploading")
        tracker.update(realtime=False)
        assert (tracker.progress, tracker.message, tracker.realtime) == (40, "Uploading", False)

    def test_observers(self):
        tracker = DocumentTracker("w2.pdf")
        seen = []
        unsubscribe = tracker.subscribe(lambda t: seen.append(t.state))

        tracker.transition(DocumentState.UPLOADING, progress=10)
        unsubscribe()
        tracker.transition(DocumentState.PROCESSING)

        assert seen == [DocumentState.UPLOADING]

    def test_failing_observer_does_not_block_others(self):
        tracker = DocumentTracker("w2.pdf")
        seen = []

        def broken(_):
            raise RuntimeError("render failed")

        tracker.subscribe(broken)
        tracker.subscribe(lambda t: seen.append(t.progress))
        tracker.update(progress=25)

        assert seen == [25]
