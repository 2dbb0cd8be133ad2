import threading
from unittest.mock import MagicMock

import pytest

from tokenfeed.core.batch_planner import BatchPlanner


class TestBatchPlanning:
    def test_chunks_preserve_order_and_bound_size(self):
        planner = BatchPlanner(max_chunk_size=50)
        ids = [f"ID{i}" for i in range(120)]

        chunks = planner.plan(ids)

        assert [len(chunk) for chunk in chunks] == [50, 50, 20]
        assert [item for chunk in chunks for item in chunk] == ids

    def test_exact_multiple(self):
        chunks = BatchPlanner(max_chunk_size=25).plan(range(75))
        assert len(chunks) == 3
        assert all(len(chunk) == 25 for chunk in chunks)

    def test_empty_input_gives_no_chunks(self):
        assert BatchPlanner().plan([]) == []

    def test_override_chunk_size(self):
        chunks = BatchPlanner(max_chunk_size=50).plan(["A", "B", "C"], max_chunk_size=2)
        assert chunks == [["A", "B"], ["C"]]

    @pytest.mark.parametrize("size", [0, -3])
    def test_non_positive_size_rejected(self, size):
        with pytest.raises(ValueError):
            BatchPlanner().plan(["A"], max_chunk_size=size)
        with pytest.raises(ValueError):
            BatchPlanner(max_chunk_size=size)


class TestBatchDispatch:

    @pytest.fixture
    def planner(self, no_sleep):
        return BatchPlanner(max_chunk_size=2, inter_chunk_delay=0.3, sleep=no_sleep)

    def test_sequential_dispatch_with_delay_between_chunks(self, planner, no_sleep):
        seen = []

        outcome = planner.dispatch([["A", "B"], ["C", "D"], ["E"]], lambda i, chunk: seen.append(chunk) or len(chunk))

        assert seen == [["A", "B"], ["C", "D"], ["E"]]
        assert outcome.results == [(0, 2), (1, 2), (2, 1)]
        assert no_sleep.calls == [0.3, 0.3]

    def test_failed_chunk_does_not_stop_later_chunks(self, planner):
        def handler(index, chunk):
            if index == 1:
                raise RuntimeError("provider down")
            return chunk

        outcome = planner.dispatch([["A"], ["B"], ["C"]], handler)

        assert outcome.succeeded == 2
        assert outcome.failed == 1
        assert outcome.failures[0].index == 1
        assert outcome.failures[0].chunk == ["B"]
        assert [index for index, _ in outcome.results] == [0, 2]

    def test_no_delay_for_single_chunk(self, planner, no_sleep):
        planner.dispatch([["A"]], lambda i, chunk: chunk)
        assert no_sleep.calls == []

    def test_cancelled_before_start(self, planner):
        event = threading.Event()
        event.set()
        handler = MagicMock()

        outcome = planner.dispatch([["A"], ["B"]], handler, cancel_event=event)

        assert outcome.cancelled is True
        handler.assert_not_called()

    def test_cancelled_during_delay(self, planner, no_sleep):
        event = MagicMock()
        event.is_set.side_effect = [False, True]
        handler = MagicMock(return_value="ok")

        outcome = planner.dispatch([["A"], ["B"], ["C"]], handler, cancel_event=event)

        assert outcome.cancelled is True
        assert handler.call_count == 1
        assert no_sleep.calls == [0.3]

    def test_waits_on_cancel_event_without_sleep_hook(self):
        planner = BatchPlanner(max_chunk_size=1, inter_chunk_delay=0.3)
        event = MagicMock()
        event.is_set.return_value = False
        event.wait.return_value = True
        handler = MagicMock(return_value="ok")

        outcome = planner.dispatch([["A"], ["B"]], handler, cancel_event=event)

        assert outcome.cancelled is True
        event.wait.assert_called_once_with(0.3)
        assert handler.call_count == 1
