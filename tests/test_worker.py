import threading

import pytest

from nextwordpredict.language_model import LanguageModel
from nextwordpredict.worker import SuggestionWorker
from nextwordpredict.exceptions import WorkerBusyException


class BlockingModel(LanguageModel):
    """Holds every request until released, records the thread each one ran on"""

    def __init__(self):
        self.release = threading.Event()
        self.started = threading.Event()
        self.threads = []
        self.requests = []
        self.closed = False

    def load(self) -> None:
        pass

    def predict_next_words(self, text, top_k=5, temperature=1.0):
        self.requests.append(text)
        self.threads.append(threading.current_thread().name)
        self.started.set()
        self.release.wait(timeout=5)
        return [text + "!"]

    def close(self) -> None:
        self.closed = True


# Requests run off the caller's thread and return the model's suggestions
def test_suggest_runs_on_worker():
    lm = BlockingModel()
    lm.release.set()
    worker = SuggestionWorker(lm)
    assert worker.suggest("The cat") == ["The cat!"]
    assert lm.threads[0].startswith("suggest")
    assert not worker.busy
    worker.shutdown()
    assert lm.closed


# A second request is refused while one is outstanding
def test_try_submit_busy():
    lm = BlockingModel()
    worker = SuggestionWorker(lm)
    future = worker.try_submit("The")
    assert lm.started.wait(timeout=5)
    assert worker.busy
    with pytest.raises(WorkerBusyException):
        worker.try_submit("The cat")
    lm.release.set()
    assert future.result(timeout=5) == ["The!"]
    assert not worker.busy
    assert worker.try_submit("The cat").result(timeout=5) == ["The cat!"]
    worker.shutdown()


# Queued requests run in submission order on the single thread
def test_submit_queues():
    lm = BlockingModel()
    worker = SuggestionWorker(lm)
    first = worker.submit("a")
    second = worker.submit("b")
    lm.release.set()
    assert first.result(timeout=5) == ["a!"]
    assert second.result(timeout=5) == ["b!"]
    assert lm.requests == ["a", "b"]
    assert len(set(lm.threads)) == 1
    worker.shutdown()


# A late result is discarded and the caller gets no suggestions
def test_suggest_timeout():
    lm = BlockingModel()
    worker = SuggestionWorker(lm)
    assert worker.suggest("The", timeout=0.05) == []
    lm.release.set()
    worker.shutdown()
    assert lm.requests == ["The"]
