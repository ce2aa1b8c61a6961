"""Runs suggestion requests on one dedicated worker thread, one at a time."""
import threading
from concurrent.futures import Future, ThreadPoolExecutor, TimeoutError
from typing import List

from nextwordpredict.language_model import LanguageModel
from nextwordpredict.exceptions import WorkerBusyException


class SuggestionWorker:
    """Serializes access to a model whose decoding state must never be shared between requests.

    There is no cancellation: a request that times out keeps running on the worker and its
    result is discarded.
    """

    def __init__(self, lm: LanguageModel):
        self.lm = lm
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="suggest")
        self._lock = threading.Lock()
        self._pending = 0

    @property
    def busy(self) -> bool:
        with self._lock:
            return self._pending > 0

    def submit(self, text: str, top_k: int = 5, temperature: float = 1.0) -> Future:
        """Queue a request behind any outstanding ones"""
        with self._lock:
            self._pending += 1
        return self._start(text, top_k, temperature)

    def try_submit(self, text: str, top_k: int = 5, temperature: float = 1.0) -> Future:
        """Like submit() but refuses while another request is outstanding"""
        with self._lock:
            if self._pending > 0:
                raise WorkerBusyException("A suggestion request is already running")
            self._pending += 1
        return self._start(text, top_k, temperature)

    def _start(self, text: str, top_k: int, temperature: float) -> Future:
        return self._executor.submit(self._run, text, top_k, temperature)

    def _run(self, text: str, top_k: int, temperature: float) -> List[str]:
        try:
            return self.lm.predict_next_words(text, top_k, temperature)
        finally:
            # Cleared before the future resolves
            with self._lock:
                self._pending -= 1

    def suggest(self,
                text: str,
                top_k: int = 5,
                temperature: float = 1.0,
                timeout: float = None) -> List[str]:
        """
        Submit a request and wait for it.
        :param timeout: seconds to wait, on expiry the result is discarded and [] returned
        :return: suggestions
        """
        future = self.submit(text, top_k, temperature)
        try:
            return future.result(timeout=timeout)
        except TimeoutError:
            return []

    def shutdown(self) -> None:
        """Wait for outstanding requests then release the model"""
        self._executor.shutdown(wait=True)
        self.lm.close()
