import time
import sys
from typing import List, Optional

import numpy as np

from nextwordpredict.language_model import LanguageModel
from nextwordpredict.runtime import ModelRuntime
from nextwordpredict.tokenizer import TokenizerService
from nextwordpredict.slots import SlotRegistry
from nextwordpredict.context import (ContextTracker, DecodeSession, DEFAULT_CONTEXT_WINDOW,
                                     DEFAULT_PROMPT_TEMPLATE)
from nextwordpredict.executor import StepExecutor
from nextwordpredict.sampling import select_top_candidates, softmax_with_temperature, sample_suggestions
from nextwordpredict.exceptions import (ContextOverflowException, InvalidTemperatureException,
                                        ModelUnavailableException)


class CausalSuggestionModel(LanguageModel):
    """Next word suggestions from a causal language model decoded incrementally, token by token."""

    def __init__(self,
                 runtime: ModelRuntime,
                 tokenizer: TokenizerService,
                 registry: SlotRegistry = None,
                 prompt_template: str = DEFAULT_PROMPT_TEMPLATE,
                 bos_id: int = None,
                 num_candidates: int = 200,
                 seed: int = None,
                 verbose: int = 0,
                 ):
        """
        Initialize instance variables, call load() before predicting
        Args:
            runtime            - model runtime that executes the forward passes
            tokenizer          - tokenizer service, owned and closed by this model
            registry           - explicit slot registry, default discovers it from the runtime's buffer names
            prompt_template    - conversation template wrapped around the text on a full reset
            bos_id             - beginning of sequence token id, default from the tokenizer
            num_candidates     - size of the top-K pool sampled from
            seed               - seed for the sampling random generator
            verbose            - 0: quiet, 1: print candidate pools
        """
        self.runtime = runtime
        self.tokenizer = tokenizer
        self.registry = registry
        self.prompt_template = prompt_template
        self.bos_id = bos_id
        self.num_candidates = num_candidates
        self.rng = np.random.default_rng(seed)
        self.verbose = verbose

        self.session: Optional[DecodeSession] = None
        self.tracker: Optional[ContextTracker] = None
        self.executor: Optional[StepExecutor] = None

        # Track how much time spent in different parts of the predict function
        self.predict_total_ns = 0
        self.predict_inference_ns = 0

    @property
    def is_ready(self) -> bool:
        return self.executor is not None and self.runtime.is_loaded and self.tokenizer.is_loaded

    def load(self) -> None:
        """
            Load the tokenizer and runtime, then wire up the decoding engine.
            A tokenizer that fails to load leaves the model unavailable rather than raising.
        """
        if not self.tokenizer.load():
            print(f"ERROR: tokenizer failed to load, suggestions are disabled", file=sys.stderr)
            return
        self.runtime.load()
        if self.registry is None:
            self.registry = SlotRegistry.from_names(self.runtime.input_names, self.runtime.output_names)

        self.session = DecodeSession(context_window=self.runtime.context_window)
        self.tracker = ContextTracker(tokenizer=self.tokenizer,
                                      runtime=self.runtime,
                                      prompt_template=self.prompt_template,
                                      bos_id=self.bos_id)
        self.executor = StepExecutor(runtime=self.runtime, registry=self.registry, session=self.session)
        print(f"Causal: layers = {self.registry.num_layers}, window = {self.session.context_window}, "
              f"bos_id = {self.tracker.bos_id}, candidates = {self.num_candidates}")

    def predict_next_words(self,
                           text: str,
                           top_k: int = 5,
                           temperature: float = 1.0) -> List[str]:
        """
        Given everything typed so far, sample a few likely continuations.
        Returns an empty list when no model is loaded.
        Raises ContextOverflowException if the text no longer fits the context window, the next
        request then reprocesses its whole prompt.
        """
        if not temperature > 0:
            raise InvalidTemperatureException(f"Temperature must be greater than zero, got {temperature}")
        try:
            self._check_ready()
        except ModelUnavailableException as e:
            if self.verbose:
                print(f"WARNING: {e.message}", file=sys.stderr)
            return []

        start_ns = time.time_ns()
        plan = self.tracker.plan(self.session, text)

        before_inference_ns = time.time_ns()
        try:
            self.executor.run(plan.tokens)
        except ContextOverflowException:
            self.session.invalidate()
            raise
        self.predict_inference_ns += time.time_ns() - before_inference_ns

        candidates = select_top_candidates(self.executor.logits(), self.num_candidates, self.tokenizer.decode)
        if self.verbose:
            print(f"Candidates: {[(c.id, c.text, round(c.logit, 3)) for c in candidates[:20]]}")
        candidates = softmax_with_temperature(candidates, temperature)
        suggestions = sample_suggestions(candidates, top_k, self.rng)

        self.predict_total_ns += time.time_ns() - start_ns
        return suggestions

    def _check_ready(self) -> None:
        if not self.is_ready:
            raise ModelUnavailableException("Model is not loaded")

    def dump_predict_times(self) -> None:
        """Print some stats about the prediction timing"""
        if self.predict_total_ns > 0:
            print(f"Predict %: "
                  f"inference {self.predict_inference_ns / self.predict_total_ns * 100.0:.3f}")

    def close(self) -> None:
        self.executor = None
        self.tracker = None
        self.session = None
        self.runtime.close()
        self.tokenizer.close()
