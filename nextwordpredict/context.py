"""Decoding session state and the context tracker that decides how much work can be reused."""
from typing import List, NamedTuple, Optional

import numpy as np

from nextwordpredict.runtime import ModelRuntime
from nextwordpredict.tokenizer import TokenizerService

DEFAULT_PROMPT_TEMPLATE = "<start_of_turn>user\nWrite a poem.<end_of_turn><start_of_turn>model\n{text}"
DEFAULT_BOS_ID = 2
DEFAULT_CONTEXT_WINDOW = 2048


class DecodeSession:
    """Mutable state of one loaded model: step counter, attendable positions and consumed text."""

    def __init__(self, context_window: int = DEFAULT_CONTEXT_WINDOW):
        if context_window <= 0:
            raise ValueError(f"Context window must be positive, got {context_window}")
        self.context_window = context_window
        self.step = 0
        self.mask_state = np.zeros(context_window, dtype=bool)
        self.previous_text = ""

    def reset(self) -> None:
        self.step = 0
        self.mask_state[:] = False
        self.previous_text = ""

    def invalidate(self) -> None:
        """Forget the consumed text so the next request performs a full reset"""
        self.previous_text = ""


class ContextPlan(NamedTuple):
    """Token ids to feed the step executor, in order, and whether the session was reset"""
    tokens: List[int]
    reset: bool


class ContextTracker:
    """Decides between extending the previous computation and reprocessing the whole prompt."""

    def __init__(self,
                 tokenizer: TokenizerService,
                 runtime: ModelRuntime,
                 prompt_template: str = DEFAULT_PROMPT_TEMPLATE,
                 bos_id: Optional[int] = None):
        """
        :param tokenizer: loaded tokenizer service
        :param runtime: model runtime whose input buffers are cleared on a reset
        :param prompt_template: conversation template, {text} is replaced by the request text
        :param bos_id: beginning of sequence id, defaults to the tokenizer's
        """
        self.tokenizer = tokenizer
        self.runtime = runtime
        self.prompt_template = prompt_template
        if bos_id is None:
            bos_id = tokenizer.bos_id
        self.bos_id = bos_id if bos_id is not None else DEFAULT_BOS_ID

    def format(self, text: str) -> str:
        return self.prompt_template.replace("{text}", text)

    def plan(self, session: DecodeSession, text: str) -> ContextPlan:
        """
        Work out the tokens needed to bring the session up to date with text.
        Only the newly typed suffix is tokenized when text extends what the session already consumed,
        otherwise the buffers and session are reset and the whole formatted prompt is tokenized.
        :param session: session to update
        :param text: full text of the request
        :return: ContextPlan
        """
        if session.previous_text and text.startswith(session.previous_text):
            delta = text[len(session.previous_text):]
            tokens = self.tokenizer.encode(delta) if delta else []
            session.previous_text = text
            return ContextPlan(tokens, False)

        self.runtime.zero_inputs()
        session.reset()
        tokens = list(self.tokenizer.encode(self.format(text)))
        if not tokens or tokens[0] != self.bos_id:
            tokens.insert(0, self.bos_id)
        session.previous_text = text
        return ContextPlan(tokens, True)
