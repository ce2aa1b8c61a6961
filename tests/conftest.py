import re
from typing import List, Optional

import numpy as np
import pytest

from nextwordpredict.runtime import ModelRuntime
from nextwordpredict.tokenizer import TokenizerService

BASE_VOCAB = ["<pad>", "<eos>", "<bos>", " the", " cat", " sat", " on", " mat",
              "123", " dog", "'s", " ran", "#", " a", ",", " up"]
VOCAB_SIZE = len(BASE_VOCAB)
NUM_LAYERS = 2
HEAD_DIM = 2


class FakeTokenizer(TokenizerService):
    """Splits on spaces, unknown pieces get new ids. Records every encoded string."""

    def __init__(self, fail_load: bool = False, emit_bos: bool = False):
        self.vocab = list(BASE_VOCAB)
        self.loaded = False
        self.fail_load = fail_load
        self.emit_bos = emit_bos
        self.encoded: List[str] = []

    @property
    def is_loaded(self) -> bool:
        return self.loaded

    @property
    def bos_id(self) -> Optional[int]:
        return 2

    @property
    def vocab_size(self) -> int:
        return len(self.vocab)

    def load(self) -> bool:
        self.loaded = not self.fail_load
        return self.loaded

    def _encode(self, text: str) -> List[int]:
        self.encoded.append(text)
        ids = [2] if self.emit_bos else []
        for piece in re.findall(r" ?[^ ]+| ", text):
            if piece not in self.vocab:
                self.vocab.append(piece)
            ids.append(self.vocab.index(piece))
        return ids

    def _decode(self, token_id: int) -> str:
        return self.vocab[token_id]

    def close(self) -> None:
        self.loaded = False


class FakeRuntime(ModelRuntime):
    """Deterministic stand-in for a decoder.

    Each forward pass writes token + layer into the cache slot of the current position and
    copies logits from next_logits. Every call is recorded.
    """

    def __init__(self, context_window: int = 16, cache_positions: int = None):
        super().__init__(context_window=context_window)
        self.cache_positions = cache_positions or context_window
        self.next_logits = np.zeros(VOCAB_SIZE, dtype=np.float32)
        self.calls = []
        self.zeroed = 0

    def load(self) -> None:
        self.input_names = ["input_ids", "position_ids", "attention_mask"]
        self.inputs = [np.zeros((1, 1), dtype=np.int64),
                       np.zeros((1, 1), dtype=np.int64),
                       np.zeros((1, self.context_window), dtype=np.float32)]
        self.output_names = ["logits"]
        self.outputs = [np.zeros(VOCAB_SIZE, dtype=np.float32)]
        for layer in range(NUM_LAYERS):
            for kind in ("key", "value"):
                self.input_names.append(f"past_key_values.{layer}.{kind}")
                self.inputs.append(np.zeros((1, 1, self.context_window, HEAD_DIM), dtype=np.float32))
                self.output_names.append(f"present.{layer}.{kind}")
                self.outputs.append(np.zeros((1, 1, self.cache_positions, HEAD_DIM), dtype=np.float32))

    def zero_inputs(self) -> None:
        super().zero_inputs()
        self.zeroed += 1

    def _forward(self) -> None:
        token = int(self.inputs[0][0, 0])
        position = int(self.inputs[1][0, 0])
        self.calls.append({"token": token,
                           "position": position,
                           "mask": self.inputs[2].copy(),
                           "cache": [buffer.copy() for buffer in self.inputs[3:]]})
        for i, buffer in enumerate(self.inputs[3:]):
            out = self.outputs[1 + i]
            out[...] = buffer
            out[0, 0, position, :] = token + i // 2
        self.outputs[0][:] = self.next_logits


@pytest.fixture
def tokenizer():
    tok = FakeTokenizer()
    tok.load()
    return tok


@pytest.fixture
def runtime():
    rt = FakeRuntime()
    rt.load()
    return rt
