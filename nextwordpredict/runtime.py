"""Defines the model runtime base class that executes one forward pass over named tensor buffers."""
from abc import ABC, abstractmethod
from typing import List

import numpy as np

from nextwordpredict.exceptions import CacheShapeMismatchException, ModelUnavailableException

# Values written into the dense mask buffer
MASK_ATTEND = 0.0
MASK_IGNORE = float("-inf")


class ModelRuntime(ABC):
    """Parent class for model runtimes.

    A runtime owns a fixed set of input and output buffers, discoverable by index once loaded.
    Buffer shapes never change for the lifetime of a loaded model.
    """

    def __init__(self, context_window: int = 2048):
        self.context_window = context_window
        self.inputs: List[np.ndarray] = []
        self.outputs: List[np.ndarray] = []
        self.input_names: List[str] = []
        self.output_names: List[str] = []

    @classmethod
    def name(cls) -> str:
        """Runtime name used for configuration"""
        suffix = 'ModelRuntime'
        if cls.__name__.endswith(suffix):
            return cls.__name__[0:-len(suffix)].upper()
        return cls.__name__.upper()

    @property
    def is_loaded(self) -> bool:
        return len(self.inputs) > 0

    @abstractmethod
    def load(self) -> None:
        """Load the model and allocate the input and output buffers"""
        ...

    @abstractmethod
    def _forward(self) -> None:
        """Run one forward pass reading self.inputs and filling self.outputs"""
        ...

    def run(self) -> None:
        """Execute exactly one forward pass over the current buffer contents"""
        if not self.is_loaded:
            raise ModelUnavailableException(f"{self.name()} runtime is not loaded")
        self._forward()

    def write_input(self, index: int, values) -> None:
        """
        Overwrite an input buffer, converting to the buffer's dtype.
        :param index: input buffer index
        :param values: array-like with exactly as many elements as the buffer
        """
        buffer = self.inputs[index]
        values = np.asarray(values, dtype=buffer.dtype)
        if values.size != buffer.size:
            raise CacheShapeMismatchException(
                f"Input buffer {index} holds {buffer.size} values, got {values.size}")
        np.copyto(buffer, values.reshape(buffer.shape))

    def read_input(self, index: int) -> np.ndarray:
        return self.inputs[index]

    def read_output(self, index: int) -> np.ndarray:
        return self.outputs[index]

    def zero_inputs(self) -> None:
        """Clear every input buffer, including the key/value caches"""
        for buffer in self.inputs:
            buffer.fill(0)

    def close(self) -> None:
        """Release the model and its buffers"""
        self.inputs = []
        self.outputs = []


def window_attention(mask: np.ndarray, position: int) -> np.ndarray:
    """
    Build the attention row for a decoder that is fed the whole cache window plus one new token.
    The window slot at the current position is still empty on the way in, so it is not attended;
    the new token itself is appended at the end.
    :param mask: dense mask buffer of length context window, MASK_ATTEND or MASK_IGNORE
    :param position: position of the token being processed
    :return: int64 array of length context window + 1 with 1 = attend
    """
    attend = (mask.reshape(-1) == MASK_ATTEND)
    attend[position] = False
    return np.append(attend, True).astype(np.int64)


def scatter_present(past: np.ndarray, present: np.ndarray, position: int, out: np.ndarray) -> None:
    """
    Write a layer's new key or value into a window sized output buffer.
    :param past: (1, heads, window, head_dim) cache that was fed in
    :param present: (1, heads, window + 1, head_dim) cache returned by the decoder
    :param position: window slot that receives the newest entry
    :param out: (1, heads, window, head_dim) output buffer
    """
    np.copyto(out, past)
    out[:, :, position, :] = present[:, :, -1, :]
