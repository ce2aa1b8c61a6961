"""Feeds tokens through the model one step at a time and rotates the key/value caches."""
from typing import List

import numpy as np

from nextwordpredict.context import DecodeSession
from nextwordpredict.runtime import ModelRuntime, MASK_ATTEND, MASK_IGNORE
from nextwordpredict.slots import SlotRegistry
from nextwordpredict.exceptions import CacheShapeMismatchException, ContextOverflowException


class StepExecutor:
    """Advances the model one token at a time, rotating the key/value caches between forward passes.

    Not safe for concurrent use: every step mutates the runtime buffers and the session.
    """

    def __init__(self,
                 runtime: ModelRuntime,
                 registry: SlotRegistry,
                 session: DecodeSession):
        self.runtime = runtime
        self.registry = registry
        self.session = session
        self.check_rotation_shapes()

    def check_rotation_shapes(self) -> None:
        """Every rotation pair must copy between buffers of identical byte length"""
        for input_slot, output_slot in self.registry.rotation:
            self._rotation_buffers(input_slot, output_slot)

    def _rotation_buffers(self, input_slot, output_slot):
        source = self.runtime.read_output(output_slot.index)
        target = self.runtime.read_input(input_slot.index)
        if source.nbytes != target.nbytes:
            raise CacheShapeMismatchException(
                f"Output buffer {output_slot.index} ({source.nbytes} bytes) cannot refill "
                f"input buffer {input_slot.index} ({target.nbytes} bytes)")
        return source, target

    def run(self, tokens: List[int]) -> None:
        """
        Process the tokens in order. Fails before touching any buffer if they do not all fit.
        :param tokens: token ids
        """
        if self.session.step + len(tokens) >= self.session.context_window:
            raise ContextOverflowException(self.session.step, len(tokens), self.session.context_window)
        for token in tokens:
            self.step(token)

    def step(self, token: int) -> None:
        """
        Process a single token at the current position.
        :param token: token id
        """
        session = self.session
        if session.step + 1 >= session.context_window:
            raise ContextOverflowException(session.step, 1, session.context_window)

        self.runtime.write_input(self.registry.token.index, [token])
        self.runtime.write_input(self.registry.position.index, [session.step])

        session.mask_state[session.step] = True
        self.runtime.write_input(self.registry.mask.index,
                                 np.where(session.mask_state, MASK_ATTEND, MASK_IGNORE))

        self.runtime.run()

        for input_slot, output_slot in self.registry.rotation:
            source, target = self._rotation_buffers(input_slot, output_slot)
            np.copyto(target, source.reshape(target.shape).astype(target.dtype, copy=False))

        session.step += 1

    def logits(self) -> np.ndarray:
        """Raw next token scores left by the last forward pass"""
        return self.runtime.read_output(self.registry.logits.index).reshape(-1)
